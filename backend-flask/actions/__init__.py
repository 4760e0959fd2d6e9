from __future__ import annotations

from actions import analytics, assessments, auth_actions, billing, candidates, files, interviews, team
from utils import ApiError

ACTION_HANDLERS = {
    # accounts
    "REGISTER": auth_actions.register,
    "LOGIN": auth_actions.login,
    "LOGOUT": auth_actions.logout,
    "SESSION_VALIDATE": auth_actions.session_validate,
    "GET_ME": auth_actions.get_me,
    # candidates
    "CANDIDATE_LIST": candidates.candidate_list,
    "CANDIDATE_CREATE": candidates.candidate_create,
    "CANDIDATE_GET": candidates.candidate_get,
    "CANDIDATE_UPDATE": candidates.candidate_update,
    "CANDIDATE_DELETE": candidates.candidate_delete,
    "CANDIDATE_GITHUB_ANALYZE": candidates.candidate_github_analyze,
    # interviews
    "INTERVIEW_LIST": interviews.interview_list,
    "INTERVIEW_CREATE": interviews.interview_create,
    "INTERVIEW_GET": interviews.interview_get,
    "INTERVIEW_UPDATE": interviews.interview_update,
    "INTERVIEW_DELETE": interviews.interview_delete,
    "INTERVIEW_RESPOND": interviews.interview_respond,
    "INTERVIEW_MANAGE": interviews.interview_manage,
    # assessments
    "ASSESSMENT_LIST": assessments.assessment_list,
    "ASSESSMENT_CREATE": assessments.assessment_create,
    # files
    "FILE_UPLOAD": files.file_upload,
    "FILE_LIST": files.file_list,
    "FILE_DELETE": files.file_delete,
    # billing
    "SUBSCRIPTION_GET": billing.subscription_get,
    "SUBSCRIPTION_MANAGE": billing.subscription_manage,
    "USAGE_REPORT": billing.usage_report,
    # team
    "TEAM_MEMBERS_LIST": team.team_members_list,
    "TEAM_MEMBER_UPDATE": team.team_member_update,
    "INVITATION_LIST": team.invitation_list,
    "INVITATION_CREATE": team.invitation_create,
    "INVITATION_CANCEL": team.invitation_cancel,
    "INVITATION_VALIDATE": team.invitation_validate,
    "INVITATION_ACCEPT": team.invitation_accept,
    # analytics
    "ANALYTICS_GET": analytics.analytics_get,
    "ANALYTICS_TRACK": analytics.analytics_track,
}


def dispatch(action: str, data, auth, db, cfg):
    handler = ACTION_HANDLERS.get(str(action or "").upper())
    if handler is None:
        raise ApiError("BAD_REQUEST", f"Unknown action: {action}")
    return handler(data if isinstance(data, dict) else {}, auth, db, cfg)
