from __future__ import annotations

import json

from sqlalchemy import select

from actions.candidates import find_candidate
from actions.helpers import append_audit, new_id, require_auth
from models import Assessment, Interview
from utils import ApiError, AuthContext, iso_utc_now, parse_json_list, to_float_maybe

RECOMMENDATIONS = {"STRONG_HIRE", "HIRE", "MAYBE", "NO_HIRE", "STRONG_NO_HIRE"}
SCORE_FIELDS = ("technicalScore", "communicationScore", "problemSolvingScore", "cultureScore")


def assessment_to_dict(a: Assessment) -> dict:
    return {
        "id": a.id,
        "organizationId": a.organizationId,
        "interviewId": a.interviewId,
        "candidateId": a.candidateId,
        "assessorId": a.assessorId or "",
        "technicalScore": a.technicalScore,
        "communicationScore": a.communicationScore,
        "problemSolvingScore": a.problemSolvingScore,
        "cultureScore": a.cultureScore,
        "overallScore": a.overallScore,
        "feedback": a.feedback or "",
        "recommendation": a.recommendation,
        "strengths": parse_json_list(a.strengthsJson),
        "weaknesses": parse_json_list(a.weaknessesJson),
        "createdAt": a.createdAt,
    }


def _score(data, key: str, required: bool = True):
    raw = (data or {}).get(key)
    if raw is None and not required:
        return None
    n = to_float_maybe(raw)
    if n is None:
        raise ApiError("BAD_REQUEST", f"Missing {key}")
    if n < 0 or n > 10:
        raise ApiError("BAD_REQUEST", f"{key} must be between 0 and 10")
    return n


def _string_list(data, key: str) -> list[str]:
    raw = (data or {}).get(key) or []
    if not isinstance(raw, list):
        raise ApiError("BAD_REQUEST", f"{key} must be an array")
    return [str(x).strip() for x in raw if str(x or "").strip()]


def assessment_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    q = select(Assessment).where(Assessment.organizationId == auth.organizationId)
    candidate_id = str((data or {}).get("candidateId") or "").strip()
    interview_id = str((data or {}).get("interviewId") or "").strip()
    if candidate_id:
        q = q.where(Assessment.candidateId == candidate_id)
    if interview_id:
        q = q.where(Assessment.interviewId == interview_id)
    rows = db.execute(q.order_by(Assessment.createdAt.desc())).scalars().all()
    return {"items": [assessment_to_dict(a) for a in rows]}


def assessment_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    scores = {k: _score(data, k) for k in SCORE_FIELDS}
    overall = _score(data, "overallScore", required=False)
    if overall is None:
        overall = round(sum(scores.values()) / len(scores), 2)

    feedback = str((data or {}).get("feedback") or "").strip()
    if len(feedback) < 10:
        raise ApiError("BAD_REQUEST", "feedback must be at least 10 characters")

    recommendation = str((data or {}).get("recommendation") or "").strip().upper()
    if recommendation not in RECOMMENDATIONS:
        raise ApiError("BAD_REQUEST", "Invalid recommendation")

    cand = find_candidate(db, auth.organizationId, (data or {}).get("candidateId"))
    interview_id = str((data or {}).get("interviewId") or "").strip()
    if not interview_id:
        raise ApiError("BAD_REQUEST", "Missing interviewId")
    interview = db.execute(
        select(Interview).where(Interview.id == interview_id, Interview.organizationId == auth.organizationId)
    ).scalar_one_or_none()
    if not interview:
        raise ApiError("NOT_FOUND", "Interview not found")
    if interview.candidateId != cand.id:
        raise ApiError("BAD_REQUEST", "Interview does not belong to this candidate")

    now = iso_utc_now()
    row = Assessment(
        id=new_id(),
        organizationId=auth.organizationId,
        interviewId=interview.id,
        candidateId=cand.id,
        assessorId=auth.userId,
        overallScore=overall,
        feedback=feedback,
        recommendation=recommendation,
        strengthsJson=json.dumps(_string_list(data, "strengths")),
        weaknessesJson=json.dumps(_string_list(data, "weaknesses")),
        createdAt=now,
        **scores,
    )
    db.add(row)

    append_audit(
        db,
        entityType="ASSESSMENT",
        entityId=row.id,
        action="ASSESSMENT_CREATE",
        stageTag="ASSESSMENT_CREATE",
        toState=recommendation,
        actor=auth,
        at=now,
        meta={"interviewId": interview.id, "candidateId": cand.id, "overallScore": overall},
    )
    return assessment_to_dict(row)
