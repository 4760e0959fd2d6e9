from __future__ import annotations

import json
import logging
from datetime import datetime, timezone

from sqlalchemy import delete, select

from actions.candidates import find_candidate, latest_analysis
from actions.helpers import ai_interviewer, append_audit, new_id, optional_str, require_auth, required_str
from models import Assessment, Candidate, Interview, User
from services.ai_interviewer import CandidateProfile
from services.interview_flow import (
    CANCELLED,
    COMPLETED,
    IN_PROGRESS,
    SCHEDULED,
    answered_count,
    assessment_scores,
    dump_progress,
    load_progress,
    map_recommendation,
    new_progress,
    next_status,
    question_at,
    record_response,
)
from services.usage import assert_can_perform, increment_usage_metric
from utils import ApiError, AuthContext, iso_utc_now, parse_datetime_maybe, parse_json_list, to_float_maybe, to_int, to_iso_utc

logger = logging.getLogger("interviews")

INTERVIEW_TYPES = {"TECHNICAL", "BEHAVIORAL", "SYSTEM_DESIGN"}
INTERVIEW_STATUSES = {SCHEDULED, IN_PROGRESS, COMPLETED, CANCELLED}
QUESTION_COUNT = 10

# Question fields a candidate may see; the rest is the grading key.
CANDIDATE_QUESTION_KEYS = ("id", "question", "type", "difficulty", "category", "timeLimit", "codeSnippet", "isFollowUp")


def public_question(q: dict) -> dict:
    return {k: q[k] for k in CANDIDATE_QUESTION_KEYS if k in q}


def interview_to_dict(i: Interview, *, include_progress: bool = True, candidate_view: bool = False) -> dict:
    out = {
        "id": i.id,
        "organizationId": i.organizationId,
        "candidateId": i.candidateId,
        "interviewerId": i.interviewerId or "",
        "title": i.title,
        "description": i.description or "",
        "type": i.type,
        "status": i.status,
        "scheduledAt": i.scheduledAt or "",
        "startedAt": i.startedAt or "",
        "completedAt": i.completedAt or "",
        "duration": i.duration,
        "aiPersonality": i.aiPersonality or "",
        "techStack": parse_json_list(i.techStackJson),
        "difficultyLevel": i.difficultyLevel or "",
        "notes": i.notes or "",
        "score": i.score,
        "recommendation": i.recommendation or "",
        "createdAt": i.createdAt,
        "updatedAt": i.updatedAt,
    }
    if include_progress:
        progress = load_progress(i.questionsJson)
        if candidate_view:
            out["questions"] = [public_question(q) for q in progress["questions"]]
            out["responses"] = [
                {k: v for k, v in r.items() if k != "detailedScores"} if isinstance(r, dict) else r
                for r in progress["responses"]
            ]
        else:
            out["questions"] = progress["questions"]
            out["responses"] = progress["responses"]
        out["currentIndex"] = progress["currentIndex"]
    return out


def load_interview(db, auth: AuthContext, interview_id) -> Interview:
    iid = str(interview_id or "").strip()
    if not iid:
        raise ApiError("BAD_REQUEST", "Missing id")
    interview = db.execute(
        select(Interview).where(Interview.id == iid, Interview.organizationId == auth.organizationId)
    ).scalar_one_or_none()
    if not interview:
        raise ApiError("NOT_FOUND", "Interview not found")

    # Candidates only ever see their own interviews.
    if auth.role == "CANDIDATE":
        cand = db.get(Candidate, interview.candidateId)
        if not cand or cand.userId != auth.userId:
            raise ApiError("NOT_FOUND", "Interview not found")
    return interview


def _minutes_between(start: str, end: datetime) -> int | None:
    started = parse_datetime_maybe(start)
    if started is None:
        return None
    return max(0, int(round((end - started).total_seconds() / 60)))


def _evaluation_context(db, cand: Candidate | None) -> str:
    if cand is None:
        return ""
    parts = [f"Candidate: {cand.name}", f"Position: {cand.position}"]
    if cand.experience:
        parts.append(f"Experience: {cand.experience}")
    analysis = latest_analysis(db, cand.id)
    if analysis is not None:
        parts.append(f"GitHub overall score: {analysis.overallScore}/10")
    return ". ".join(parts)


def interview_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    status = str((data or {}).get("status") or "").strip().upper()
    candidate_id = str((data or {}).get("candidateId") or "").strip()

    if status and status not in INTERVIEW_STATUSES:
        raise ApiError("BAD_REQUEST", "Invalid status")

    q = select(Interview).where(Interview.organizationId == auth.organizationId)
    if status:
        q = q.where(Interview.status == status)
    if candidate_id:
        q = q.where(Interview.candidateId == candidate_id)
    rows = db.execute(q.order_by(Interview.createdAt.desc())).scalars().all()

    names = {}
    cand_ids = {r.candidateId for r in rows}
    if cand_ids:
        for c in db.execute(select(Candidate).where(Candidate.id.in_(sorted(cand_ids)))).scalars().all():
            names[c.id] = {"id": c.id, "name": c.name, "email": c.email, "position": c.position}

    items = []
    for r in rows:
        item = interview_to_dict(r, include_progress=False)
        item["candidate"] = names.get(r.candidateId)
        items.append(item)
    return {"items": items}


def interview_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    title = required_str(data, "title", min_len=3)
    cand = find_candidate(db, auth.organizationId, (data or {}).get("candidateId"))

    itype = str((data or {}).get("type") or "TECHNICAL").strip().upper()
    if itype not in INTERVIEW_TYPES:
        raise ApiError("BAD_REQUEST", "Invalid interview type")

    scheduled_raw = str((data or {}).get("scheduledAt") or "").strip()
    scheduled = parse_datetime_maybe(scheduled_raw) if scheduled_raw else None
    if scheduled_raw and scheduled is None:
        raise ApiError("BAD_REQUEST", "Invalid scheduledAt")

    interviewer_id = str((data or {}).get("interviewerId") or "").strip() or auth.userId
    interviewer = db.get(User, interviewer_id)
    if not interviewer or interviewer.organizationId != auth.organizationId:
        raise ApiError("BAD_REQUEST", "Interviewer not found in organization")

    tech_stack = (data or {}).get("techStack") or []
    if not isinstance(tech_stack, list):
        raise ApiError("BAD_REQUEST", "techStack must be an array")
    tech_stack = [str(t).strip() for t in tech_stack if str(t or "").strip()]
    difficulty = str((data or {}).get("difficultyLevel") or "intermediate").strip().lower()

    assert_can_perform(db, auth.organizationId, "interviews")

    skills = parse_json_list(cand.skillsJson) or tech_stack
    profile = CandidateProfile(
        name=cand.name,
        position=cand.position,
        experience=cand.experience or "",
        skills=[str(s) for s in skills],
        resume=cand.resume or "",
    )
    questions = ai_interviewer(cfg).generate_questions(profile, itype.lower(), difficulty, QUESTION_COUNT)

    now = iso_utc_now()
    interview = Interview(
        id=new_id(),
        organizationId=auth.organizationId,
        candidateId=cand.id,
        interviewerId=interviewer_id,
        title=title,
        description=str((data or {}).get("description") or "").strip(),
        type=itype,
        status=SCHEDULED,
        scheduledAt=scheduled_raw,
        aiPersonality=str((data or {}).get("aiPersonality") or "professional").strip(),
        techStackJson=json.dumps(tech_stack),
        difficultyLevel=difficulty,
        questionsJson=dump_progress(new_progress(questions)),
        createdAt=now,
        updatedAt=now,
    )
    db.add(interview)

    from_status = cand.status
    if cand.status in {"APPLIED", "SCREENING"}:
        cand.status = "INTERVIEWING"
        cand.updatedAt = now

    append_audit(
        db,
        entityType="INTERVIEW",
        entityId=interview.id,
        action="INTERVIEW_CREATE",
        stageTag="INTERVIEW_CREATE",
        toState=SCHEDULED,
        actor=auth,
        at=now,
        meta={"candidateId": cand.id, "questions": len(questions), "candidateStatusFrom": from_status},
    )
    logger.info("interview created id=%s candidate=%s questions=%s", interview.id, cand.id, len(questions))
    return interview_to_dict(interview)


def interview_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    interview = load_interview(db, auth, (data or {}).get("id"))
    out = interview_to_dict(interview, candidate_view=auth.role == "CANDIDATE")
    cand = db.get(Candidate, interview.candidateId)
    out["candidate"] = {"id": cand.id, "name": cand.name, "email": cand.email, "position": cand.position} if cand else None
    return out


def interview_update(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    interview = load_interview(db, auth, (data or {}).get("id"))

    title = optional_str(data, "title")
    if title is not None:
        if len(title) < 3:
            raise ApiError("BAD_REQUEST", "title must be at least 3 characters")
        interview.title = title

    for key in ("description", "notes", "recommendation"):
        value = optional_str(data, key)
        if value is not None:
            setattr(interview, key, value)

    scheduled = optional_str(data, "scheduledAt")
    if scheduled is not None:
        if scheduled and parse_datetime_maybe(scheduled) is None:
            raise ApiError("BAD_REQUEST", "Invalid scheduledAt")
        interview.scheduledAt = scheduled

    if "score" in (data or {}):
        score = to_float_maybe(data.get("score"))
        if score is None or score < 0 or score > 10:
            raise ApiError("BAD_REQUEST", "score must be between 0 and 10")
        interview.score = score

    if "duration" in (data or {}):
        duration = to_int(data.get("duration"), -1)
        if duration < 0:
            raise ApiError("BAD_REQUEST", "duration must be a non-negative integer")
        interview.duration = duration

    interview.updatedAt = iso_utc_now()
    append_audit(
        db,
        entityType="INTERVIEW",
        entityId=interview.id,
        action="INTERVIEW_UPDATE",
        stageTag="INTERVIEW_UPDATE",
        actor=auth,
        meta={"fields": sorted(k for k in (data or {}) if k != "id")},
    )
    return interview_to_dict(interview)


def interview_delete(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    interview = load_interview(db, auth, (data or {}).get("id"))
    db.execute(delete(Assessment).where(Assessment.interviewId == interview.id))
    db.delete(interview)
    append_audit(
        db,
        entityType="INTERVIEW",
        entityId=interview.id,
        action="INTERVIEW_DELETE",
        stageTag="INTERVIEW_DELETE",
        fromState=interview.status,
        toState="DELETED",
        actor=auth,
    )
    return {"deleted": True, "id": interview.id}


def _start(interview: Interview, auth: AuthContext, db, now: str) -> None:
    interview.status = next_status(interview.status, "start")
    interview.startedAt = now
    interview.updatedAt = now
    append_audit(
        db,
        entityType="INTERVIEW",
        entityId=interview.id,
        action="INTERVIEW_START",
        stageTag="INTERVIEW_STATUS",
        fromState=SCHEDULED,
        toState=IN_PROGRESS,
        actor=auth,
        at=now,
    )


def interview_respond(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    interview = load_interview(db, auth, (data or {}).get("id"))
    answer = required_str(data, "response")
    if "questionIndex" not in (data or {}):
        raise ApiError("BAD_REQUEST", "Missing questionIndex")

    if interview.status not in {SCHEDULED, IN_PROGRESS}:
        raise ApiError("BAD_REQUEST", f"Interview is {interview.status}")

    now = iso_utc_now()
    if interview.status == SCHEDULED:
        _start(interview, auth, db, now)

    progress = load_progress(interview.questionsJson)
    question = question_at(progress, data.get("questionIndex"))
    index = int(data.get("questionIndex"))

    cand = db.get(Candidate, interview.candidateId)
    evaluation = ai_interviewer(cfg).evaluate_response(question, answer, _evaluation_context(db, cand))
    follow_up = record_response(progress, index, answer, evaluation, timestamp=now)

    interview.questionsJson = dump_progress(progress)
    interview.updatedAt = now

    logger.info(
        "response recorded interview=%s index=%s score=%s follow_up=%s",
        interview.id,
        index,
        evaluation.get("score"),
        bool(follow_up),
    )
    if auth.role == "CANDIDATE":
        evaluation = {k: v for k, v in evaluation.items() if k != "detailedScores"}
        follow_up = public_question(follow_up) if follow_up else None
    return {
        "evaluation": evaluation,
        "followUpQuestion": follow_up,
        "nextQuestionIndex": progress["currentIndex"],
        "totalQuestions": len(progress["questions"]),
    }


def _complete(interview: Interview, auth: AuthContext, db, cfg, now_dt: datetime) -> dict:
    now = to_iso_utc(now_dt)
    interview.status = next_status(interview.status, "complete")

    progress = load_progress(interview.questionsJson)
    summary = ai_interviewer(cfg).generate_summary(progress["questions"], progress["responses"])
    overall = float(summary.get("overallScore") or 0)

    interview.score = overall
    interview.recommendation = str(summary.get("summary") or "")
    interview.completedAt = now
    interview.duration = _minutes_between(interview.startedAt, now_dt)
    interview.updatedAt = now

    scores = assessment_scores(overall)
    assessment = Assessment(
        id=new_id(),
        organizationId=interview.organizationId,
        interviewId=interview.id,
        candidateId=interview.candidateId,
        assessorId=auth.userId,
        technicalScore=scores["technicalScore"],
        communicationScore=scores["communicationScore"],
        problemSolvingScore=scores["problemSolvingScore"],
        cultureScore=scores["cultureScore"],
        overallScore=scores["overallScore"],
        feedback=interview.recommendation,
        recommendation=map_recommendation(summary.get("recommendation")),
        strengthsJson=json.dumps(summary.get("strengths") or []),
        weaknessesJson=json.dumps(summary.get("weaknesses") or []),
        createdAt=now,
    )
    db.add(assessment)
    increment_usage_metric(db, interview.organizationId, "interviews_completed", now=now_dt)

    append_audit(
        db,
        entityType="INTERVIEW",
        entityId=interview.id,
        action="INTERVIEW_COMPLETE",
        stageTag="INTERVIEW_STATUS",
        fromState=IN_PROGRESS,
        toState=COMPLETED,
        actor=auth,
        at=now,
        meta={"score": overall, "answered": answered_count(progress), "assessmentId": assessment.id},
    )
    logger.info("interview completed id=%s score=%s duration=%s", interview.id, overall, interview.duration)
    return {"summary": summary, "assessmentId": assessment.id}


def interview_manage(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    interview = load_interview(db, auth, (data or {}).get("id"))
    act = str((data or {}).get("action") or "").strip().lower()
    now = iso_utc_now()

    extra = {}
    if act == "start":
        _start(interview, auth, db, now)
    elif act == "complete":
        extra = _complete(interview, auth, db, cfg, datetime.now(timezone.utc))
    elif act == "cancel":
        from_status = interview.status
        interview.status = next_status(interview.status, "cancel")
        interview.updatedAt = now
        append_audit(
            db,
            entityType="INTERVIEW",
            entityId=interview.id,
            action="INTERVIEW_CANCEL",
            stageTag="INTERVIEW_STATUS",
            fromState=from_status,
            toState=CANCELLED,
            actor=auth,
            at=now,
        )
    else:
        raise ApiError("BAD_REQUEST", "Invalid action")

    out = interview_to_dict(interview)
    out.update(extra)
    return out
