from __future__ import annotations

from sqlalchemy import func, select

from actions.helpers import append_audit, require_auth, required_str
from models import AuditLog, Candidate, Interview
from services.interview_flow import COMPLETED
from utils import ApiError, AuthContext, parse_json_dict, to_int

ANALYTICS_TYPES = {"dashboard", "interviews", "events"}

SCORE_BUCKETS = (
    ("9-10", 9.0, 10.0),
    ("8-8.9", 8.0, 9.0),
    ("7-7.9", 7.0, 8.0),
    ("6-6.9", 6.0, 7.0),
    ("0-5.9", 0.0, 6.0),
)


def score_bucket(score: float) -> str:
    for label, lo, hi in SCORE_BUCKETS:
        if lo <= score < hi or (hi == 10.0 and score == 10.0):
            return label
    return "0-5.9"


def _count(db, model, *filters) -> int:
    return int(db.execute(select(func.count()).select_from(model).where(*filters)).scalar() or 0)


def _dashboard(db, org_id: str) -> dict:
    total_candidates = _count(db, Candidate, Candidate.organizationId == org_id)
    total_interviews = _count(db, Interview, Interview.organizationId == org_id)
    completed = _count(db, Interview, Interview.organizationId == org_id, Interview.status == COMPLETED)
    rate = round(completed / total_interviews * 100, 2) if total_interviews else 0

    recent_candidates = db.execute(
        select(Candidate).where(Candidate.organizationId == org_id).order_by(Candidate.createdAt.desc()).limit(5)
    ).scalars().all()
    recent_interviews = db.execute(
        select(Interview).where(Interview.organizationId == org_id).order_by(Interview.createdAt.desc()).limit(5)
    ).scalars().all()

    return {
        "totalCandidates": total_candidates,
        "totalInterviews": total_interviews,
        "completedInterviews": completed,
        "completionRate": rate,
        "recentCandidates": [
            {"id": c.id, "name": c.name, "email": c.email, "position": c.position, "status": c.status, "createdAt": c.createdAt}
            for c in recent_candidates
        ],
        "recentInterviews": [
            {"id": i.id, "title": i.title, "candidateId": i.candidateId, "status": i.status, "score": i.score, "createdAt": i.createdAt}
            for i in recent_interviews
        ],
    }


def _interviews(db, org_id: str) -> dict:
    completed = db.execute(
        select(Interview).where(Interview.organizationId == org_id, Interview.status == COMPLETED)
    ).scalars().all()
    scores = [float(i.score) for i in completed if i.score is not None]

    distribution = {label: 0 for label, _lo, _hi in SCORE_BUCKETS}
    for s in scores:
        distribution[score_bucket(s)] += 1

    hires = sum(1 for s in scores if s >= 8)
    return {
        "completedInterviews": len(completed),
        "averageScore": round(sum(scores) / len(scores), 2) if scores else 0,
        "hireRate": round(hires / len(completed) * 100, 2) if completed else 0,
        "scoreDistribution": distribution,
    }


def _events(db, org_id: str, limit: int) -> dict:
    rows = db.execute(
        select(AuditLog).where(AuditLog.organizationId == org_id).order_by(AuditLog.at.desc()).limit(limit)
    ).scalars().all()
    return {
        "items": [
            {
                "id": r.logId,
                "entityType": r.entityType,
                "entityId": r.entityId,
                "action": r.action,
                "stageTag": r.stageTag,
                "actorUserId": r.actorUserId,
                "at": r.at,
                "meta": parse_json_dict(r.metaJson),
            }
            for r in rows
        ]
    }


def analytics_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    kind = str((data or {}).get("type") or "dashboard").strip().lower()
    if kind not in ANALYTICS_TYPES:
        raise ApiError("BAD_REQUEST", "Invalid analytics type")

    if kind == "dashboard":
        return _dashboard(db, auth.organizationId)
    if kind == "interviews":
        return _interviews(db, auth.organizationId)
    limit = to_int((data or {}).get("limit"), 50)
    if limit < 1 or limit > 500:
        raise ApiError("BAD_REQUEST", "limit must be between 1 and 500")
    return _events(db, auth.organizationId, limit)


def analytics_track(data, auth: AuthContext | None, db, cfg):
    event = required_str(data, "event", label="event")
    properties = (data or {}).get("properties") or {}
    if not isinstance(properties, dict):
        raise ApiError("BAD_REQUEST", "properties must be an object")

    actor = auth if auth and auth.valid else None
    append_audit(
        db,
        entityType="ANALYTICS",
        entityId=event[:120],
        action=event[:80],
        stageTag="ANALYTICS_EVENT",
        actor=actor,
        meta={"properties": properties},
    )
    return {"tracked": True}
