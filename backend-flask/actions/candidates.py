from __future__ import annotations

import json
import logging

from sqlalchemy import delete, func, or_, select, update

from actions.helpers import (
    append_audit,
    github_analyzer,
    new_id,
    optional_str,
    paginate_args,
    pagination_meta,
    require_auth,
    required_str,
)
from models import Assessment, Candidate, GitHubAnalysis, Interview, UploadedFile
from services.github_analyzer import GitHubAnalysisError, is_github_url, username_from_url
from services.interview_flow import ACTIVE_STATUSES
from services.usage import assert_can_perform
from utils import ApiError, AuthContext, is_valid_email, iso_utc_now, normalize_email, parse_json_dict, parse_json_list

logger = logging.getLogger("github")

CANDIDATE_STATUSES = {"APPLIED", "SCREENING", "INTERVIEWING", "OFFERED", "HIRED", "REJECTED", "ARCHIVED"}

_SORTABLE = {
    "createdAt": Candidate.createdAt,
    "updatedAt": Candidate.updatedAt,
    "name": Candidate.name,
    "email": Candidate.email,
    "position": Candidate.position,
    "status": Candidate.status,
}


def find_candidate(db, organization_id: str, candidate_id) -> Candidate:
    cid = str(candidate_id or "").strip()
    if not cid:
        raise ApiError("BAD_REQUEST", "Missing id")
    cand = db.execute(
        select(Candidate).where(Candidate.id == cid, Candidate.organizationId == organization_id)
    ).scalar_one_or_none()
    if not cand:
        raise ApiError("NOT_FOUND", "Candidate not found")
    return cand


def latest_analysis(db, candidate_id: str):
    return (
        db.execute(
            select(GitHubAnalysis)
            .where(GitHubAnalysis.candidateId == candidate_id)
            .order_by(GitHubAnalysis.analyzedAt.desc())
        )
        .scalars()
        .first()
    )


def analysis_scores(row: GitHubAnalysis | None):
    if row is None:
        return None
    return {
        "id": row.id,
        "username": row.username,
        "overallScore": row.overallScore,
        "activityScore": row.activityScore,
        "codeQualityScore": row.codeQualityScore,
        "collaborationScore": row.collaborationScore,
        "consistencyScore": row.consistencyScore,
        "analyzedAt": row.analyzedAt,
    }


def analysis_to_dict(row: GitHubAnalysis) -> dict:
    out = analysis_scores(row)
    out.update(
        {
            "profile": parse_json_dict(row.profileJson),
            "repositories": parse_json_list(row.repositoriesJson),
            "contributions": parse_json_dict(row.contributionsJson),
            "languageStats": parse_json_dict(row.languageStatsJson),
            "insights": parse_json_dict(row.insightsJson),
        }
    )
    return out


def candidate_to_dict(c: Candidate) -> dict:
    return {
        "id": c.id,
        "organizationId": c.organizationId,
        "name": c.name,
        "email": c.email,
        "phone": c.phone or "",
        "position": c.position or "",
        "experience": c.experience or "",
        "skills": parse_json_list(c.skillsJson),
        "githubUsername": c.githubUsername or "",
        "githubUrl": c.githubUrl or "",
        "linkedinUrl": c.linkedinUrl or "",
        "resume": c.resume or "",
        "coverLetter": c.coverLetter or "",
        "expectedSalary": c.expectedSalary or "",
        "availability": c.availability or "",
        "notes": c.notes or "",
        "status": c.status,
        "createdBy": c.createdBy or "",
        "createdAt": c.createdAt,
        "updatedAt": c.updatedAt,
    }


def _interview_summary(i: Interview) -> dict:
    return {
        "id": i.id,
        "title": i.title,
        "type": i.type,
        "status": i.status,
        "scheduledAt": i.scheduledAt or "",
        "score": i.score,
    }


def _clean_skills(raw) -> list[str]:
    if not isinstance(raw, list):
        raise ApiError("BAD_REQUEST", "skills must be an array")
    skills = [str(s).strip() for s in raw if str(s or "").strip()]
    if not skills:
        raise ApiError("BAD_REQUEST", "At least one skill is required")
    return skills


def store_github_analysis(db, cand: Candidate, username: str, cfg) -> GitHubAnalysis:
    """Run a fresh analysis for the candidate and replace any previous one."""
    try:
        report = github_analyzer(cfg).analyze_candidate(username)
    except GitHubAnalysisError as e:
        raise ApiError("UPSTREAM", str(e))

    db.execute(delete(GitHubAnalysis).where(GitHubAnalysis.candidateId == cand.id))

    scores = report["overallScores"]
    row = GitHubAnalysis(
        id=new_id(),
        organizationId=cand.organizationId,
        candidateId=cand.id,
        username=username,
        profileJson=json.dumps(report["profile"]),
        repositoriesJson=json.dumps(report["repositories"]),
        contributionsJson=json.dumps(
            {
                "activity": report["activityMetrics"],
                "codeQuality": report["codeQualityMetrics"],
                "collaboration": report["collaborationMetrics"],
            }
        ),
        languageStatsJson=json.dumps(report["languageStats"]),
        activityScore=scores["activity"],
        codeQualityScore=scores["codeQuality"],
        collaborationScore=scores["collaboration"],
        consistencyScore=scores["consistency"],
        overallScore=scores["overall"],
        insightsJson=json.dumps({"insights": report["insights"], "recommendations": report["recommendations"]}),
        analyzedAt=iso_utc_now(),
    )
    db.add(row)
    return row


def candidate_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    page, limit = paginate_args(data)
    sort_by = str((data or {}).get("sortBy") or "createdAt").strip()
    sort_order = str((data or {}).get("sortOrder") or "desc").strip().lower()
    search = str((data or {}).get("search") or "").strip().lower()
    status = str((data or {}).get("status") or "").strip().upper()
    experience = str((data or {}).get("experience") or "").strip()

    if sort_by not in _SORTABLE:
        raise ApiError("BAD_REQUEST", f"Cannot sort by {sort_by}")
    if sort_order not in {"asc", "desc"}:
        raise ApiError("BAD_REQUEST", "sortOrder must be asc or desc")
    if status and status not in CANDIDATE_STATUSES:
        raise ApiError("BAD_REQUEST", "Invalid status")

    filters = [Candidate.organizationId == auth.organizationId]
    if search:
        like = f"%{search}%"
        filters.append(
            or_(
                func.lower(Candidate.name).like(like),
                func.lower(Candidate.email).like(like),
                func.lower(Candidate.position).like(like),
            )
        )
    if status:
        filters.append(Candidate.status == status)
    if experience:
        filters.append(Candidate.experience == experience)

    total = int(db.execute(select(func.count()).select_from(Candidate).where(*filters)).scalar() or 0)

    col = _SORTABLE[sort_by]
    rows = (
        db.execute(
            select(Candidate)
            .where(*filters)
            .order_by(col.asc() if sort_order == "asc" else col.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        .scalars()
        .all()
    )

    items = []
    for c in rows:
        item = candidate_to_dict(c)
        interviews = db.execute(
            select(Interview).where(Interview.candidateId == c.id).order_by(Interview.createdAt.desc())
        ).scalars().all()
        item["interviews"] = [_interview_summary(i) for i in interviews]
        item["githubAnalysis"] = analysis_scores(latest_analysis(db, c.id))
        items.append(item)

    return {"items": items, "pagination": pagination_meta(page, limit, total)}


def candidate_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    name = required_str(data, "name", min_len=2)
    email = normalize_email((data or {}).get("email"))
    position = required_str(data, "position", min_len=2)
    experience = required_str(data, "experience")
    skills = _clean_skills((data or {}).get("skills"))
    github_url = str((data or {}).get("githubUrl") or "").strip()

    if not is_valid_email(email):
        raise ApiError("BAD_REQUEST", "Invalid email")
    if github_url and not is_github_url(github_url):
        raise ApiError("BAD_REQUEST", "githubUrl must be a github.com URL")

    dup = db.execute(
        select(Candidate.id).where(Candidate.organizationId == auth.organizationId, Candidate.email == email)
    ).first()
    if dup:
        raise ApiError("DUPLICATE_CANDIDATE", "Candidate with this email already exists")

    assert_can_perform(db, auth.organizationId, "candidates")

    now = iso_utc_now()
    github_username = username_from_url(github_url) if github_url else ""
    cand = Candidate(
        id=new_id(),
        organizationId=auth.organizationId,
        name=name,
        email=email,
        phone=str((data or {}).get("phone") or "").strip(),
        position=position,
        experience=experience,
        skillsJson=json.dumps(skills),
        githubUsername=github_username,
        githubUrl=github_url,
        linkedinUrl=str((data or {}).get("linkedinUrl") or "").strip(),
        resume=str((data or {}).get("resume") or "").strip(),
        coverLetter=str((data or {}).get("coverLetter") or "").strip(),
        expectedSalary=str((data or {}).get("expectedSalary") or "").strip(),
        availability=str((data or {}).get("availability") or "").strip(),
        notes=str((data or {}).get("notes") or "").strip(),
        status="APPLIED",
        createdBy=auth.userId,
        createdAt=now,
        updatedAt=now,
    )
    db.add(cand)
    db.flush()

    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=cand.id,
        action="CANDIDATE_CREATE",
        stageTag="CANDIDATE_CREATE",
        toState="APPLIED",
        actor=auth,
        at=now,
        meta={"email": email},
    )

    analysis = None
    if github_username:
        # The analyzer fails before anything is written, so the create survives.
        try:
            analysis = store_github_analysis(db, cand, github_username, cfg)
        except ApiError as e:
            logger.warning("github analysis failed candidate=%s user=%s error=%s", cand.id, github_username, e.message)

    out = candidate_to_dict(cand)
    out["githubAnalysis"] = analysis_scores(analysis)
    return out


def candidate_get(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    cand = find_candidate(db, auth.organizationId, (data or {}).get("id"))

    interviews = db.execute(
        select(Interview).where(Interview.candidateId == cand.id).order_by(Interview.createdAt.desc())
    ).scalars().all()
    assessments = db.execute(
        select(Assessment).where(Assessment.candidateId == cand.id).order_by(Assessment.createdAt.desc())
    ).scalars().all()
    analysis = latest_analysis(db, cand.id)

    out = candidate_to_dict(cand)
    out["interviews"] = [_interview_summary(i) for i in interviews]
    out["assessments"] = [
        {
            "id": a.id,
            "interviewId": a.interviewId,
            "overallScore": a.overallScore,
            "recommendation": a.recommendation,
            "createdAt": a.createdAt,
        }
        for a in assessments
    ]
    out["githubAnalysis"] = analysis_to_dict(analysis) if analysis else None
    return out


_UPDATABLE_TEXT = (
    "name",
    "phone",
    "position",
    "experience",
    "linkedinUrl",
    "resume",
    "coverLetter",
    "expectedSalary",
    "availability",
    "notes",
)


def candidate_update(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    cand = find_candidate(db, auth.organizationId, (data or {}).get("id"))
    from_status = cand.status

    for key in _UPDATABLE_TEXT:
        value = optional_str(data, key)
        if value is None:
            continue
        if key in {"name", "position"} and len(value) < 2:
            raise ApiError("BAD_REQUEST", f"{key} must be at least 2 characters")
        setattr(cand, key, value)

    email = optional_str(data, "email")
    if email is not None:
        email = normalize_email(email)
        if not is_valid_email(email):
            raise ApiError("BAD_REQUEST", "Invalid email")
        if email != cand.email:
            clash = db.execute(
                select(Candidate.id).where(
                    Candidate.organizationId == auth.organizationId,
                    Candidate.email == email,
                    Candidate.id != cand.id,
                )
            ).first()
            if clash:
                raise ApiError("DUPLICATE_CANDIDATE", "Another candidate already uses this email")
            cand.email = email

    github_url = optional_str(data, "githubUrl")
    if github_url is not None:
        if github_url and not is_github_url(github_url):
            raise ApiError("BAD_REQUEST", "githubUrl must be a github.com URL")
        cand.githubUrl = github_url
        cand.githubUsername = username_from_url(github_url) if github_url else ""

    if "skills" in (data or {}):
        cand.skillsJson = json.dumps(_clean_skills(data.get("skills")))

    status = optional_str(data, "status")
    if status is not None:
        status = status.upper()
        if status not in CANDIDATE_STATUSES:
            raise ApiError("BAD_REQUEST", "Invalid status")
        cand.status = status

    now = iso_utc_now()
    cand.updatedAt = now
    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=cand.id,
        action="CANDIDATE_UPDATE",
        stageTag="CANDIDATE_UPDATE",
        fromState=from_status,
        toState=cand.status,
        actor=auth,
        at=now,
        meta={"fields": sorted(k for k in (data or {}) if k != "id")},
    )
    return candidate_to_dict(cand)


def candidate_delete(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    cand = find_candidate(db, auth.organizationId, (data or {}).get("id"))

    active = db.execute(
        select(func.count())
        .select_from(Interview)
        .where(Interview.candidateId == cand.id, Interview.status.in_(sorted(ACTIVE_STATUSES)))
    ).scalar()
    if active:
        raise ApiError("BAD_REQUEST", "Cannot delete candidate with active interviews")

    db.execute(delete(GitHubAnalysis).where(GitHubAnalysis.candidateId == cand.id))
    db.execute(delete(Assessment).where(Assessment.candidateId == cand.id))
    db.execute(delete(Interview).where(Interview.candidateId == cand.id))
    db.execute(update(UploadedFile).where(UploadedFile.candidateId == cand.id).values(candidateId=""))
    db.delete(cand)

    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=cand.id,
        action="CANDIDATE_DELETE",
        stageTag="CANDIDATE_DELETE",
        fromState=cand.status,
        toState="DELETED",
        actor=auth,
        meta={"email": cand.email},
    )
    return {"deleted": True, "id": cand.id}


def candidate_github_analyze(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    cand = find_candidate(db, auth.organizationId, (data or {}).get("id"))
    if not cand.githubUsername:
        raise ApiError("BAD_REQUEST", "Candidate has no GitHub username")

    row = store_github_analysis(db, cand, cand.githubUsername, cfg)
    append_audit(
        db,
        entityType="CANDIDATE",
        entityId=cand.id,
        action="CANDIDATE_GITHUB_ANALYZE",
        stageTag="GITHUB_ANALYSIS",
        actor=auth,
        meta={"username": cand.githubUsername, "overallScore": row.overallScore},
    )
    return analysis_to_dict(row)
