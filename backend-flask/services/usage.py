from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import func, select

from models import Candidate, Interview, Organization, UploadedFile, UsageMetric, User
from services.billing import UNLIMITED, get_plan_config, is_within_limits
from utils import ApiError

LIMIT_KINDS = ("candidates", "interviews", "storage", "teamMembers")
TREND_METRICS = ("api_calls", "interviews_completed")

_KIND_LABELS = {
    "candidates": "candidate",
    "interviews": "interview",
    "storage": "storage",
    "teamMembers": "team member",
}


def get_organization_usage(db, organization_id: str) -> dict[str, int]:
    def _count(model) -> int:
        return int(db.execute(select(func.count()).select_from(model).where(model.organizationId == organization_id)).scalar() or 0)

    storage = db.execute(
        select(func.coalesce(func.sum(UploadedFile.fileSize), 0)).where(UploadedFile.organizationId == organization_id)
    ).scalar()
    return {
        "candidates": _count(Candidate),
        "interviews": _count(Interview),
        "storage": int(storage or 0),
        "teamMembers": _count(User),
    }


def _organization(db, organization_id: str) -> Organization:
    org = db.get(Organization, str(organization_id or ""))
    if not org:
        raise ApiError("NOT_FOUND", "Organization not found")
    return org


def get_usage_report(db, organization_id: str) -> dict[str, Any]:
    org = _organization(db, organization_id)
    plan = get_plan_config(org.plan)
    usage = get_organization_usage(db, org.id)
    limits = plan["limits"]

    within = {}
    percent = {}
    for kind in LIMIT_KINDS:
        within[kind] = is_within_limits(usage[kind], limits[kind])
        if limits[kind] == UNLIMITED or limits[kind] <= 0:
            percent[kind] = 0
        else:
            percent[kind] = round(usage[kind] / limits[kind] * 100, 2)

    return {
        "organizationId": org.id,
        "plan": org.plan,
        "planName": plan["name"],
        "usage": usage,
        "limits": limits,
        "withinLimits": within,
        "percentUsed": percent,
    }


def can_perform_action(db, organization_id: str, kind: str, additional: int = 1) -> tuple[bool, Optional[str]]:
    if kind not in LIMIT_KINDS:
        raise ValueError(f"Unknown usage kind: {kind}")
    org = _organization(db, organization_id)
    limit = get_plan_config(org.plan)["limits"][kind]
    if limit == UNLIMITED:
        return True, None

    current = get_organization_usage(db, org.id)[kind]
    if current + additional > limit:
        if kind == "storage":
            reason = (
                f"Storage limit reached ({format_storage_usage(current)} of {format_storage_usage(limit)}). "
                "Please upgrade your plan."
            )
        else:
            reason = f"{_KIND_LABELS[kind].capitalize()} limit reached ({current}/{limit}). Please upgrade your plan."
        return False, reason
    return True, None


def assert_can_perform(db, organization_id: str, kind: str, additional: int = 1) -> None:
    allowed, reason = can_perform_action(db, organization_id, kind, additional)
    if not allowed:
        raise ApiError("LIMIT_EXCEEDED", reason or "Plan limit reached")


def _period_start(period: str, now: datetime) -> str:
    if period == "monthly":
        return now.strftime("%Y-%m-01")
    if period == "daily":
        return now.strftime("%Y-%m-%d")
    raise ValueError(f"Unknown period: {period}")


def _metric_row(db, organization_id: str, metric_type: str, period: str, date: str) -> Optional[UsageMetric]:
    return db.execute(
        select(UsageMetric).where(
            UsageMetric.organizationId == organization_id,
            UsageMetric.metricType == metric_type,
            UsageMetric.period == period,
            UsageMetric.date == date,
        )
    ).scalar_one_or_none()


def record_usage_metric(
    db, organization_id: str, metric_type: str, value: float, period: str = "monthly", now: Optional[datetime] = None
) -> UsageMetric:
    date = _period_start(period, now or datetime.now(timezone.utc))
    row = _metric_row(db, organization_id, metric_type, period, date)
    if row is None:
        row = UsageMetric(organizationId=organization_id, metricType=metric_type, period=period, date=date, value=value)
        db.add(row)
    else:
        row.value = value
    return row


def increment_usage_metric(
    db, organization_id: str, metric_type: str, amount: float = 1, period: str = "daily", now: Optional[datetime] = None
) -> UsageMetric:
    date = _period_start(period, now or datetime.now(timezone.utc))
    row = _metric_row(db, organization_id, metric_type, period, date)
    if row is None:
        row = UsageMetric(organizationId=organization_id, metricType=metric_type, period=period, date=date, value=amount)
        db.add(row)
        # Sessions do not autoflush; later lookups in this request must see the row.
        db.flush()
    else:
        row.value = (row.value or 0) + amount
    return row


def get_usage_trends(
    db, organization_id: str, metric_type: str, period: str = "daily", days: int = 30, now: Optional[datetime] = None
) -> list[dict[str, Any]]:
    now = now or datetime.now(timezone.utc)
    since = _period_start(period, now - timedelta(days=int(days)))
    rows = db.execute(
        select(UsageMetric)
        .where(
            UsageMetric.organizationId == organization_id,
            UsageMetric.metricType == metric_type,
            UsageMetric.period == period,
            UsageMetric.date >= since,
        )
        .order_by(UsageMetric.date.asc())
    ).scalars().all()
    return [{"date": r.date, "value": r.value} for r in rows]


def format_storage_usage(num_bytes: float) -> str:
    if not num_bytes:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(num_bytes)
    i = 0
    while size >= 1024 and i < len(units) - 1:
        size /= 1024
        i += 1
    text = f"{size:.2f}".rstrip("0").rstrip(".")
    return f"{text} {units[i]}"
