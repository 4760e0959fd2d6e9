from __future__ import annotations

import json
import os
import uuid
from typing import Any, Optional

from flask import current_app, has_app_context

from models import AuditLog, Organization, User
from services.ai_interviewer import AIInterviewer
from services.billing import StripeGateway
from services.github_analyzer import GitHubAnalyzer
from utils import ApiError, AuthContext, iso_utc_now, normalize_role, redact_for_audit


def new_id() -> str:
    return uuid.uuid4().hex


def append_audit(
    db,
    *,
    entityType: str,
    entityId: str,
    action: str,
    stageTag: str,
    actor: Optional[AuthContext],
    fromState: str = "",
    toState: str = "",
    remark: str = "",
    at: Optional[str] = None,
    meta: Optional[dict[str, Any]] = None,
    organizationId: Optional[str] = None,
) -> None:
    db.add(
        AuditLog(
            logId=f"LOG-{os.urandom(16).hex()}",
            organizationId=organizationId if organizationId is not None else (actor.organizationId if actor else ""),
            entityType=entityType,
            entityId=str(entityId or ""),
            action=action,
            fromState=fromState,
            toState=toState,
            stageTag=stageTag,
            remark=remark,
            actorUserId=str(actor.userId) if actor else "PUBLIC",
            actorRole=str(actor.role) if actor else "PUBLIC",
            at=at or iso_utc_now(),
            metaJson=json.dumps(redact_for_audit(meta or {})),
        )
    )


def require_auth(auth: AuthContext | None) -> AuthContext:
    if not auth or not auth.valid:
        raise ApiError("AUTH_INVALID", "Login required")
    return auth


def get_organization(db, organization_id: str) -> Organization:
    org = db.get(Organization, str(organization_id or ""))
    if not org:
        raise ApiError("NOT_FOUND", "Organization not found")
    return org


def required_str(data, key: str, label: Optional[str] = None, min_len: int = 1) -> str:
    value = str((data or {}).get(key) or "").strip()
    if len(value) < min_len:
        name = label or key
        if not value:
            raise ApiError("BAD_REQUEST", f"Missing {name}")
        raise ApiError("BAD_REQUEST", f"{name} must be at least {min_len} characters")
    return value


def optional_str(data, key: str) -> Optional[str]:
    if key not in (data or {}):
        return None
    raw = (data or {}).get(key)
    return "" if raw is None else str(raw).strip()


def paginate_args(data, default_limit: int = 10, max_limit: int = 100) -> tuple[int, int]:
    try:
        page = int((data or {}).get("page") or 1)
        limit = int((data or {}).get("limit") or default_limit)
    except (TypeError, ValueError):
        raise ApiError("BAD_REQUEST", "page and limit must be integers")
    if page < 1:
        raise ApiError("BAD_REQUEST", "page must be >= 1")
    if limit < 1 or limit > max_limit:
        raise ApiError("BAD_REQUEST", f"limit must be between 1 and {max_limit}")
    return page, limit


def pagination_meta(page: int, limit: int, total: int) -> dict[str, Any]:
    total_pages = (total + limit - 1) // limit if limit else 0
    return {
        "page": page,
        "limit": limit,
        "total": total,
        "totalPages": total_pages,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }


def _app_override(key: str):
    if has_app_context():
        return current_app.config.get(key)
    return None


def ai_interviewer(cfg) -> AIInterviewer:
    factory = _app_override("AI_INTERVIEWER_FACTORY")
    return factory(cfg) if factory else AIInterviewer.from_config(cfg)


def github_analyzer(cfg) -> GitHubAnalyzer:
    factory = _app_override("GITHUB_ANALYZER_FACTORY")
    return factory(cfg) if factory else GitHubAnalyzer(token=cfg.GITHUB_TOKEN)


def stripe_gateway(cfg) -> StripeGateway:
    factory = _app_override("STRIPE_GATEWAY_FACTORY")
    return factory(cfg) if factory else StripeGateway.from_config(cfg)


def user_public(user: User) -> dict[str, Any]:
    return {
        "id": user.id,
        "organizationId": user.organizationId,
        "name": user.name,
        "email": user.email,
        "role": normalize_role(user.role),
        "company": user.company or "",
        "position": user.position or "",
        "isActive": bool(user.isActive),
        "lastLoginAt": user.lastLoginAt or "",
        "createdAt": user.createdAt,
    }
