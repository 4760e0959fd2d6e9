from __future__ import annotations

import hashlib
import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from werkzeug.security import check_password_hash, generate_password_hash

from models import AuthSession, Permission, User
from utils import ApiError, AuthContext, iso_utc_now, normalize_role, parse_datetime_maybe, to_iso_utc

STAFF = ["ADMIN", "RECRUITER", "INTERVIEWER"]
MANAGERS = ["ADMIN", "RECRUITER"]
ADMIN_ONLY = ["ADMIN"]

STATIC_RBAC_PERMISSIONS: dict[str, list[str]] = {
    # session
    "LOGOUT": ["ADMIN", "RECRUITER", "INTERVIEWER", "CANDIDATE"],
    "SESSION_VALIDATE": ["ADMIN", "RECRUITER", "INTERVIEWER", "CANDIDATE"],
    "GET_ME": ["ADMIN", "RECRUITER", "INTERVIEWER", "CANDIDATE"],
    # candidates
    "CANDIDATE_LIST": STAFF,
    "CANDIDATE_GET": STAFF,
    "CANDIDATE_CREATE": MANAGERS,
    "CANDIDATE_UPDATE": MANAGERS,
    "CANDIDATE_DELETE": ADMIN_ONLY,
    "CANDIDATE_GITHUB_ANALYZE": MANAGERS,
    # interviews
    "INTERVIEW_LIST": STAFF,
    "INTERVIEW_GET": STAFF + ["CANDIDATE"],
    "INTERVIEW_CREATE": STAFF,
    "INTERVIEW_UPDATE": STAFF,
    "INTERVIEW_DELETE": MANAGERS,
    "INTERVIEW_RESPOND": STAFF + ["CANDIDATE"],
    "INTERVIEW_MANAGE": STAFF,
    # assessments
    "ASSESSMENT_LIST": STAFF,
    "ASSESSMENT_CREATE": STAFF,
    # files
    "FILE_UPLOAD": ["ADMIN", "RECRUITER", "INTERVIEWER", "CANDIDATE"],
    "FILE_LIST": ["ADMIN", "RECRUITER", "INTERVIEWER", "CANDIDATE"],
    "FILE_DELETE": ["ADMIN", "RECRUITER", "INTERVIEWER", "CANDIDATE"],
    # billing
    "SUBSCRIPTION_GET": ADMIN_ONLY,
    "SUBSCRIPTION_MANAGE": ADMIN_ONLY,
    "USAGE_REPORT": MANAGERS,
    # team
    "TEAM_MEMBERS_LIST": MANAGERS,
    "TEAM_MEMBER_UPDATE": ADMIN_ONLY,
    "INVITATION_LIST": MANAGERS,
    "INVITATION_CREATE": ADMIN_ONLY,
    "INVITATION_CANCEL": ADMIN_ONLY,
    # analytics
    "ANALYTICS_GET": MANAGERS,
}

PUBLIC_ACTIONS = {
    "REGISTER",
    "LOGIN",
    "INVITATION_VALIDATE",
    "INVITATION_ACCEPT",
    "ANALYTICS_TRACK",
}

# Never overridable from the Permission table.
ALWAYS_ALLOWED = {"LOGOUT", "SESSION_VALIDATE", "GET_ME"}


def is_public_action(action: str) -> bool:
    return str(action or "").upper() in PUBLIC_ACTIONS


def role_or_public(auth_ctx: AuthContext | None) -> str:
    if not auth_ctx or not auth_ctx.valid:
        return "PUBLIC"
    return normalize_role(auth_ctx.role) or "PUBLIC"


def allowed_roles(db, action: str) -> list[str]:
    key = str(action or "").upper()
    if key not in ALWAYS_ALLOWED:
        row = db.execute(select(Permission).where(Permission.permKey == key)).scalar_one_or_none()
        if row is not None:
            if not row.enabled:
                return []
            return [r.strip().upper() for r in str(row.rolesCsv or "").split(",") if r.strip()]
    return list(STATIC_RBAC_PERMISSIONS.get(key, []))


def assert_permission(db, role: str, action: str) -> None:
    key = str(action or "").upper()
    if key in PUBLIC_ACTIONS:
        return
    if role == "PUBLIC":
        raise ApiError("AUTH_INVALID", "Login required")
    if key not in STATIC_RBAC_PERMISSIONS:
        raise ApiError("BAD_REQUEST", f"Unknown action: {key}")
    if role not in allowed_roles(db, key):
        raise ApiError("FORBIDDEN", "Insufficient permissions")


def hash_password(password: str) -> str:
    return generate_password_hash(password)


def check_password(password_hash: str, password: str) -> bool:
    if not password_hash:
        return False
    return check_password_hash(password_hash, password)


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_session_token(db, *, user: User, session_ttl_minutes: int) -> dict[str, str]:
    token = secrets.token_urlsafe(32)
    expires_at = to_iso_utc(datetime.now(timezone.utc) + timedelta(minutes=int(session_ttl_minutes)))
    db.add(
        AuthSession(
            tokenHash=_hash_token(token),
            userId=user.id,
            organizationId=user.organizationId,
            email=user.email,
            role=normalize_role(user.role),
            expiresAt=expires_at,
            createdAt=iso_utc_now(),
        )
    )
    return {"sessionToken": token, "expiresAt": expires_at}


def validate_session_token(db, token) -> AuthContext:
    tok = str(token or "").strip()
    if not tok:
        return AuthContext(valid=False)

    ses = db.get(AuthSession, _hash_token(tok))
    if ses is None:
        return AuthContext(valid=False)

    expires = parse_datetime_maybe(ses.expiresAt)
    if expires is None or expires <= datetime.now(timezone.utc):
        db.delete(ses)
        return AuthContext(valid=False)

    user = db.get(User, ses.userId)
    if user is None or not user.isActive:
        return AuthContext(valid=False)

    return AuthContext(
        valid=True,
        userId=user.id,
        email=user.email,
        role=normalize_role(user.role),
        organizationId=user.organizationId,
        expiresAt=ses.expiresAt,
        sessionHash=ses.tokenHash,
    )


def revoke_session(db, token_hash: str) -> bool:
    ses = db.get(AuthSession, str(token_hash or ""))
    if ses is None:
        return False
    db.delete(ses)
    return True
