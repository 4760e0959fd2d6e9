from __future__ import annotations

import re

from sqlalchemy import func, select

from actions.helpers import append_audit, new_id, require_auth, required_str, user_public
from auth import check_password, hash_password, issue_session_token, revoke_session
from models import Organization, User
from utils import ApiError, AuthContext, is_valid_email, iso_utc_now, normalize_email, normalize_role


def _find_user_by_email(db, email: str):
    email_lc = normalize_email(email)
    if not email_lc:
        return None
    return db.execute(select(User).where(func.lower(User.email) == email_lc)).scalars().first()


def _unique_slug(db, base: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", str(base or "").lower()).strip("-") or "org"
    slug = slug[:60]
    candidate = slug
    n = 1
    while db.execute(select(Organization.id).where(Organization.slug == candidate)).first():
        n += 1
        candidate = f"{slug}-{n}"
    return candidate


def register(data, auth: AuthContext | None, db, cfg):
    name = required_str(data, "name", min_len=2)
    email = normalize_email((data or {}).get("email"))
    password = str((data or {}).get("password") or "")
    company = str((data or {}).get("company") or "").strip()
    position = str((data or {}).get("position") or "").strip()

    if not is_valid_email(email):
        raise ApiError("BAD_REQUEST", "Invalid email")
    if len(password) < 8:
        raise ApiError("BAD_REQUEST", "Password must be at least 8 characters")
    if _find_user_by_email(db, email):
        raise ApiError("CONFLICT", "User already exists")

    now = iso_utc_now()
    org = Organization(
        id=new_id(),
        name=company or f"{name}'s Organization",
        slug=_unique_slug(db, company or name),
        plan="FREE",
        isActive=True,
        createdAt=now,
        updatedAt=now,
    )
    db.add(org)

    user = User(
        id=new_id(),
        organizationId=org.id,
        name=name,
        email=email,
        passwordHash=hash_password(password),
        role="ADMIN",
        company=company,
        position=position,
        isActive=True,
        createdAt=now,
        updatedAt=now,
    )
    db.add(user)

    actor = AuthContext(valid=True, userId=user.id, email=email, role="ADMIN", organizationId=org.id)
    append_audit(
        db,
        entityType="USER",
        entityId=user.id,
        action="REGISTER",
        stageTag="AUTH_REGISTER",
        toState="ACTIVE",
        actor=actor,
        at=now,
        meta={"organizationId": org.id},
    )

    return {"user": user_public(user), "organization": {"id": org.id, "name": org.name, "slug": org.slug, "plan": org.plan}}


def login(data, auth: AuthContext | None, db, cfg):
    email = normalize_email((data or {}).get("email"))
    password = str((data or {}).get("password") or "")
    if not email or not password:
        raise ApiError("BAD_REQUEST", "Missing email or password")

    user = _find_user_by_email(db, email)
    if not user or not check_password(user.passwordHash, password):
        raise ApiError("AUTH_INVALID", "Invalid credentials")
    if not user.isActive:
        raise ApiError("AUTH_INVALID", "User is disabled")

    user.lastLoginAt = iso_utc_now()
    ses = issue_session_token(db, user=user, session_ttl_minutes=cfg.SESSION_TTL_MINUTES)

    append_audit(
        db,
        entityType="AUTH",
        entityId=user.id,
        action="LOGIN",
        stageTag="AUTH_LOGIN",
        actor=AuthContext(
            valid=True,
            userId=user.id,
            email=user.email,
            role=normalize_role(user.role),
            organizationId=user.organizationId,
            expiresAt=ses["expiresAt"],
        ),
        meta={"email": user.email},
    )

    return {"sessionToken": ses["sessionToken"], "expiresAt": ses["expiresAt"], "me": user_public(user)}


def logout(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    revoked = revoke_session(db, auth.sessionHash)
    return {"loggedOut": True, "revoked": revoked}


def session_validate(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    return {
        "valid": True,
        "expiresAt": auth.expiresAt,
        "me": {
            "userId": auth.userId,
            "email": auth.email,
            "role": normalize_role(auth.role),
            "organizationId": auth.organizationId,
        },
    }


def get_me(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)

    user = db.get(User, auth.userId)
    if not user:
        raise ApiError("AUTH_INVALID", "User missing")
    if not user.isActive:
        raise ApiError("AUTH_INVALID", "User is disabled")

    org = db.get(Organization, user.organizationId)
    return {
        "me": user_public(user),
        "organization": {"id": org.id, "name": org.name, "slug": org.slug, "plan": org.plan} if org else None,
    }
