from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, select

from actions.helpers import append_audit, get_organization, new_id, require_auth, required_str, user_public
from auth import hash_password
from models import Candidate, Invitation, User
from services.usage import assert_can_perform
from utils import (
    ApiError,
    AuthContext,
    is_valid_email,
    iso_utc_now,
    normalize_email,
    normalize_role,
    parse_datetime_maybe,
    to_iso_utc,
)

logger = logging.getLogger("team")


def invitation_to_dict(inv: Invitation) -> dict:
    return {
        "id": inv.id,
        "organizationId": inv.organizationId,
        "email": inv.email,
        "role": inv.role,
        "invitedBy": inv.invitedBy,
        "status": inv.status,
        "expiresAt": inv.expiresAt,
        "createdAt": inv.createdAt,
    }


def _user_by_email(db, email: str):
    return db.execute(select(User).where(func.lower(User.email) == normalize_email(email))).scalars().first()


def _pending_invitation(db, token) -> Invitation:
    tok = str(token or "").strip()
    if not tok:
        raise ApiError("BAD_REQUEST", "Missing token")
    inv = db.execute(select(Invitation).where(Invitation.token == tok)).scalar_one_or_none()
    if not inv or inv.status != "PENDING":
        raise ApiError("NOT_FOUND", "Invalid or expired invitation")
    expires = parse_datetime_maybe(inv.expiresAt)
    if expires is None or expires <= datetime.now(timezone.utc):
        raise ApiError("NOT_FOUND", "Invalid or expired invitation")
    return inv


def render_invitation_email(org_name: str, inviter_name: str, role: str, link: str, ttl_days: int) -> str:
    return (
        f"{inviter_name} invited you to join {org_name} on DevMeet as {role.title()}.\n\n"
        f"Accept the invitation: {link}\n\n"
        f"This link expires in {ttl_days} days."
    )


def team_members_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    rows = db.execute(
        select(User).where(User.organizationId == auth.organizationId).order_by(User.createdAt.desc())
    ).scalars().all()
    return {"items": [user_public(u) for u in rows]}


def team_member_update(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    member_id = required_str(data, "id")
    member = db.get(User, member_id)
    if not member or member.organizationId != auth.organizationId:
        raise ApiError("NOT_FOUND", "Team member not found")

    changed = {}
    if "name" in (data or {}):
        name = str(data.get("name") or "").strip()
        if len(name) < 2:
            raise ApiError("BAD_REQUEST", "name must be at least 2 characters")
        member.name = name
        changed["name"] = name

    if "role" in (data or {}):
        role = normalize_role(data.get("role"))
        if not role:
            raise ApiError("BAD_REQUEST", "Invalid role")
        if member.id == auth.userId and role != "ADMIN":
            raise ApiError("BAD_REQUEST", "You cannot change your own admin role")
        changed["role"] = {"from": member.role, "to": role}
        member.role = role

    if "isActive" in (data or {}):
        active = data.get("isActive")
        if not isinstance(active, bool):
            raise ApiError("BAD_REQUEST", "isActive must be a boolean")
        if member.id == auth.userId and not active:
            raise ApiError("BAD_REQUEST", "You cannot deactivate yourself")
        member.isActive = active
        changed["isActive"] = active

    if not changed:
        raise ApiError("BAD_REQUEST", "Nothing to update")

    now = iso_utc_now()
    member.updatedAt = now
    append_audit(
        db,
        entityType="USER",
        entityId=member.id,
        action="TEAM_MEMBER_UPDATE",
        stageTag="TEAM",
        actor=auth,
        at=now,
        meta=changed,
    )
    return user_public(member)


def invitation_list(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    status = str((data or {}).get("status") or "").strip().upper()
    q = select(Invitation).where(Invitation.organizationId == auth.organizationId)
    if status:
        q = q.where(Invitation.status == status)
    rows = db.execute(q.order_by(Invitation.createdAt.desc())).scalars().all()
    return {"items": [invitation_to_dict(i) for i in rows]}


def invitation_create(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    email = normalize_email((data or {}).get("email"))
    role = normalize_role((data or {}).get("role"))
    if not is_valid_email(email):
        raise ApiError("BAD_REQUEST", "Invalid email")
    if not role:
        raise ApiError("BAD_REQUEST", "Invalid role")

    org = get_organization(db, auth.organizationId)
    assert_can_perform(db, org.id, "teamMembers")

    existing = _user_by_email(db, email)
    if existing and existing.organizationId == org.id:
        raise ApiError("CONFLICT", "User is already a member of this organization")
    if existing:
        raise ApiError("CONFLICT", "A user with this email already exists")

    pending = db.execute(
        select(Invitation.id).where(
            Invitation.organizationId == org.id,
            Invitation.email == email,
            Invitation.status == "PENDING",
        )
    ).first()
    if pending:
        raise ApiError("CONFLICT", "An invitation is already pending for this email")

    now_dt = datetime.now(timezone.utc)
    inv = Invitation(
        id=new_id(),
        organizationId=org.id,
        email=email,
        role=role,
        invitedBy=auth.userId,
        token=secrets.token_hex(32),
        status="PENDING",
        expiresAt=to_iso_utc(now_dt + timedelta(days=int(cfg.INVITATION_TTL_DAYS))),
        createdAt=to_iso_utc(now_dt),
    )
    db.add(inv)

    inviter = db.get(User, auth.userId)
    link = f"{cfg.APP_BASE_URL}/invitations/accept?token={inv.token}"
    body = render_invitation_email(org.name, inviter.name if inviter else auth.email, role, link, cfg.INVITATION_TTL_DAYS)
    logger.info("invitation email to=%s org=%s\n%s", email, org.id, body)

    append_audit(
        db,
        entityType="INVITATION",
        entityId=inv.id,
        action="INVITATION_CREATE",
        stageTag="TEAM",
        toState="PENDING",
        actor=auth,
        at=inv.createdAt,
        meta={"email": email, "role": role},
    )
    return invitation_to_dict(inv)


def invitation_cancel(data, auth: AuthContext | None, db, cfg):
    auth = require_auth(auth)
    inv_id = required_str(data, "id")
    inv = db.get(Invitation, inv_id)
    if not inv or inv.organizationId != auth.organizationId:
        raise ApiError("NOT_FOUND", "Invitation not found")
    if inv.status != "PENDING":
        raise ApiError("BAD_REQUEST", f"Invitation is {inv.status}")

    inv.status = "CANCELLED"
    append_audit(
        db,
        entityType="INVITATION",
        entityId=inv.id,
        action="INVITATION_CANCEL",
        stageTag="TEAM",
        fromState="PENDING",
        toState="CANCELLED",
        actor=auth,
    )
    return invitation_to_dict(inv)


def invitation_validate(data, auth: AuthContext | None, db, cfg):
    inv = _pending_invitation(db, (data or {}).get("token"))
    org = get_organization(db, inv.organizationId)
    return {
        "valid": True,
        "email": inv.email,
        "role": inv.role,
        "expiresAt": inv.expiresAt,
        "organization": {"id": org.id, "name": org.name},
    }


def invitation_accept(data, auth: AuthContext | None, db, cfg):
    inv = _pending_invitation(db, (data or {}).get("token"))
    user_data = (data or {}).get("userData") or {}
    if not isinstance(user_data, dict):
        raise ApiError("BAD_REQUEST", "userData must be an object")
    name = required_str(user_data, "name", min_len=2)
    password = str(user_data.get("password") or "")
    if len(password) < 8:
        raise ApiError("BAD_REQUEST", "Password must be at least 8 characters")
    if _user_by_email(db, inv.email):
        raise ApiError("CONFLICT", "A user with this email already exists")

    now = iso_utc_now()
    user = User(
        id=new_id(),
        organizationId=inv.organizationId,
        name=name,
        email=inv.email,
        passwordHash=hash_password(password),
        role=inv.role,
        isActive=True,
        createdAt=now,
        updatedAt=now,
    )
    db.add(user)
    inv.status = "ACCEPTED"

    if inv.role == "CANDIDATE":
        cand = db.execute(
            select(Candidate).where(Candidate.organizationId == inv.organizationId, Candidate.email == inv.email)
        ).scalar_one_or_none()
        if cand is not None:
            cand.userId = user.id
            cand.updatedAt = now

    actor = AuthContext(valid=True, userId=user.id, email=user.email, role=user.role, organizationId=user.organizationId)
    append_audit(
        db,
        entityType="INVITATION",
        entityId=inv.id,
        action="INVITATION_ACCEPT",
        stageTag="TEAM",
        fromState="PENDING",
        toState="ACCEPTED",
        actor=actor,
        at=now,
        meta={"userId": user.id},
    )
    logger.info("invitation accepted id=%s user=%s org=%s", inv.id, user.id, inv.organizationId)
    return {"user": user_public(user)}
