from __future__ import annotations

import json

from sqlalchemy import select

from actions.helpers import new_id
from auth import hash_password
from models import Candidate, Organization, User
from utils import iso_utc_now

DEMO_ORG_SLUG = "demo-org"
DEMO_PASSWORD = "demo-password"

DEMO_USERS = (
    ("ADMIN", "Demo Admin", "admin@demo.devmeet.io"),
    ("RECRUITER", "Demo Recruiter", "recruiter@demo.devmeet.io"),
    ("INTERVIEWER", "Demo Interviewer", "interviewer@demo.devmeet.io"),
    ("CANDIDATE", "Demo Candidate", "candidate@demo.devmeet.io"),
)


def seed_demo(db, password: str = DEMO_PASSWORD) -> dict:
    """Create the demo organization and one user per role. Safe to re-run."""
    now = iso_utc_now()
    created = []

    org = db.execute(select(Organization).where(Organization.slug == DEMO_ORG_SLUG)).scalar_one_or_none()
    if org is None:
        org = Organization(
            id=new_id(),
            name="Demo Organization",
            slug=DEMO_ORG_SLUG,
            domain="demo.devmeet.io",
            plan="PRO",
            isActive=True,
            createdAt=now,
            updatedAt=now,
        )
        db.add(org)
        created.append(f"organization:{DEMO_ORG_SLUG}")

    users = {}
    for role, name, email in DEMO_USERS:
        user = db.execute(select(User).where(User.email == email)).scalar_one_or_none()
        if user is None:
            user = User(
                id=new_id(),
                organizationId=org.id,
                name=name,
                email=email,
                passwordHash=hash_password(password),
                role=role,
                company="Demo Organization",
                isActive=True,
                createdAt=now,
                updatedAt=now,
            )
            db.add(user)
            created.append(f"user:{email}")
        users[role] = user

    cand_user = users["CANDIDATE"]
    cand = db.execute(
        select(Candidate).where(Candidate.organizationId == org.id, Candidate.email == cand_user.email)
    ).scalar_one_or_none()
    if cand is None:
        db.add(
            Candidate(
                id=new_id(),
                organizationId=org.id,
                userId=cand_user.id,
                name=cand_user.name,
                email=cand_user.email,
                position="Backend Engineer",
                experience="3-5 years",
                skillsJson=json.dumps(["Python", "Flask", "PostgreSQL"]),
                status="APPLIED",
                createdBy=users["ADMIN"].id,
                createdAt=now,
                updatedAt=now,
            )
        )
        created.append(f"candidate:{cand_user.email}")

    return {"organizationId": org.id, "created": created}
