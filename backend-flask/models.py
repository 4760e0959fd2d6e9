from __future__ import annotations

from sqlalchemy import Boolean, Column, Float, Integer, String, Text, UniqueConstraint

from db import Base


class Organization(Base):
    __tablename__ = "organizations"

    id = Column(String(32), primary_key=True)
    name = Column(String(200), nullable=False)
    slug = Column(String(120), unique=True, nullable=False)
    domain = Column(String(200), default="")
    plan = Column(String(20), nullable=False, default="FREE")
    stripeCustomerId = Column(String(120), default="")
    isActive = Column(Boolean, nullable=False, default=True)
    createdAt = Column(String(40), nullable=False)
    updatedAt = Column(String(40), nullable=False)


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    organizationId = Column(String(32), index=True, nullable=False)
    name = Column(String(200), nullable=False)
    email = Column(String(254), unique=True, nullable=False)
    passwordHash = Column(String(255), default="")
    role = Column(String(20), nullable=False, default="RECRUITER")
    company = Column(String(200), default="")
    position = Column(String(200), default="")
    isActive = Column(Boolean, nullable=False, default=True)
    lastLoginAt = Column(String(40), default="")
    createdAt = Column(String(40), nullable=False)
    updatedAt = Column(String(40), nullable=False)


class AuthSession(Base):
    __tablename__ = "auth_sessions"

    tokenHash = Column(String(64), primary_key=True)
    userId = Column(String(64), index=True, nullable=False)
    organizationId = Column(String(32), nullable=False)
    email = Column(String(254), default="")
    role = Column(String(20), nullable=False)
    expiresAt = Column(String(40), nullable=False)
    createdAt = Column(String(40), nullable=False)


class Permission(Base):
    __tablename__ = "permissions"

    permKey = Column(String(80), primary_key=True)
    rolesCsv = Column(String(200), nullable=False, default="")
    enabled = Column(Boolean, nullable=False, default=True)
    updatedAt = Column(String(40), nullable=False)
    updatedBy = Column(String(120), default="")


class Invitation(Base):
    __tablename__ = "invitations"

    id = Column(String(32), primary_key=True)
    organizationId = Column(String(32), index=True, nullable=False)
    email = Column(String(254), nullable=False)
    role = Column(String(20), nullable=False)
    invitedBy = Column(String(64), nullable=False)
    token = Column(String(64), unique=True, nullable=False)
    status = Column(String(20), nullable=False, default="PENDING")
    expiresAt = Column(String(40), nullable=False)
    createdAt = Column(String(40), nullable=False)


class Candidate(Base):
    __tablename__ = "candidates"
    __table_args__ = (UniqueConstraint("organizationId", "email", name="uq_candidate_org_email"),)

    id = Column(String(32), primary_key=True)
    organizationId = Column(String(32), index=True, nullable=False)
    userId = Column(String(64), default="")
    name = Column(String(200), nullable=False)
    email = Column(String(254), nullable=False)
    phone = Column(String(40), default="")
    position = Column(String(200), default="")
    experience = Column(String(60), default="")
    skillsJson = Column(Text, default="[]")
    githubUsername = Column(String(100), default="")
    githubUrl = Column(String(300), default="")
    linkedinUrl = Column(String(300), default="")
    resume = Column(Text, default="")
    coverLetter = Column(Text, default="")
    expectedSalary = Column(String(60), default="")
    availability = Column(String(120), default="")
    notes = Column(Text, default="")
    status = Column(String(20), nullable=False, default="APPLIED")
    createdBy = Column(String(64), default="")
    createdAt = Column(String(40), nullable=False)
    updatedAt = Column(String(40), nullable=False)


class Interview(Base):
    __tablename__ = "interviews"

    id = Column(String(32), primary_key=True)
    organizationId = Column(String(32), index=True, nullable=False)
    candidateId = Column(String(32), index=True, nullable=False)
    interviewerId = Column(String(64), default="")
    title = Column(String(200), nullable=False)
    description = Column(Text, default="")
    type = Column(String(20), nullable=False, default="TECHNICAL")
    status = Column(String(20), nullable=False, default="SCHEDULED")
    scheduledAt = Column(String(40), default="")
    startedAt = Column(String(40), default="")
    completedAt = Column(String(40), default="")
    duration = Column(Integer, nullable=True)
    aiPersonality = Column(String(40), default="professional")
    techStackJson = Column(Text, default="[]")
    difficultyLevel = Column(String(20), default="intermediate")
    questionsJson = Column(Text, default="{}")
    notes = Column(Text, default="")
    score = Column(Float, nullable=True)
    recommendation = Column(Text, default="")
    createdAt = Column(String(40), nullable=False)
    updatedAt = Column(String(40), nullable=False)


class Assessment(Base):
    __tablename__ = "assessments"

    id = Column(String(32), primary_key=True)
    organizationId = Column(String(32), index=True, nullable=False)
    interviewId = Column(String(32), index=True, nullable=False)
    candidateId = Column(String(32), index=True, nullable=False)
    assessorId = Column(String(64), default="")
    technicalScore = Column(Float, nullable=False, default=0)
    communicationScore = Column(Float, nullable=False, default=0)
    problemSolvingScore = Column(Float, nullable=False, default=0)
    cultureScore = Column(Float, nullable=False, default=0)
    overallScore = Column(Float, nullable=False, default=0)
    feedback = Column(Text, default="")
    recommendation = Column(String(20), nullable=False, default="MAYBE")
    strengthsJson = Column(Text, default="[]")
    weaknessesJson = Column(Text, default="[]")
    createdAt = Column(String(40), nullable=False)


class GitHubAnalysis(Base):
    __tablename__ = "github_analyses"

    id = Column(String(32), primary_key=True)
    organizationId = Column(String(32), index=True, nullable=False)
    candidateId = Column(String(32), index=True, nullable=False)
    username = Column(String(100), nullable=False)
    profileJson = Column(Text, default="{}")
    repositoriesJson = Column(Text, default="[]")
    contributionsJson = Column(Text, default="{}")
    languageStatsJson = Column(Text, default="{}")
    activityScore = Column(Float, nullable=False, default=0)
    codeQualityScore = Column(Float, nullable=False, default=0)
    collaborationScore = Column(Float, nullable=False, default=0)
    consistencyScore = Column(Float, nullable=False, default=0)
    overallScore = Column(Float, nullable=False, default=0)
    insightsJson = Column(Text, default="{}")
    analyzedAt = Column(String(40), nullable=False)


class UploadedFile(Base):
    __tablename__ = "uploaded_files"

    id = Column(String(32), primary_key=True)
    organizationId = Column(String(32), index=True, nullable=False)
    uploadedBy = Column(String(64), index=True, nullable=False)
    candidateId = Column(String(32), default="")
    filename = Column(String(255), nullable=False)
    originalName = Column(String(255), nullable=False)
    filePath = Column(Text, nullable=False)
    fileSize = Column(Integer, nullable=False, default=0)
    mimeType = Column(String(120), nullable=False)
    type = Column(String(20), nullable=False, default="document")
    createdAt = Column(String(40), nullable=False)


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(String(32), primary_key=True)
    organizationId = Column(String(32), index=True, nullable=False)
    plan = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default="INACTIVE")
    currentPeriodStart = Column(String(40), default="")
    currentPeriodEnd = Column(String(40), default="")
    cancelAtPeriodEnd = Column(Boolean, nullable=False, default=False)
    stripeCustomerId = Column(String(120), default="")
    stripeSubscriptionId = Column(String(120), unique=True, nullable=True)
    stripePriceId = Column(String(120), default="")
    createdAt = Column(String(40), nullable=False)
    updatedAt = Column(String(40), nullable=False)


class UsageMetric(Base):
    __tablename__ = "usage_metrics"
    __table_args__ = (
        UniqueConstraint("organizationId", "metricType", "period", "date", name="uq_usage_metric"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    organizationId = Column(String(32), index=True, nullable=False)
    metricType = Column(String(40), nullable=False)
    period = Column(String(10), nullable=False)
    date = Column(String(10), nullable=False)
    value = Column(Float, nullable=False, default=0)


class AuditLog(Base):
    __tablename__ = "audit_log"

    logId = Column(String(40), primary_key=True)
    organizationId = Column(String(32), index=True, default="")
    entityType = Column(String(40), nullable=False)
    entityId = Column(String(120), default="")
    action = Column(String(80), nullable=False)
    fromState = Column(String(40), default="")
    toState = Column(String(40), default="")
    stageTag = Column(String(40), default="")
    remark = Column(Text, default="")
    actorUserId = Column(String(64), default="")
    actorRole = Column(String(20), default="")
    at = Column(String(40), nullable=False, index=True)
    metaJson = Column(Text, default="{}")
