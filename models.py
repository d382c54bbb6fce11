from __future__ import annotations

from sqlalchemy import Boolean, Column, Float, Integer, String, Text, UniqueConstraint

from db import Base


class User(Base):
    __tablename__ = "users"

    userId = Column(String, primary_key=True)
    email = Column(String, nullable=False, unique=True, index=True)
    fullName = Column(Text, nullable=False, default="")
    role = Column(String, nullable=False, index=True)  # ADMIN|HR_MANAGER|RECRUITER|INTERVIEWER
    status = Column(String, nullable=False, default="ACTIVE", index=True)
    passwordHash = Column(Text, nullable=False, default="")
    lastLoginAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Role(Base):
    __tablename__ = "roles"

    roleCode = Column(String, primary_key=True)
    roleName = Column(String, nullable=False, default="")
    status = Column(String, nullable=False, default="ACTIVE")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Permission(Base):
    __tablename__ = "permissions"
    __table_args__ = (UniqueConstraint("permType", "permKey", name="uq_permissions_type_key"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    permType = Column(String, nullable=False)
    permKey = Column(String, nullable=False)
    rolesCsv = Column(Text, nullable=False, default="")
    enabled = Column(Boolean, nullable=False, default=True)
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class Session(Base):
    __tablename__ = "sessions"

    sessionId = Column(String, primary_key=True)
    tokenHash = Column(String, nullable=False, unique=True, index=True)
    tokenPrefix = Column(String, nullable=False, default="", index=True)
    userId = Column(String, nullable=False, default="", index=True)
    email = Column(String, nullable=False, default="")
    role = Column(String, nullable=False, default="", index=True)
    issuedAt = Column(Text, nullable=False, default="")
    expiresAt = Column(Text, nullable=False, default="")
    lastSeenAt = Column(Text, nullable=False, default="")
    revokedAt = Column(Text, nullable=False, default="")
    revokedBy = Column(String, nullable=False, default="")


class JobPosting(Base):
    __tablename__ = "job_postings"

    jobId = Column(String, primary_key=True)
    title = Column(Text, nullable=False, default="")
    department = Column(Text, nullable=False, default="", index=True)
    location = Column(Text, nullable=False, default="")
    jobType = Column(String, nullable=False, default="Full-time")
    description = Column(Text, nullable=False, default="")
    requirementsJson = Column(Text, nullable=False, default="[]")  # ordered list of strings
    salaryRange = Column(Text, nullable=False, default="")
    deadline = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="Active", index=True)  # Active|Paused|Closed
    postedDate = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class JobPortal(Base):
    __tablename__ = "job_portals"
    __table_args__ = (UniqueConstraint("jobId", "name", name="uq_job_portals_job_name"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    jobId = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False, default="")
    url = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="Draft")  # Posted|Draft|Expired
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Candidate(Base):
    __tablename__ = "candidates"

    candidateId = Column(String, primary_key=True)
    jobId = Column(String, nullable=False, default="", index=True)
    name = Column(Text, nullable=False, default="")
    email = Column(String, nullable=False, default="", index=True)
    phone = Column(String, nullable=False, default="")
    position = Column(Text, nullable=False, default="")
    source = Column(String, nullable=False, default="", index=True)
    experienceYears = Column(Float, nullable=True)
    stage = Column(String, nullable=False, default="Applied", index=True)
    stageUpdatedAt = Column(Text, nullable=False, default="")
    resumeFileId = Column(String, nullable=False, default="")
    assignmentLocation = Column(Text, nullable=False, default="")
    assignmentDetailsJson = Column(Text, nullable=False, default="{}")
    inHouseAssignmentStatus = Column(String, nullable=False, default="")
    appliedDate = Column(Text, nullable=False, default="", index=True)
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class CandidateNote(Base):
    __tablename__ = "candidate_notes"

    noteId = Column(String, primary_key=True)
    candidateId = Column(String, nullable=False, default="", index=True)
    userId = Column(String, nullable=False, default="", index=True)
    userRole = Column(String, nullable=False, default="")
    noteType = Column(String, nullable=False, default="General", index=True)
    content = Column(Text, nullable=False, default="")
    isPrivate = Column(Boolean, nullable=False, default=False, index=True)
    createdAt = Column(Text, nullable=False, default="", index=True)
    updatedAt = Column(Text, nullable=False, default="")


class CandidateRating(Base):
    __tablename__ = "candidate_ratings"
    __table_args__ = (
        UniqueConstraint("candidateId", "userId", "ratingType", name="uq_candidate_ratings_candidate_user_type"),
    )

    ratingId = Column(String, primary_key=True)
    candidateId = Column(String, nullable=False, default="", index=True)
    userId = Column(String, nullable=False, default="", index=True)
    userRole = Column(String, nullable=False, default="")
    ratingType = Column(String, nullable=False, default="", index=True)
    score = Column(Float, nullable=False, default=0.0)
    comments = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="", index=True)
    updatedAt = Column(Text, nullable=False, default="")


class Assignment(Base):
    __tablename__ = "assignments"

    assignmentId = Column(String, primary_key=True)
    candidateId = Column(String, nullable=False, default="", index=True)
    jobId = Column(String, nullable=False, default="", index=True)
    assignedBy = Column(String, nullable=False, default="")
    title = Column(Text, nullable=False, default="")
    descriptionHtml = Column(Text, nullable=False, default="")
    dueDate = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="Draft", index=True)
    sentAt = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class StoredFile(Base):
    __tablename__ = "stored_files"

    fileId = Column(String, primary_key=True)  # 32 hex chars, prefix of the on-disk name
    originalName = Column(Text, nullable=False, default="")
    mimeType = Column(String, nullable=False, default="")
    size = Column(Integer, nullable=False, default=0)
    kind = Column(String, nullable=False, default="", index=True)  # RESUME|ATTACHMENT|SUBMISSION
    candidateId = Column(String, nullable=False, default="", index=True)
    assignmentId = Column(String, nullable=False, default="", index=True)
    uploadedBy = Column(String, nullable=False, default="")
    uploadedAt = Column(Text, nullable=False, default="")


class Interview(Base):
    __tablename__ = "interviews"

    interviewId = Column(String, primary_key=True)
    candidateId = Column(String, nullable=False, default="", index=True)
    interviewerId = Column(String, nullable=False, default="", index=True)
    scheduledDate = Column(Text, nullable=False, default="", index=True)  # ISO UTC
    duration = Column(Integer, nullable=False, default=60)  # minutes
    type = Column(String, nullable=False, default="Technical")
    status = Column(String, nullable=False, default="Scheduled", index=True)
    location = Column(Text, nullable=False, default="")
    meetingLink = Column(Text, nullable=False, default="")
    round = Column(Integer, nullable=False, default=1)
    notes = Column(Text, nullable=False, default="")
    createdAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")
    updatedBy = Column(String, nullable=False, default="")


class InterviewFeedback(Base):
    __tablename__ = "interview_feedback"

    feedbackId = Column(String, primary_key=True)
    interviewId = Column(String, nullable=False, unique=True, index=True)
    interviewerId = Column(String, nullable=False, default="", index=True)
    overallRating = Column(Float, nullable=False, default=0.0)
    recommendation = Column(String, nullable=False, default="")
    comments = Column(Text, nullable=False, default="")
    strengthsJson = Column(Text, nullable=False, default="[]")
    weaknessesJson = Column(Text, nullable=False, default="[]")
    createdAt = Column(Text, nullable=False, default="")


class Communication(Base):
    __tablename__ = "communications"

    communicationId = Column(String, primary_key=True)
    candidateId = Column(String, nullable=False, default="", index=True)
    assignmentId = Column(String, nullable=False, default="", index=True)
    type = Column(String, nullable=False, default="Email")
    subject = Column(Text, nullable=False, default="")
    content = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="Sent", index=True)  # Sent|Pending|Failed
    createdAt = Column(Text, nullable=False, default="", index=True)
    createdBy = Column(String, nullable=False, default="")


class CandidateActivity(Base):
    __tablename__ = "candidate_activity"

    activityId = Column(String, primary_key=True)
    candidateId = Column(String, nullable=False, default="", index=True)
    type = Column(String, nullable=False, default="", index=True)  # STAGE|NOTE|RATING|ASSIGNMENT|INTERVIEW|SYSTEM
    payloadJson = Column(Text, nullable=False, default="")
    at = Column(Text, nullable=False, default="", index=True)
    actorUserId = Column(String, nullable=False, default="", index=True)
    actorRole = Column(String, nullable=False, default="", index=True)


class AuditLog(Base):
    __tablename__ = "audit_log"

    logId = Column(String, primary_key=True)
    entityType = Column(String, nullable=False, default="", index=True)
    entityId = Column(String, nullable=False, default="", index=True)
    action = Column(String, nullable=False, default="", index=True)
    fromState = Column(String, nullable=False, default="")
    toState = Column(String, nullable=False, default="")
    stageTag = Column(String, nullable=False, default="", index=True)
    remark = Column(Text, nullable=False, default="")
    actorUserId = Column(String, nullable=False, default="", index=True)
    actorRole = Column(String, nullable=False, default="", index=True)
    actorEmail = Column(Text, nullable=False, default="")
    at = Column(Text, nullable=False, default="", index=True)
    correlationId = Column(String, nullable=False, default="", index=True)
    metaJson = Column(Text, nullable=False, default="")
