from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, JSON, Index, text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.dialects.postgresql import UUID
from datetime import datetime, timezone
import uuid
from .database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Statuses that count as "still running" for the run mutual-exclusion indexes
ACTIVE_JOB_STATUS_SQL = "status IN ('pending', 'running')"


class Project(Base):
    """A migration from one source repository to one target repository."""
    __tablename__ = "projects"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    name = Column(String, nullable=False)
    abbreviation = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    source_repo_url = Column(String(500), nullable=False)
    source_repo_branch = Column(String, nullable=False)
    target_repo_url = Column(String(500), nullable=False)
    target_repo_branch = Column(String, nullable=False)
    created_by = Column(String, nullable=False, index=True)  # Caller identity (user entity ref)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, server_default=func.now())

    modules = relationship("Module", back_populates="project", cascade="all, delete-orphan")
    jobs = relationship("Job", back_populates="project", cascade="all, delete-orphan")


class Module(Base):
    """A unit of the source repository (e.g. one cookbook) migrated independently."""
    __tablename__ = "modules"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    name = Column(String, nullable=False)
    source_path = Column(String, nullable=False)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)

    project = relationship("Project", back_populates="modules")
    jobs = relationship("Job", back_populates="module", cascade="all, delete-orphan")


class Job(Base):
    """One execution of a phase, backed by one Kubernetes Job once submitted."""
    __tablename__ = "jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    project_id = Column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    module_id = Column(UUID(as_uuid=True), ForeignKey("modules.id", ondelete="CASCADE"), nullable=True, index=True)  # NULL for init
    phase = Column(String(20), nullable=False)  # init, analyze, migrate, publish
    status = Column(String(20), nullable=False, default="pending")  # pending, running, success, error
    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)
    k8s_job_name = Column(String, nullable=True)  # Set once the cluster Job exists
    callback_token = Column(String, nullable=True)  # Never leaves the storage layer
    error_details = Column(Text, nullable=True)
    log = Column(Text, nullable=True)
    telemetry = Column(JSON, nullable=True)

    project = relationship("Project", back_populates="jobs")
    module = relationship("Module", back_populates="jobs")
    artifacts = relationship(
        "Artifact",
        back_populates="job",
        cascade="all, delete-orphan",
        order_by="Artifact.position",
    )

    __table_args__ = (
        # At most one pending/running job per module
        Index(
            "uq_jobs_active_module",
            "module_id",
            unique=True,
            sqlite_where=text(f"module_id IS NOT NULL AND {ACTIVE_JOB_STATUS_SQL}"),
            postgresql_where=text(f"module_id IS NOT NULL AND {ACTIVE_JOB_STATUS_SQL}"),
        ),
        # At most one pending/running init job per project
        Index(
            "uq_jobs_active_init",
            "project_id",
            unique=True,
            sqlite_where=text(f"module_id IS NULL AND {ACTIVE_JOB_STATUS_SQL}"),
            postgresql_where=text(f"module_id IS NULL AND {ACTIVE_JOB_STATUS_SQL}"),
        ),
        Index("ix_jobs_project_phase_started", "project_id", "phase", "started_at"),
    )


class Artifact(Base):
    """Typed output of a job (plan document, source reference, metadata blob)."""
    __tablename__ = "artifacts"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4, index=True)
    job_id = Column(UUID(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True)
    type = Column(String(50), nullable=False)
    value = Column(Text, nullable=False)
    position = Column(Integer, nullable=False, default=0)  # Order within the job's artifact list

    job = relationship("Job", back_populates="artifacts")
