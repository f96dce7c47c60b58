from pydantic import BaseModel, Field, field_validator, model_validator
from datetime import datetime
from enum import Enum
from typing import Optional, List, Dict, Any
from uuid import UUID

from .config import AAPCredentials


class MigrationPhase(str, Enum):
    INIT = "init"
    ANALYZE = "analyze"
    MIGRATE = "migrate"
    PUBLISH = "publish"


MODULE_PHASES = (MigrationPhase.ANALYZE, MigrationPhase.MIGRATE, MigrationPhase.PUBLISH)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING)
TERMINAL_JOB_STATUSES = (JobStatus.SUCCESS, JobStatus.ERROR)


class ArtifactType(str, Enum):
    MIGRATION_PLAN = "migration_plan"
    MODULE_MIGRATION_PLAN = "module_migration_plan"
    MIGRATED_SOURCES = "migrated_sources"
    PROJECT_METADATA = "project_metadata"
    ANSIBLE_PROJECT = "ansible_project"


class ProjectState(str, Enum):
    CREATED = "created"
    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    IN_PROGRESS = "inProgress"
    COMPLETED = "completed"
    FAILED = "failed"


# ============================================================================
# Artifacts / Telemetry
# ============================================================================

class Artifact(BaseModel):
    id: Optional[str] = None
    type: ArtifactType
    value: str


class AgentMetrics(BaseModel):
    name: str
    startedAt: Optional[str] = None
    endedAt: Optional[str] = None
    durationSeconds: float
    metrics: Optional[Dict[str, Any]] = None
    toolCalls: Optional[Dict[str, int]] = None


class Telemetry(BaseModel):
    summary: str
    phase: str
    startedAt: str
    endedAt: Optional[str] = None
    agents: Optional[Dict[str, AgentMetrics]] = None


# ============================================================================
# Jobs
# ============================================================================

class Job(BaseModel):
    """Job projection returned across the service boundary (no callback token)."""
    id: str
    projectId: str
    moduleId: Optional[str] = None
    phase: MigrationPhase
    status: JobStatus
    startedAt: datetime
    finishedAt: Optional[datetime] = None
    k8sJobName: Optional[str] = None
    errorDetails: Optional[str] = None
    log: Optional[str] = None
    telemetry: Optional[Telemetry] = None
    artifacts: List[Artifact] = []

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_JOB_STATUSES


# ============================================================================
# Modules
# ============================================================================

class ModuleCreate(BaseModel):
    name: str = Field(..., min_length=1)
    sourcePath: str = Field(..., min_length=1)


class Module(BaseModel):
    id: str
    name: str
    sourcePath: str
    projectId: str
    status: Optional[JobStatus] = None
    errorDetails: Optional[str] = None
    analyze: Optional[Job] = None
    migrate: Optional[Job] = None
    publish: Optional[Job] = None


# ============================================================================
# Projects
# ============================================================================

class ModulesSummary(BaseModel):
    total: int = 0
    finished: int = 0
    waiting: int = 0
    pending: int = 0
    running: int = 0
    error: int = 0


class ProjectStatus(BaseModel):
    state: ProjectState
    modulesSummary: ModulesSummary


class ProjectCreate(BaseModel):
    name: str = Field(..., min_length=1)
    abbreviation: str = Field(..., min_length=1)
    description: str = ""
    sourceRepoUrl: str = Field(..., min_length=1)
    sourceRepoBranch: str = Field(..., min_length=1)
    targetRepoUrl: str = Field(..., min_length=1)
    targetRepoBranch: str = Field(..., min_length=1)


class Project(BaseModel):
    id: str
    name: str
    abbreviation: str
    description: str
    sourceRepoUrl: str
    sourceRepoBranch: str
    targetRepoUrl: str
    targetRepoBranch: str
    createdBy: str
    createdAt: datetime
    migrationPlan: Optional[Artifact] = None
    status: Optional[ProjectStatus] = None


class ProjectList(BaseModel):
    totalCount: int
    items: List[Project]


class DeleteResult(BaseModel):
    deletedCount: int


# ============================================================================
# Run submission
# ============================================================================

class RepoAuth(BaseModel):
    token: str


class RunRequest(BaseModel):
    sourceRepoAuth: Optional[RepoAuth] = None
    targetRepoAuth: Optional[RepoAuth] = None
    aapCredentials: Optional[AAPCredentials] = None
    userPrompt: Optional[str] = None


class ModuleRunRequest(RunRequest):
    phase: MigrationPhase

    @field_validator('phase')
    @classmethod
    def validate_phase(cls, v):
        if v not in MODULE_PHASES:
            raise ValueError('phase must be one of "analyze", "migrate", "publish"')
        return v


class RunResponse(BaseModel):
    status: JobStatus = JobStatus.PENDING
    jobId: str


# ============================================================================
# Callback
# ============================================================================

class CollectArtifactsRequest(BaseModel):
    status: JobStatus
    errorDetails: Optional[str] = None
    jobId: UUID
    artifacts: List[Artifact] = []
    telemetry: Optional[Telemetry] = None

    @field_validator('status')
    @classmethod
    def validate_status(cls, v):
        if v not in TERMINAL_JOB_STATUSES:
            raise ValueError('status must be "success" or "error"')
        return v

    @field_validator('jobId', mode='before')
    @classmethod
    def validate_job_id(cls, v):
        try:
            return UUID(str(v))
        except ValueError:
            raise ValueError('Job ID must be a valid UUID')

    @model_validator(mode='after')
    def validate_error_details(self):
        if self.status == JobStatus.ERROR and not self.errorDetails:
            raise ValueError('errorDetails field is required when status is Error')
        return self


class MessageResponse(BaseModel):
    message: str
