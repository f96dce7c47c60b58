import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ... import models
from ...schemas import Artifact, Job, Module, Project, Telemetry

logger = logging.getLogger(__name__)


def as_uuid(value: Any) -> Optional[UUID]:
    """Parse an id from a path or body; None when it is not a UUID."""
    if value is None or isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _id(value: Optional[UUID]) -> Optional[str]:
    return str(value) if value is not None else None


def project_to_schema(row: models.Project) -> Project:
    return Project(
        id=str(row.id),
        name=row.name,
        abbreviation=row.abbreviation,
        description=row.description or "",
        sourceRepoUrl=row.source_repo_url,
        sourceRepoBranch=row.source_repo_branch,
        targetRepoUrl=row.target_repo_url,
        targetRepoBranch=row.target_repo_branch,
        createdBy=row.created_by,
        createdAt=row.created_at,
    )


def module_to_schema(row: models.Module) -> Module:
    return Module(
        id=str(row.id),
        name=row.name,
        sourcePath=row.source_path,
        projectId=str(row.project_id),
    )


def job_to_schema(row: models.Job, artifacts=None) -> Job:
    """Job projection; the callback token never leaves the storage layer."""
    if artifacts is None:
        artifacts = row.artifacts
    return Job(
        id=str(row.id),
        projectId=str(row.project_id),
        moduleId=_id(row.module_id),
        phase=row.phase,
        status=row.status,
        startedAt=row.started_at,
        finishedAt=row.finished_at,
        k8sJobName=row.k8s_job_name,
        errorDetails=row.error_details,
        log=row.log,
        telemetry=Telemetry.model_validate(row.telemetry) if row.telemetry else None,
        artifacts=[
            Artifact(id=str(a.id), type=a.type, value=a.value)
            for a in artifacts
        ],
    )


class StoreOperations:
    """
    Shared base: one session (and transaction) per operation.

    Writers also accept a caller-owned session; they then only flush and the
    caller commits or rolls back the whole unit.
    """

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    @asynccontextmanager
    async def transaction(self, session: Optional[AsyncSession] = None) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return

        async with self.session_factory() as owned:
            yield owned
            await owned.commit()
