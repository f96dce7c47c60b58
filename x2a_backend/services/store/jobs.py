import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select, delete, desc
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from ... import models
from ...errors import ConflictError
from ...schemas import (
    ACTIVE_JOB_STATUSES,
    Artifact,
    ArtifactType,
    Job,
    JobStatus,
    MigrationPhase,
    Telemetry,
)
from .base import StoreOperations, as_uuid, job_to_schema

logger = logging.getLogger(__name__)

# Marks an update_job argument as "leave unchanged"
UNSET: Any = object()


def conflict_for_active_job(job: Job) -> ConflictError:
    """The 409 raised when a run is requested while ``job`` is still active."""
    phase = MigrationPhase(job.phase).value
    if job.moduleId is None:
        return ConflictError(
            f"An {phase} job is already running for this project",
            active_job_id=job.id,
            active_job_phase=phase,
            details="Please wait for the current job to complete or cancel it before starting a new one",
        )
    return ConflictError(
        f"A {phase} job is already running for this module",
        active_job_id=job.id,
        active_job_phase=phase,
    )


def _artifact_rows(job_id, artifacts: List[Artifact]) -> List[models.Artifact]:
    rows = []
    for position, artifact in enumerate(artifacts):
        row = models.Artifact(
            job_id=job_id,
            type=ArtifactType(artifact.type).value,
            value=artifact.value,
            position=position,
        )
        artifact_id = as_uuid(artifact.id)
        if artifact_id is not None:
            row.id = artifact_id
        rows.append(row)
    return rows


class JobOperations(StoreOperations):

    def _job_query(self):
        return select(models.Job).options(selectinload(models.Job.artifacts))

    async def create_job(
        self,
        project_id: str,
        phase: MigrationPhase,
        module_id: Optional[str] = None,
        callback_token: Optional[str] = None,
        status: JobStatus = JobStatus.PENDING,
        artifacts: Optional[List[Artifact]] = None,
    ) -> Job:
        """
        Insert a job record.

        Raises:
            ConflictError: another pending/running job already exists for the
                module (or, for init, the project)
        """
        pid = as_uuid(project_id)
        mid = as_uuid(module_id)

        async with self.session_factory() as session:
            row = models.Job(
                project_id=pid,
                module_id=mid,
                phase=MigrationPhase(phase).value,
                status=JobStatus(status).value,
                callback_token=callback_token,
            )
            session.add(row)
            try:
                await session.flush()
                if artifacts:
                    session.add_all(_artifact_rows(row.id, artifacts))
                await session.commit()
            except IntegrityError:
                await session.rollback()
                active = await self._find_active_job(session, pid, mid)
                if active is None:
                    raise
                logger.warning(
                    f"[X2A:DB] Rejected {MigrationPhase(phase).value} job for project {project_id}: "
                    f"job {active.id} is still {active.status.value}"
                )
                raise conflict_for_active_job(active)

            job_id = row.id

        logger.info(f"[X2A:DB] Created {MigrationPhase(phase).value} job {job_id} for project {project_id}")
        return await self.get_job(job_id)

    async def _find_active_job(self, session, project_id, module_id) -> Optional[Job]:
        query = self._job_query().where(
            models.Job.project_id == project_id,
            models.Job.status.in_([s.value for s in ACTIVE_JOB_STATUSES]),
        )
        if module_id is None:
            query = query.where(models.Job.module_id.is_(None))
        else:
            query = query.where(models.Job.module_id == module_id)

        result = await session.execute(query.order_by(desc(models.Job.started_at)).limit(1))
        row = result.scalar_one_or_none()
        return job_to_schema(row) if row else None

    async def get_job(self, job_id) -> Optional[Job]:
        jid = as_uuid(job_id)
        if jid is None:
            return None

        async with self.session_factory() as session:
            result = await session.execute(self._job_query().where(models.Job.id == jid))
            row = result.scalar_one_or_none()
            return job_to_schema(row) if row else None

    async def get_job_callback_token(self, job_id) -> Optional[str]:
        """The only read path for a job's callback token (signature checks)."""
        jid = as_uuid(job_id)
        if jid is None:
            return None

        async with self.session_factory() as session:
            result = await session.execute(
                select(models.Job.callback_token).where(models.Job.id == jid)
            )
            return result.scalar_one_or_none()

    async def list_jobs(
        self,
        project_id: str,
        module_id: Optional[str] = None,
        phase: Optional[MigrationPhase] = None,
        last_job_only: bool = False,
    ) -> List[Job]:
        """
        Jobs of a project, newest first.

        With ``last_job_only`` only the most recently started job matching the
        (module, phase) filter is returned; status derivation depends on it.
        """
        pid = as_uuid(project_id)
        if pid is None:
            return []

        query = self._job_query().where(models.Job.project_id == pid)
        if module_id is not None:
            mid = as_uuid(module_id)
            if mid is None:
                return []
            query = query.where(models.Job.module_id == mid)
        if phase is not None:
            query = query.where(models.Job.phase == MigrationPhase(phase).value)

        query = query.order_by(desc(models.Job.started_at))
        if last_job_only:
            query = query.limit(1)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return [job_to_schema(row) for row in result.scalars().all()]

    async def update_job(
        self,
        job_id,
        status: JobStatus = UNSET,
        finished_at: Optional[datetime] = UNSET,
        error_details: Optional[str] = UNSET,
        log: Optional[str] = UNSET,
        k8s_job_name: Optional[str] = UNSET,
        telemetry: Optional[Telemetry] = UNSET,
        artifacts: List[Artifact] = UNSET,
        session: Optional[AsyncSession] = None,
    ) -> Optional[Job]:
        """
        Update the supplied fields of a job in one transaction.

        ``artifacts`` is a full replace: existing artifacts are deleted and the
        given list inserted in order. With ``session`` the update joins the
        caller's transaction.
        """
        jid = as_uuid(job_id)
        if jid is None:
            return None

        values: Dict[str, Any] = {}
        if status is not UNSET:
            values["status"] = JobStatus(status).value
        if finished_at is not UNSET:
            values["finished_at"] = finished_at
        if error_details is not UNSET:
            values["error_details"] = error_details
        if log is not UNSET:
            values["log"] = log
        if k8s_job_name is not UNSET:
            values["k8s_job_name"] = k8s_job_name
        if telemetry is not UNSET:
            values["telemetry"] = telemetry.model_dump(exclude_none=True) if telemetry else None

        async with self.transaction(session) as s:
            result = await s.execute(select(models.Job).where(models.Job.id == jid))
            row = result.scalar_one_or_none()
            if row is None:
                return None

            for key, value in values.items():
                setattr(row, key, value)

            if artifacts is not UNSET:
                await s.execute(delete(models.Artifact).where(models.Artifact.job_id == jid))
                s.add_all(_artifact_rows(jid, artifacts or []))

            await s.flush()
            result = await s.execute(
                self._job_query()
                .where(models.Job.id == jid)
                .execution_options(populate_existing=True)
            )
            job = job_to_schema(result.scalar_one())

        logger.debug(f"[X2A:DB] Updated job {job_id}: {sorted(values)}")
        return job

    async def delete_job(self, job_id) -> int:
        jid = as_uuid(job_id)
        if jid is None:
            return 0

        async with self.session_factory() as session:
            await session.execute(delete(models.Artifact).where(models.Artifact.job_id == jid))
            result = await session.execute(delete(models.Job).where(models.Job.id == jid))
            await session.commit()
        return result.rowcount
