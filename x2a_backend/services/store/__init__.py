"""
Persistence for projects, modules, jobs and artifacts.

``MigrationStore`` is the facade the routers use. It delegates CRUD to the
per-entity operation classes and enriches projects and modules with the
views derived from their latest jobs (migration plan, module status,
project state).
"""

import asyncio
import logging
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ...schemas import (
    Artifact,
    ArtifactType,
    Job,
    MigrationPhase,
    Module,
    Project,
    ProjectCreate,
    ProjectStatus,
)
from ..status import calculate_module_status, calculate_project_status
from .jobs import JobOperations, UNSET, conflict_for_active_job
from .modules import ModuleOperations
from .projects import DEFAULT_PAGE_SIZE, ProjectOperations

logger = logging.getLogger(__name__)

__all__ = ["MigrationStore", "UNSET", "conflict_for_active_job"]


class MigrationStore:

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory
        self.project_ops = ProjectOperations(session_factory)
        self.module_ops = ModuleOperations(session_factory)
        self.job_ops = JobOperations(session_factory)

    def transaction(self):
        """
        Session for a unit of writes that must commit together.

        Pass it as ``session=`` to the writers; nothing is committed unless
        the block exits cleanly.
        """
        return self.job_ops.transaction()

    # =========================================================================
    # Projects
    # =========================================================================

    async def create_project(self, data: ProjectCreate, created_by: str) -> Project:
        return await self.project_ops.create_project(data, created_by)

    async def list_projects(
        self,
        user: str,
        can_view_all: bool = False,
        page: int = 0,
        page_size: int = DEFAULT_PAGE_SIZE,
        sort: str = "createdAt",
        order: str = "desc",
    ) -> Tuple[List[Project], int]:
        projects, total_count = await self.project_ops.list_projects(
            user, can_view_all, page=page, page_size=page_size, sort=sort, order=order
        )
        await asyncio.gather(*(self._enrich_project(p) for p in projects))
        return projects, total_count

    async def get_project(
        self,
        project_id: str,
        user: str,
        can_view_all: bool = False,
    ) -> Optional[Project]:
        project = await self.project_ops.get_project(project_id, user, can_view_all)
        if project is not None:
            await self._enrich_project(project)
        return project

    async def delete_project(
        self,
        project_id: str,
        user: str,
        can_write_all: bool = False,
    ) -> int:
        return await self.project_ops.delete_project(project_id, user, can_write_all)

    async def _enrich_project(self, project: Project) -> Project:
        init_jobs = await self.job_ops.list_jobs(
            project.id, phase=MigrationPhase.INIT, last_job_only=True
        )
        init_job = init_jobs[0] if init_jobs else None
        project.migrationPlan = _find_artifact(init_job, ArtifactType.MIGRATION_PLAN)

        modules = await self.list_modules_with_status(project.id)
        project.status = calculate_project_status(modules, init_job)
        return project

    async def get_project_status(self, project_id: str) -> ProjectStatus:
        init_jobs = await self.job_ops.list_jobs(
            project_id, phase=MigrationPhase.INIT, last_job_only=True
        )
        modules = await self.list_modules_with_status(project_id)
        return calculate_project_status(modules, init_jobs[0] if init_jobs else None)

    # =========================================================================
    # Modules
    # =========================================================================

    async def create_module(
        self,
        name: str,
        source_path: str,
        project_id: str,
        session: Optional[AsyncSession] = None,
    ) -> Module:
        return await self.module_ops.create_module(name, source_path, project_id, session=session)

    async def get_module(self, module_id: str) -> Optional[Module]:
        return await self.module_ops.get_module(module_id)

    async def list_modules(self, project_id: str, session: Optional[AsyncSession] = None) -> List[Module]:
        return await self.module_ops.list_modules(project_id, session=session)

    async def delete_module(self, module_id: str, session: Optional[AsyncSession] = None) -> int:
        return await self.module_ops.delete_module(module_id, session=session)

    async def list_modules_with_status(self, project_id: str) -> List[Module]:
        modules = await self.module_ops.list_modules(project_id)
        await asyncio.gather(*(self._enrich_module(m) for m in modules))
        return modules

    async def get_module_with_status(self, module_id: str) -> Optional[Module]:
        module = await self.module_ops.get_module(module_id)
        if module is not None:
            await self._enrich_module(module)
        return module

    async def _enrich_module(self, module: Module) -> Module:
        for phase in (MigrationPhase.ANALYZE, MigrationPhase.MIGRATE, MigrationPhase.PUBLISH):
            jobs = await self.job_ops.list_jobs(
                module.projectId, module_id=module.id, phase=phase, last_job_only=True
            )
            setattr(module, phase.value, _without_log(jobs[0]) if jobs else None)

        module_status = calculate_module_status(module.analyze, module.migrate, module.publish)
        module.status = module_status.status
        module.errorDetails = module_status.error_details
        return module

    # =========================================================================
    # Jobs
    # =========================================================================

    async def create_job(self, *args, **kwargs) -> Job:
        return await self.job_ops.create_job(*args, **kwargs)

    async def get_job(self, job_id) -> Optional[Job]:
        return await self.job_ops.get_job(job_id)

    async def get_job_callback_token(self, job_id) -> Optional[str]:
        return await self.job_ops.get_job_callback_token(job_id)

    async def list_jobs(
        self,
        project_id: str,
        module_id: Optional[str] = None,
        phase: Optional[MigrationPhase] = None,
        last_job_only: bool = False,
    ) -> List[Job]:
        return await self.job_ops.list_jobs(project_id, module_id, phase, last_job_only)

    async def update_job(self, job_id, **fields) -> Optional[Job]:
        return await self.job_ops.update_job(job_id, **fields)

    async def delete_job(self, job_id) -> int:
        return await self.job_ops.delete_job(job_id)


def _find_artifact(job: Optional[Job], artifact_type: ArtifactType) -> Optional[Artifact]:
    if job is None:
        return None
    for artifact in job.artifacts:
        if artifact.type == artifact_type:
            return artifact
    return None


def _without_log(job: Job) -> Job:
    # Logs are large; the log endpoints serve them
    return job.model_copy(update={"log": None})
