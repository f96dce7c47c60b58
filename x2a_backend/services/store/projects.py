import logging
from typing import List, Optional, Tuple

from sqlalchemy import select, delete, func, asc, desc

from ... import models
from ...schemas import Project, ProjectCreate
from .base import StoreOperations, as_uuid, project_to_schema

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 10

SORT_COLUMNS = {
    "createdAt": models.Project.created_at,
    "name": models.Project.name,
    "abbreviation": models.Project.abbreviation,
    "description": models.Project.description,
    "createdBy": models.Project.created_by,
}


class ProjectOperations(StoreOperations):

    @staticmethod
    def _scoped(statement, user: str, unrestricted: bool):
        """Restrict a statement to the caller's own projects unless unrestricted."""
        if unrestricted:
            return statement
        return statement.where(models.Project.created_by == user)

    async def create_project(self, data: ProjectCreate, created_by: str) -> Project:
        async with self.session_factory() as session:
            row = models.Project(
                name=data.name,
                abbreviation=data.abbreviation,
                description=data.description,
                source_repo_url=data.sourceRepoUrl,
                source_repo_branch=data.sourceRepoBranch,
                target_repo_url=data.targetRepoUrl,
                target_repo_branch=data.targetRepoBranch,
                created_by=created_by,
            )
            session.add(row)
            await session.commit()
            await session.refresh(row)

        logger.info(f"[X2A:DB] Created project {row.id} ({row.name}) for {created_by}")
        return project_to_schema(row)

    async def list_projects(
        self,
        user: str,
        can_view_all: bool = False,
        page: int = 0,
        page_size: int = DEFAULT_PAGE_SIZE,
        sort: str = "createdAt",
        order: str = "desc",
    ) -> Tuple[List[Project], int]:
        column = SORT_COLUMNS.get(sort, models.Project.created_at)
        direction = asc if order == "asc" else desc

        async with self.session_factory() as session:
            count_query = self._scoped(
                select(func.count()).select_from(models.Project), user, can_view_all
            )
            total_count = (await session.execute(count_query)).scalar_one()

            query = self._scoped(select(models.Project), user, can_view_all)
            query = (
                query.order_by(direction(column), desc(models.Project.id))
                .offset(max(page, 0) * page_size)
                .limit(page_size)
            )
            result = await session.execute(query)
            rows = result.scalars().all()

        return [project_to_schema(row) for row in rows], total_count

    async def get_project(
        self,
        project_id: str,
        user: str,
        can_view_all: bool = False,
    ) -> Optional[Project]:
        pid = as_uuid(project_id)
        if pid is None:
            return None

        async with self.session_factory() as session:
            query = self._scoped(
                select(models.Project).where(models.Project.id == pid), user, can_view_all
            )
            result = await session.execute(query)
            row = result.scalar_one_or_none()

        return project_to_schema(row) if row else None

    async def delete_project(
        self,
        project_id: str,
        user: str,
        can_write_all: bool = False,
    ) -> int:
        """Delete a project with its modules, jobs and artifacts; returns rows deleted (0 or 1)."""
        pid = as_uuid(project_id)
        if pid is None:
            return 0

        async with self.session_factory() as session:
            query = self._scoped(
                select(models.Project.id).where(models.Project.id == pid), user, can_write_all
            )
            if (await session.execute(query)).scalar_one_or_none() is None:
                return 0

            job_ids = select(models.Job.id).where(models.Job.project_id == pid)
            await session.execute(delete(models.Artifact).where(models.Artifact.job_id.in_(job_ids)))
            await session.execute(delete(models.Job).where(models.Job.project_id == pid))
            await session.execute(delete(models.Module).where(models.Module.project_id == pid))
            result = await session.execute(delete(models.Project).where(models.Project.id == pid))
            await session.commit()

        logger.info(f"[X2A:DB] Deleted project {project_id}")
        return result.rowcount
