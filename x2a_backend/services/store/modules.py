import logging
from typing import List, Optional

from sqlalchemy import select, delete
from sqlalchemy.ext.asyncio import AsyncSession

from ... import models
from ...schemas import Module
from .base import StoreOperations, as_uuid, module_to_schema

logger = logging.getLogger(__name__)


class ModuleOperations(StoreOperations):

    async def create_module(
        self,
        name: str,
        source_path: str,
        project_id: str,
        session: Optional[AsyncSession] = None,
    ) -> Module:
        async with self.transaction(session) as s:
            row = models.Module(
                name=name,
                source_path=source_path,
                project_id=as_uuid(project_id),
            )
            s.add(row)
            await s.flush()
            module = module_to_schema(row)

        logger.info(f"[X2A:DB] Created module {module.id} ({name}) in project {project_id}")
        return module

    async def get_module(self, module_id: str) -> Optional[Module]:
        mid = as_uuid(module_id)
        if mid is None:
            return None

        async with self.session_factory() as session:
            result = await session.execute(
                select(models.Module).where(models.Module.id == mid)
            )
            row = result.scalar_one_or_none()

        return module_to_schema(row) if row else None

    async def list_modules(self, project_id: str, session: Optional[AsyncSession] = None) -> List[Module]:
        pid = as_uuid(project_id)
        if pid is None:
            return []

        async with self.transaction(session) as s:
            result = await s.execute(
                select(models.Module)
                .where(models.Module.project_id == pid)
                .order_by(models.Module.name)
            )
            return [module_to_schema(row) for row in result.scalars().all()]

    async def delete_module(self, module_id: str, session: Optional[AsyncSession] = None) -> int:
        """Delete a module with its jobs and their artifacts."""
        mid = as_uuid(module_id)
        if mid is None:
            return 0

        async with self.transaction(session) as s:
            job_ids = select(models.Job.id).where(models.Job.module_id == mid)
            await s.execute(delete(models.Artifact).where(models.Artifact.job_id.in_(job_ids)))
            await s.execute(delete(models.Job).where(models.Job.module_id == mid))
            result = await s.execute(delete(models.Module).where(models.Module.id == mid))

        if result.rowcount:
            logger.info(f"[X2A:DB] Deleted module {module_id}")
        return result.rowcount
