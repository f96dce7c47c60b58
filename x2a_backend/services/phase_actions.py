"""
Side effects of successful phase runs.

Only ``init`` defines one: the project metadata artifact it produces is the
authoritative module list and the stored modules are synchronized to it.
"""

import json
import logging
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..schemas import Artifact, ArtifactType, JobStatus, MigrationPhase
from .store import MigrationStore

logger = logging.getLogger(__name__)


def parse_project_metadata(value: str) -> Optional[List[Dict[str, str]]]:
    """
    Parse the module list out of a project_metadata artifact.

    Returns:
        List of {"name", "path"} entries, or None when the payload is not a
        JSON list of such objects. One bad entry rejects the whole list.
    """
    try:
        data = json.loads(value)
    except (TypeError, ValueError) as e:
        logger.error(f"[X2A:CALLBACK] Malformed project metadata JSON: {e}")
        return None

    if not isinstance(data, list):
        logger.error("[X2A:CALLBACK] Project metadata is not a list of modules")
        return None

    modules = []
    for entry in data:
        if not isinstance(entry, dict) or not entry.get("name") or not entry.get("path"):
            logger.error(f"[X2A:CALLBACK] Project metadata entry without name/path: {entry!r}")
            return None
        modules.append({"name": str(entry["name"]), "path": str(entry["path"])})
    return modules


async def sync_modules(
    store: MigrationStore,
    project_id: str,
    metadata: List[Dict[str, str]],
    session: Optional[AsyncSession] = None,
) -> None:
    """Create modules missing from the store, delete those missing from metadata."""
    existing = await store.list_modules(project_id, session=session)
    existing_by_name = {module.name: module for module in existing}
    wanted = {entry["name"]: entry for entry in metadata}

    for name, entry in wanted.items():
        if name not in existing_by_name:
            await store.create_module(
                name=name, source_path=entry["path"], project_id=project_id, session=session
            )

    for name, module in existing_by_name.items():
        if name not in wanted:
            await store.delete_module(module.id, session=session)

    logger.info(
        f"[X2A:CALLBACK] Synced modules of project {project_id}: "
        f"{len(set(wanted) - set(existing_by_name))} created, "
        f"{len(set(existing_by_name) - set(wanted))} deleted"
    )


async def execute_phase_actions(
    store: MigrationStore,
    project_id: str,
    phase: MigrationPhase,
    status: JobStatus,
    artifacts: List[Artifact],
    session: Optional[AsyncSession] = None,
) -> None:
    """
    Run the side effects of a reported job result.

    Pass the session that records the result so both commit together.
    """
    if status != JobStatus.SUCCESS:
        return

    if phase != MigrationPhase.INIT:
        return

    metadata_artifact = next(
        (a for a in artifacts if a.type == ArtifactType.PROJECT_METADATA), None
    )
    if metadata_artifact is None:
        logger.info(f"[X2A:CALLBACK] No project metadata in init result of project {project_id}")
        return

    metadata = parse_project_metadata(metadata_artifact.value)
    if metadata is None:
        return

    await sync_modules(store, project_id, metadata, session=session)
