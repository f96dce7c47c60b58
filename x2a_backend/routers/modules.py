"""
Modules API Router.

Modules of a project with their latest per-phase jobs and derived status,
manual module management, module phase runs and module job logs.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, status

from ..auth import Credentials
from ..errors import NotFoundError
from ..schemas import (
    DeleteResult,
    MigrationPhase,
    Module,
    ModuleCreate,
    ModuleRunRequest,
    RunResponse,
)
from ..services.store.base import as_uuid
from .common import (
    RouterDeps,
    can_view_all,
    ensure_no_active_job,
    get_credentials,
    get_deps,
    get_project_module,
    get_visible_project,
    resolve_repo_tokens,
    serve_job_log,
    submit_run,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["modules"])


@router.get("/projects/{projectId}/modules", response_model=List[Module])
async def list_modules(
    projectId: str,
    credentials: Credentials = Depends(get_credentials),
    deps: RouterDeps = Depends(get_deps),
):
    await get_visible_project(deps, credentials, projectId)
    return await deps.store.list_modules_with_status(projectId)


@router.post("/projects/{projectId}/modules", response_model=Module, status_code=status.HTTP_201_CREATED)
async def create_module(
    projectId: str,
    body: ModuleCreate,
    credentials: Credentials = Depends(get_credentials),
    deps: RouterDeps = Depends(get_deps),
):
    await get_visible_project(deps, credentials, projectId)

    module = await deps.store.create_module(
        name=body.name, source_path=body.sourcePath, project_id=projectId
    )
    logger.info(f"[X2A:RUN] Module created: moduleId={module.id}, name={module.name}")
    return module


@router.get("/projects/{projectId}/modules/{moduleId}", response_model=Module)
async def get_module(
    projectId: str,
    moduleId: str,
    credentials: Credentials = Depends(get_credentials),
    deps: RouterDeps = Depends(get_deps),
):
    await get_visible_project(deps, credentials, projectId)
    await get_project_module(deps, projectId, moduleId)
    return await deps.store.get_module_with_status(moduleId)


@router.delete("/projects/{projectId}/modules/{moduleId}", response_model=DeleteResult)
async def delete_module(
    projectId: str,
    moduleId: str,
    credentials: Credentials = Depends(get_credentials),
    deps: RouterDeps = Depends(get_deps),
):
    await get_visible_project(deps, credentials, projectId)
    await get_project_module(deps, projectId, moduleId)

    deleted_count = await deps.store.delete_module(moduleId)
    return DeleteResult(deletedCount=deleted_count)


@router.post("/projects/{projectId}/modules/{moduleId}/run", response_model=RunResponse)
async def run_module_phase(
    projectId: str,
    moduleId: str,
    body: ModuleRunRequest,
    credentials: Credentials = Depends(get_credentials),
    deps: RouterDeps = Depends(get_deps),
):
    """
    Start analyze, migrate or publish for one module.

    At most one job per module is pending/running at a time, whatever its
    phase.
    """
    repo_tokens = resolve_repo_tokens(body, deps.settings)

    project = await get_visible_project(deps, credentials, projectId)
    module = await get_project_module(deps, projectId, moduleId)

    module_jobs = await deps.store.list_jobs(projectId, module_id=moduleId)
    await ensure_no_active_job(deps, module_jobs)

    return await submit_run(
        deps, credentials, project, body.phase, body, repo_tokens, module=module
    )


@router.get("/projects/{projectId}/modules/{moduleId}/log")
async def get_module_log(
    projectId: str,
    moduleId: str,
    phase: MigrationPhase,
    streaming: bool = False,
    credentials: Credentials = Depends(get_credentials),
    deps: RouterDeps = Depends(get_deps),
):
    project = await deps.store.get_project(
        projectId,
        user=credentials.user_ref,
        can_view_all=await can_view_all(deps, credentials),
    )
    if project is None:
        raise NotFoundError("Project not found")

    module = await deps.store.get_module(moduleId)
    if module is None:
        raise NotFoundError("Module not found")
    if as_uuid(module.projectId) != as_uuid(projectId):
        raise NotFoundError("Module does not belong to project")

    jobs = await deps.store.list_jobs(
        projectId, module_id=moduleId, phase=phase, last_job_only=True
    )
    if not jobs:
        raise NotFoundError(f"No jobs found for module with phase '{phase.value}'")

    return await serve_job_log(deps, jobs[0], streaming)
