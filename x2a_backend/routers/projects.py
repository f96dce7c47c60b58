"""
Projects API Router.

Project CRUD, the init-phase run and its log, and the project job history.
"""

import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query

from ..auth import ADMIN_WRITE_PERMISSION, USER_PERMISSION, Credentials
from ..errors import NotAllowedError, NotFoundError
from ..schemas import (
    DeleteResult,
    Job,
    MigrationPhase,
    Project,
    ProjectCreate,
    ProjectList,
    RunRequest,
    RunResponse,
)
from ..services.store.projects import DEFAULT_PAGE_SIZE
from .common import (
    RouterDeps,
    can_view_all,
    can_write_all,
    ensure_no_active_job,
    get_credentials,
    get_deps,
    get_visible_project,
    resolve_repo_tokens,
    serve_job_log,
    submit_run,
)

logger = logging.getLogger(__name__)

router = APIRouter(tags=["projects"])


@router.get("/projects", response_model=ProjectList)
async def list_projects(
    page: int = Query(0, ge=0),
    pageSize: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=100),
    order: Literal["asc", "desc"] = "desc",
    sort: Literal["createdAt", "name", "abbreviation", "description", "createdBy"] = "createdAt",
    credentials: Credentials = Depends(get_credentials),
    deps: RouterDeps = Depends(get_deps),
):
    projects, total_count = await deps.store.list_projects(
        user=credentials.user_ref,
        can_view_all=await can_view_all(deps, credentials),
        page=page,
        page_size=pageSize,
        sort=sort,
        order=order,
    )
    return ProjectList(totalCount=total_count, items=projects)


@router.post("/projects", response_model=Project)
async def create_project(
    body: ProjectCreate,
    credentials: Credentials = Depends(get_credentials),
    deps: RouterDeps = Depends(get_deps),
):
    allowed = await deps.permissions.authorize_any(
        credentials, [ADMIN_WRITE_PERMISSION, USER_PERMISSION]
    )
    if not allowed:
        raise NotAllowedError("You are not allowed to create a project")

    return await deps.store.create_project(body, created_by=credentials.user_ref)


@router.get("/projects/{projectId}", response_model=Project)
async def get_project(
    projectId: str,
    credentials: Credentials = Depends(get_credentials),
    deps: RouterDeps = Depends(get_deps),
):
    return await get_visible_project(deps, credentials, projectId)


async def _stop_project_jobs(deps: RouterDeps, project_id: str) -> None:
    """Delete the cluster Jobs still labelled with a deleted project."""
    try:
        k8s_jobs = await deps.kube_service.list_jobs_for_project(project_id)
    except Exception as e:
        logger.warning(f"[X2A:RUN] Error listing cluster jobs of project {project_id}: {e}")
        return

    for k8s_job in k8s_jobs:
        name = k8s_job.metadata.name
        try:
            await deps.kube_service.delete_job(name)
        except Exception as e:
            logger.warning(f"[X2A:RUN] Error deleting cluster job {name} of project {project_id}: {e}")

    if k8s_jobs:
        logger.info(f"[X2A:RUN] Deleted {len(k8s_jobs)} cluster jobs of project {project_id}")


@router.delete("/projects/{projectId}", response_model=DeleteResult)
async def delete_project(
    projectId: str,
    credentials: Credentials = Depends(get_credentials),
    deps: RouterDeps = Depends(get_deps),
):
    deleted_count = await deps.store.delete_project(
        projectId,
        user=credentials.user_ref,
        can_write_all=await can_write_all(deps, credentials),
    )
    if deleted_count == 0:
        raise NotFoundError("Project not found")

    await _stop_project_jobs(deps, projectId)
    await deps.kube_service.delete_project_secret(projectId)
    logger.info(f"[X2A:RUN] Project {projectId} deleted by {credentials.user_ref}")
    return DeleteResult(deletedCount=deleted_count)


@router.post("/projects/{projectId}/run", response_model=RunResponse)
async def run_init(
    projectId: str,
    body: Optional[RunRequest] = None,
    credentials: Credentials = Depends(get_credentials),
    deps: RouterDeps = Depends(get_deps),
):
    """
    Start the init phase of a project.

    Rejected with 409 while an earlier init job is still pending/running in
    the cluster (stale records are reconciled first).
    """
    run = body or RunRequest()
    repo_tokens = resolve_repo_tokens(run, deps.settings)

    project = await get_visible_project(deps, credentials, projectId)

    init_jobs = await deps.store.list_jobs(projectId, phase=MigrationPhase.INIT)
    await ensure_no_active_job(deps, init_jobs)

    return await submit_run(
        deps, credentials, project, MigrationPhase.INIT, run, repo_tokens
    )


@router.get("/projects/{projectId}/log")
async def get_init_log(
    projectId: str,
    streaming: bool = False,
    credentials: Credentials = Depends(get_credentials),
    deps: RouterDeps = Depends(get_deps),
):
    await get_visible_project(deps, credentials, projectId)

    jobs = await deps.store.list_jobs(projectId, phase=MigrationPhase.INIT, last_job_only=True)
    if not jobs:
        raise NotFoundError("No jobs found for project with phase 'init'")

    return await serve_job_log(deps, jobs[0], streaming)


@router.get("/projects/{projectId}/jobs", response_model=List[Job])
async def list_project_jobs(
    projectId: str,
    credentials: Credentials = Depends(get_credentials),
    deps: RouterDeps = Depends(get_deps),
):
    await get_visible_project(deps, credentials, projectId)
    jobs = await deps.store.list_jobs(projectId)
    return [job.model_copy(update={"log": None}) for job in jobs]
