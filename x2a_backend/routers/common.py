"""
Shared router plumbing: dependency container, caller resolution, run
submission and log serving.
"""

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional, Tuple
from urllib.parse import urlencode

from fastapi import Depends, Request
from fastapi.responses import PlainTextResponse, StreamingResponse

from ..auth import (
    ADMIN_READ_PERMISSION,
    ADMIN_WRITE_PERMISSION,
    Credentials,
    DiscoveryService,
    IdentityProvider,
    PermissionEvaluator,
)
from ..config import Settings
from ..errors import InputError, NotFoundError
from ..schemas import Job, MigrationPhase, Module, Project, RunRequest, RunResponse, JobStatus
from ..services import job_resource_builder as builder
from ..services.job_resource_builder import GitRepoCredentials, JobCreateParams
from ..services.kube_service import KubeService
from ..services.reconciliation import reconcile_job_status
from ..services.store import MigrationStore, conflict_for_active_job
from ..services.store.base import as_uuid

logger = logging.getLogger(__name__)


@dataclass
class RouterDeps:
    settings: Settings
    store: MigrationStore
    kube_service: KubeService
    identity: IdentityProvider
    permissions: PermissionEvaluator
    discovery: DiscoveryService


def get_deps(request: Request) -> RouterDeps:
    return request.app.state.deps


async def get_credentials(
    request: Request,
    deps: RouterDeps = Depends(get_deps),
) -> Credentials:
    return await deps.identity.credentials(request)


async def can_view_all(deps: RouterDeps, credentials: Credentials) -> bool:
    return await deps.permissions.authorize(credentials, ADMIN_READ_PERMISSION)


async def can_write_all(deps: RouterDeps, credentials: Credentials) -> bool:
    return await deps.permissions.authorize(credentials, ADMIN_WRITE_PERMISSION)


async def get_visible_project(
    deps: RouterDeps,
    credentials: Credentials,
    project_id: str,
) -> Project:
    """Project lookup scoped to the caller; invisible and missing look the same."""
    project = await deps.store.get_project(
        project_id,
        user=credentials.user_ref,
        can_view_all=await can_view_all(deps, credentials),
    )
    if project is None:
        raise NotFoundError(f'Project "{project_id}" not found.')
    return project


async def get_project_module(deps: RouterDeps, project_id: str, module_id: str) -> Module:
    module = await deps.store.get_module(module_id)
    if module is None or as_uuid(module.projectId) != as_uuid(project_id):
        raise NotFoundError(f'Module "{module_id}" in project "{project_id}" not found.')
    return module


# ============================================================================
# Run submission
# ============================================================================

def resolve_repo_tokens(run: RunRequest, settings: Settings) -> Tuple[str, str]:
    """Request tokens override the configured ones."""
    source_token = (run.sourceRepoAuth.token if run.sourceRepoAuth else None) or settings.git_source_repo_token
    target_token = (run.targetRepoAuth.token if run.targetRepoAuth else None) or settings.git_target_repo_token

    if not source_token:
        raise InputError(
            "Source repository token is required. "
            "Provide it in the request or configure GIT_SOURCE_REPO_TOKEN."
        )
    if not target_token:
        raise InputError(
            "Target repository token is required. "
            "Provide it in the request or configure GIT_TARGET_REPO_TOKEN."
        )
    return source_token, target_token


def build_callback_url(
    base_url: str,
    project_id: str,
    phase: MigrationPhase,
    module_id: Optional[str] = None,
) -> str:
    query = {"phase": MigrationPhase(phase).value}
    if module_id:
        query["moduleId"] = module_id
    return f"{base_url.rstrip('/')}/projects/{project_id}/collectArtifacts?{urlencode(query)}"


async def ensure_no_active_job(deps: RouterDeps, jobs: Iterable[Job]) -> None:
    """Reconcile apparently active jobs; raise ConflictError if one still runs."""
    for job in jobs:
        if not job.is_active:
            continue
        reconciled = await reconcile_job_status(job, deps.kube_service, deps.store)
        if reconciled.is_active:
            raise conflict_for_active_job(reconciled)


async def submit_run(
    deps: RouterDeps,
    credentials: Credentials,
    project: Project,
    phase: MigrationPhase,
    run: RunRequest,
    repo_tokens: Tuple[str, str],
    module: Optional[Module] = None,
) -> RunResponse:
    """
    Record a pending job and submit its Secrets and Kubernetes Job.

    If the cluster submission fails the job Secret is removed and the job
    record is closed as an error before the failure propagates.
    """
    source_token, target_token = repo_tokens
    builder.validate_run_credentials(run.aapCredentials, deps.settings)

    callback_token = secrets.token_urlsafe(32)
    job = await deps.store.create_job(
        project.id,
        phase,
        module_id=module.id if module else None,
        callback_token=callback_token,
    )

    base_url = await deps.discovery.get_base_url()
    params = JobCreateParams(
        job_id=job.id,
        project_id=project.id,
        project_name=project.name,
        project_abbreviation=project.abbreviation,
        phase=phase,
        user=credentials.user_ref,
        callback_url=build_callback_url(base_url, project.id, phase, module.id if module else None),
        callback_token=callback_token,
        module_id=module.id if module else None,
        module_name=module.name if module else None,
        user_prompt=run.userPrompt,
    )

    try:
        k8s_job_name = await deps.kube_service.create_job(
            params,
            source_repo=GitRepoCredentials(project.sourceRepoUrl, source_token, project.sourceRepoBranch),
            target_repo=GitRepoCredentials(project.targetRepoUrl, target_token, project.targetRepoBranch),
            aap_credentials=run.aapCredentials,
        )
    except Exception as e:
        logger.error(f"[X2A:RUN] Failed to submit {MigrationPhase(phase).value} job {job.id}: {e}")
        await _abandon_job(deps, job.id, str(e))
        raise

    await deps.store.update_job(job.id, k8s_job_name=k8s_job_name)

    logger.info(
        f"[X2A:RUN] {MigrationPhase(phase).value} job created: jobId={job.id}, "
        f"projectId={project.id}, moduleId={module.id if module else None}, k8sJobName={k8s_job_name}"
    )
    return RunResponse(status=JobStatus.PENDING, jobId=job.id)


async def _abandon_job(deps: RouterDeps, job_id: str, reason: str) -> None:
    try:
        await deps.kube_service.delete_job_secret(job_id)
    except Exception as e:
        logger.error(f"[X2A:RUN] Failed to clean up secret of job {job_id}: {e}")

    await deps.store.update_job(
        job_id,
        status=JobStatus.ERROR,
        finished_at=datetime.now(timezone.utc),
        error_details=f"Failed to submit Kubernetes job: {reason}",
    )


# ============================================================================
# Logs
# ============================================================================

async def serve_job_log(deps: RouterDeps, job: Job, streaming: bool):
    """
    Log of a job as text/plain.

    Terminal jobs serve the stored log; active jobs read (or follow) the
    cluster pod log; jobs without a cluster name yet serve an empty body.
    """
    job = await reconcile_job_status(job, deps.kube_service, deps.store)

    if not job.is_active:
        return PlainTextResponse(job.log or "")

    if not job.k8sJobName:
        return PlainTextResponse("")

    logs = await deps.kube_service.get_job_logs(job.k8sJobName, streaming=streaming)
    if isinstance(logs, str):
        return PlainTextResponse(logs)
    return StreamingResponse(logs, media_type="text/plain")
