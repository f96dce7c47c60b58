"""
Callback endpoint for migration jobs running in the cluster.

The job POSTs its outcome, artifacts and telemetry here when it finishes;
this handler is the single writer that moves the job to its terminal state.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError

from ..errors import InputError, NotFoundError
from ..schemas import CollectArtifactsRequest, MessageResponse, MigrationPhase
from ..services.callback_signature import SIGNATURE_HEADER, verify_callback_signature
from ..services.phase_actions import execute_phase_actions
from ..services.reconciliation import fetch_job_logs
from ..services.store.base import as_uuid
from .common import RouterDeps, get_deps

logger = logging.getLogger(__name__)

router = APIRouter(tags=["callbacks"])


def parse_collect_artifacts_body(raw_body: bytes) -> CollectArtifactsRequest:
    try:
        return CollectArtifactsRequest.model_validate_json(raw_body or b"{}")
    except ValidationError as e:
        messages = ", ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" if err["loc"] else err["msg"]
            for err in e.errors()
        )
        raise InputError(f"Invalid request body: {messages}")


@router.post("/projects/{projectId}/collectArtifacts", response_model=MessageResponse)
async def collect_artifacts(
    projectId: str,
    phase: MigrationPhase,
    request: Request,
    moduleId: Optional[str] = None,
    deps: RouterDeps = Depends(get_deps),
):
    logger.info(
        f"[X2A:CALLBACK] Processing collectArtifacts for projectId={projectId}, "
        f"moduleId={moduleId}, phase={phase.value}"
    )

    if phase == MigrationPhase.INIT and moduleId:
        raise InputError("moduleId must not be provided for init phase")
    if phase != MigrationPhase.INIT and not moduleId:
        raise InputError(f"moduleId is required for {phase.value} phase")

    raw_body = await request.body()
    payload = parse_collect_artifacts_body(raw_body)
    job_id = str(payload.jobId)

    job = await deps.store.get_job(job_id)
    if job is None:
        raise NotFoundError(f"Job with ID {job_id} not found")
    if as_uuid(job.projectId) != as_uuid(projectId):
        raise NotFoundError(f"Job {job_id} does not belong to project {projectId}")

    verify_callback_signature(
        await deps.store.get_job_callback_token(job_id),
        raw_body,
        request.headers.get(SIGNATURE_HEADER),
        required=deps.settings.callback_signature_required,
    )

    if job.phase != phase:
        raise InputError(f"Job phase mismatch: expected {phase.value}, got {job.phase.value}")
    if phase != MigrationPhase.INIT and as_uuid(job.moduleId) != as_uuid(moduleId):
        raise InputError(f"Job moduleId mismatch: expected {moduleId}, got {job.moduleId}")

    if not job.is_active:
        logger.warning(
            f"[X2A:CALLBACK] Job {job_id} is already {job.status.value}, "
            f"overwriting with reported {payload.status.value}"
        )

    log = await fetch_job_logs(deps.kube_service, job.k8sJobName)

    # Result and module sync commit together or not at all
    async with deps.store.transaction() as session:
        await deps.store.update_job(
            job_id,
            status=payload.status,
            finished_at=datetime.now(timezone.utc),
            error_details=payload.errorDetails or None,
            log=log,
            artifacts=payload.artifacts,
            telemetry=payload.telemetry,
            session=session,
        )
        await execute_phase_actions(
            deps.store, str(job.projectId), phase, payload.status, payload.artifacts,
            session=session,
        )

    logger.info(f"[X2A:CALLBACK] Successfully processed collectArtifacts for job {job_id}")
    return MessageResponse(message="Artifacts collected successfully")
