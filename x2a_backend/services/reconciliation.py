"""
Pull-based repair of stale job records.

A job row stays pending/running until its callback arrives. When a caller
needs the current truth (before a new run, when serving logs) the cluster's
Job status is authoritative: a terminal cluster status is written back
together with the final logs. Reconciling a terminal job is a no-op.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from ..schemas import ACTIVE_JOB_STATUSES, Job, JobStatus
from .kube_service import KubeService
from .store import MigrationStore

logger = logging.getLogger(__name__)


async def fetch_job_logs(kube_service: KubeService, k8s_job_name: Optional[str]) -> Optional[str]:
    """Buffered logs of a cluster job, or None when unavailable."""
    if not k8s_job_name:
        logger.info("[X2A:RECONCILE] No k8s job name recorded, skipping log retrieval")
        return None

    try:
        logs = await kube_service.get_job_logs(k8s_job_name, streaming=False)
    except Exception as e:
        logger.error(f"[X2A:RECONCILE] Failed to fetch logs for {k8s_job_name}: {e}")
        return None
    return logs if isinstance(logs, str) else None


async def reconcile_job_status(
    job: Job,
    kube_service: KubeService,
    store: MigrationStore,
) -> Job:
    """
    Bring a pending/running job record in line with the cluster.

    Returns:
        The (possibly updated) job
    """
    if job.status not in ACTIVE_JOB_STATUSES or not job.k8sJobName:
        return job

    cluster_status = await kube_service.get_job_status(job.k8sJobName)
    if cluster_status.status in ACTIVE_JOB_STATUSES:
        return job

    logger.info(
        f"[X2A:RECONCILE] Job {job.id} is {job.status.value} in the database but "
        f"{cluster_status.status.value} in the cluster ({job.k8sJobName})"
    )

    log = await fetch_job_logs(kube_service, job.k8sJobName)
    error_details = cluster_status.message if cluster_status.status == JobStatus.ERROR else None

    updated = await store.update_job(
        job.id,
        status=cluster_status.status,
        finished_at=datetime.now(timezone.utc),
        error_details=error_details,
        log=log,
    )
    return updated or job
