"""
Kubernetes gateway for x2a migration jobs.

The only component that talks to the cluster API. Resource manifests are
built upstream in job_resource_builder.py; this module submits, reads and
deletes them and translates raw Job counters into a job status.
"""

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from urllib3.exceptions import ReadTimeoutError
from dataclasses import dataclass
import asyncio
import codecs
import logging
from typing import AsyncIterator, List, Optional, Union

from ..config import Settings, AAPCredentials
from ..schemas import JobStatus, MigrationPhase
from . import job_resource_builder as builder
from .job_resource_builder import GitRepoCredentials, JobCreateParams

logger = logging.getLogger(__name__)

CONVERTOR_CONTAINER = "x2a-convertor"
LOG_CHUNK_SIZE = 4096
LOG_CONNECT_TIMEOUT_SECONDS = 10


@dataclass
class JobStatusInfo:
    status: JobStatus
    message: Optional[str] = None


class KubeService:
    """
    Thin async wrapper over CoreV1Api / BatchV1Api.

    Synchronous client calls run in a worker thread. "Not found" on read and
    delete is swallowed; every other ApiException propagates.
    """

    def __init__(
        self,
        settings: Settings,
        core_v1: Optional[client.CoreV1Api] = None,
        batch_v1: Optional[client.BatchV1Api] = None,
    ):
        self.settings = settings
        self.namespace = settings.k8s_namespace

        if core_v1 is None or batch_v1 is None:
            self._load_config()

        self.core_v1 = core_v1 or client.CoreV1Api()
        self.batch_v1 = batch_v1 or client.BatchV1Api()

        logger.info(f"[K8S] Kube service initialized - namespace: {self.namespace}")

    @staticmethod
    def _load_config() -> None:
        try:
            # Try in-cluster config first (for production)
            config.load_incluster_config()
            logger.info("[K8S] Loaded in-cluster Kubernetes configuration")
        except config.ConfigException:
            try:
                # Fall back to kubeconfig (for development)
                config.load_kube_config()
                logger.info("[K8S] Loaded kubeconfig for development")
            except config.ConfigException as e:
                logger.error(f"[K8S] Failed to load Kubernetes config: {e}")
                raise RuntimeError("Cannot load Kubernetes configuration") from e

    # =========================================================================
    # PROJECT SECRET
    # =========================================================================

    async def create_project_secret(
        self,
        project_id: str,
        aap_credentials: Optional[AAPCredentials] = None
    ) -> None:
        """Create the project Secret, replacing it when it already exists."""
        secret = builder.build_project_secret(project_id, aap_credentials, self.settings)
        secret_name = secret.metadata.name

        try:
            await asyncio.to_thread(
                self.core_v1.create_namespaced_secret,
                namespace=self.namespace,
                body=secret
            )
            logger.info(f"[K8S] ✅ Created secret: {secret_name}")
        except ApiException as e:
            if e.status == 409:
                logger.info(f"[K8S] Secret {secret_name} exists, replacing...")
                await asyncio.to_thread(
                    self.core_v1.replace_namespaced_secret,
                    name=secret_name,
                    namespace=self.namespace,
                    body=secret
                )
                logger.info(f"[K8S] ✅ Replaced secret: {secret_name}")
            else:
                raise

    async def get_project_secret(self, project_id: str) -> Optional[client.V1Secret]:
        secret_name = builder.project_secret_name(project_id)
        try:
            return await asyncio.to_thread(
                self.core_v1.read_namespaced_secret,
                name=secret_name,
                namespace=self.namespace
            )
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"[K8S] Secret {secret_name} not found")
                return None
            raise

    async def delete_project_secret(self, project_id: str) -> None:
        await self._delete_secret(builder.project_secret_name(project_id))

    # =========================================================================
    # JOB SECRET
    # =========================================================================

    async def create_job_secret(
        self,
        job_id: str,
        project_id: str,
        source_repo: GitRepoCredentials,
        target_repo: GitRepoCredentials
    ) -> None:
        secret = builder.build_job_secret(job_id, project_id, source_repo, target_repo)
        await asyncio.to_thread(
            self.core_v1.create_namespaced_secret,
            namespace=self.namespace,
            body=secret
        )
        logger.info(f"[K8S] ✅ Created job secret: {secret.metadata.name}")

    async def delete_job_secret(self, job_id: str) -> None:
        await self._delete_secret(builder.job_secret_name(job_id))

    async def _delete_secret(self, secret_name: str) -> None:
        try:
            await asyncio.to_thread(
                self.core_v1.delete_namespaced_secret,
                name=secret_name,
                namespace=self.namespace
            )
            logger.info(f"[K8S] Deleted secret: {secret_name}")
        except ApiException as e:
            if e.status != 404:
                raise
            logger.debug(f"[K8S] Secret {secret_name} not found, nothing to delete")

    async def _set_job_secret_owner_reference(
        self,
        job_id: str,
        k8s_job_name: str,
        job_uid: str
    ) -> None:
        """Point the job Secret at its Job so it is garbage-collected with it."""
        secret_name = builder.job_secret_name(job_id)
        body = {
            "metadata": {
                "ownerReferences": [{
                    "apiVersion": "batch/v1",
                    "kind": "Job",
                    "name": k8s_job_name,
                    "uid": job_uid,
                    "blockOwnerDeletion": True,
                }]
            }
        }
        try:
            await asyncio.to_thread(
                self.core_v1.patch_namespaced_secret,
                name=secret_name,
                namespace=self.namespace,
                body=body
            )
            logger.debug(f"[K8S] Set ownerReference on {secret_name} -> {k8s_job_name}")
        except ApiException as e:
            logger.warning(
                f"[K8S] Failed to set ownerReference on {secret_name}: {e.reason}. "
                f"The job still runs but the secret is not garbage-collected with it"
            )

    # =========================================================================
    # JOB LIFECYCLE
    # =========================================================================

    async def create_job(
        self,
        params: JobCreateParams,
        source_repo: GitRepoCredentials,
        target_repo: GitRepoCredentials,
        aap_credentials: Optional[AAPCredentials] = None
    ) -> str:
        """
        Submit the Secrets and the Job for one phase run.

        The Job manifest is built before anything is created so that
        build-time errors (missing module name, bad credentials) never leave
        resources behind.

        Returns:
            Generated Kubernetes Job name
        """
        job = builder.build_job_spec(params, self.settings)
        k8s_job_name = job.metadata.name

        logger.info(
            f"[K8S] Creating job {k8s_job_name} for project {params.project_id}, "
            f"phase: {MigrationPhase(params.phase).value}"
        )

        await self.create_project_secret(params.project_id, aap_credentials)
        await self.create_job_secret(params.job_id, params.project_id, source_repo, target_repo)

        created = await asyncio.to_thread(
            self.batch_v1.create_namespaced_job,
            namespace=self.namespace,
            body=job
        )
        logger.info(f"[K8S] ✅ Created job: {k8s_job_name}")

        job_uid = created.metadata.uid if created is not None and created.metadata else None
        if job_uid:
            await self._set_job_secret_owner_reference(params.job_id, k8s_job_name, job_uid)

        return k8s_job_name

    async def get_job_status(self, k8s_job_name: str) -> JobStatusInfo:
        """Translate Job counters into pending/running/success/error."""
        try:
            job = await asyncio.to_thread(
                self.batch_v1.read_namespaced_job,
                name=k8s_job_name,
                namespace=self.namespace
            )
        except ApiException as e:
            if e.status == 404:
                logger.warning(f"[K8S] Job {k8s_job_name} not found")
                return JobStatusInfo(JobStatus.ERROR, "Job not found")
            raise

        status = job.status
        if status is not None and (status.succeeded or 0) > 0:
            return JobStatusInfo(JobStatus.SUCCESS, "Job completed successfully")
        if status is not None and (status.failed or 0) > 0:
            return JobStatusInfo(JobStatus.ERROR, "Job failed")
        if status is not None and (status.active or 0) > 0:
            return JobStatusInfo(JobStatus.RUNNING, "Job is running")
        return JobStatusInfo(JobStatus.PENDING, "Job is pending")

    async def delete_job(self, k8s_job_name: str) -> None:
        """Delete a Job and (in the background) its pods."""
        try:
            await asyncio.to_thread(
                self.batch_v1.delete_namespaced_job,
                name=k8s_job_name,
                namespace=self.namespace,
                propagation_policy="Background"
            )
            logger.info(f"[K8S] Deleted job: {k8s_job_name}")
        except ApiException as e:
            if e.status != 404:
                raise
            logger.debug(f"[K8S] Job {k8s_job_name} not found, nothing to delete")

    async def list_jobs_for_project(self, project_id: str) -> List[client.V1Job]:
        result = await asyncio.to_thread(
            self.batch_v1.list_namespaced_job,
            namespace=self.namespace,
            label_selector=f"{builder.LABEL_PREFIX}/project-id={project_id}"
        )
        return list(result.items or [])

    # =========================================================================
    # LOGS
    # =========================================================================

    async def _find_job_pod(self, k8s_job_name: str) -> Optional[str]:
        pods = await asyncio.to_thread(
            self.core_v1.list_namespaced_pod,
            namespace=self.namespace,
            label_selector=f"job-name={k8s_job_name}"
        )
        if not pods.items:
            logger.warning(f"[K8S] No pods found for job: {k8s_job_name}")
            return None

        pod_name = pods.items[0].metadata.name if pods.items[0].metadata else None
        if not pod_name:
            logger.warning(f"[K8S] Pod has no name yet for job: {k8s_job_name}")
        return pod_name

    async def get_job_logs(
        self,
        k8s_job_name: str,
        streaming: bool = False
    ) -> Union[str, AsyncIterator[str]]:
        """
        Fetch logs of the pod backing a Job.

        Returns:
            The buffered log, "" when no pod exists yet, or (streaming) an
            async iterator following the live log
        """
        pod_name = await self._find_job_pod(k8s_job_name)
        if not pod_name:
            return ""

        if streaming:
            response = await asyncio.to_thread(
                self.core_v1.read_namespaced_pod_log,
                name=pod_name,
                namespace=self.namespace,
                container=CONVERTOR_CONTAINER,
                follow=True,
                _preload_content=False,
                # (connect, read) seconds; an idle read ends the stream
                _request_timeout=(
                    LOG_CONNECT_TIMEOUT_SECONDS,
                    self.settings.k8s_log_stream_idle_timeout_seconds,
                ),
            )
            return self._iter_log_stream(response)

        return await asyncio.to_thread(
            self.core_v1.read_namespaced_pod_log,
            name=pod_name,
            namespace=self.namespace,
            container=CONVERTOR_CONTAINER
        )

    @staticmethod
    async def _iter_log_stream(response) -> AsyncIterator[str]:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                try:
                    chunk = await asyncio.to_thread(response.read, LOG_CHUNK_SIZE)
                except ReadTimeoutError:
                    logger.info("[K8S] Log stream idle timeout reached, closing stream")
                    break
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    yield text
            tail = decoder.decode(b"", final=True)
            if tail:
                yield tail
        finally:
            response.release_conn()
