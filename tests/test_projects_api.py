"""
Integration tests for the projects API.

The store is real (SQLite); the Kubernetes gateway is a mock.
"""

import pytest
from unittest.mock import AsyncMock
from httpx import AsyncClient, ASGITransport
from kubernetes import client

from x2a_backend.auth import USER_HEADER, StaticDiscoveryService
from x2a_backend.main import create_app
from x2a_backend.schemas import JobStatus, MigrationPhase, ProjectCreate
from x2a_backend.services.kube_service import JobStatusInfo

from conftest import ADMIN_USER, CALLBACK_BASE_URL, OTHER_USER, TEST_USER, make_settings, project_payload


def client_for(app) -> AsyncClient:
    return AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={USER_HEADER: TEST_USER},
    )


class TestHealth:

    @pytest.mark.asyncio
    async def test_health(self, async_client):
        response = await async_client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestProjectCrud:

    @pytest.mark.asyncio
    async def test_create_project(self, async_client):
        response = await async_client.post("/projects", json=project_payload())

        assert response.status_code == 200
        data = response.json()
        assert data["name"] == "Cookbooks"
        assert data["createdBy"] == TEST_USER

        fetched = await async_client.get(f"/projects/{data['id']}")
        assert fetched.json()["status"]["state"] == "created"

    @pytest.mark.asyncio
    async def test_missing_identity(self, async_client):
        response = await async_client.post(
            "/projects", json=project_payload(), headers={USER_HEADER: ""}
        )
        assert response.status_code == 401
        assert response.json()["error"]["name"] == "AuthenticationError"

    @pytest.mark.asyncio
    async def test_invalid_body(self, async_client):
        response = await async_client.post("/projects", json={"name": "x"})

        assert response.status_code == 400
        assert response.json()["error"]["name"] == "InputError"
        assert response.json()["error"]["message"].startswith("Invalid request:")

    @pytest.mark.asyncio
    async def test_get_project_with_status(self, async_client, project):
        response = await async_client.get(f"/projects/{project.id}")

        assert response.status_code == 200
        data = response.json()
        assert data["id"] == project.id
        assert data["status"]["state"] == "created"
        assert data["status"]["modulesSummary"]["total"] == 0

    @pytest.mark.asyncio
    async def test_other_users_project_is_not_found(self, async_client, project):
        response = await async_client.get(f"/projects/{project.id}", headers={USER_HEADER: OTHER_USER})

        assert response.status_code == 404
        assert response.json()["error"]["message"] == f'Project "{project.id}" not found.'

    @pytest.mark.asyncio
    async def test_admin_sees_every_project(self, async_client, project):
        response = await async_client.get(f"/projects/{project.id}", headers={USER_HEADER: ADMIN_USER})
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_list_projects(self, async_client, store, project):
        await store.create_project(ProjectCreate(**project_payload(name="theirs")), created_by=OTHER_USER)

        response = await async_client.get("/projects", params={"pageSize": 5, "sort": "name", "order": "asc"})

        assert response.status_code == 200
        data = response.json()
        assert data["totalCount"] == 1
        assert [p["id"] for p in data["items"]] == [project.id]

        admin = await async_client.get("/projects", headers={USER_HEADER: ADMIN_USER})
        assert admin.json()["totalCount"] == 2

    @pytest.mark.asyncio
    async def test_list_rejects_bad_page_size(self, async_client):
        response = await async_client.get("/projects", params={"pageSize": 0})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_delete_project(self, async_client, project, kube_service):
        kube_service.list_jobs_for_project = AsyncMock(return_value=[
            client.V1Job(metadata=client.V1ObjectMeta(name="job-x2a-init-aaaa1111")),
            client.V1Job(metadata=client.V1ObjectMeta(name="job-x2a-analyze-bbbb2222")),
        ])

        response = await async_client.delete(f"/projects/{project.id}")

        assert response.status_code == 200
        assert response.json() == {"deletedCount": 1}
        kube_service.list_jobs_for_project.assert_awaited_once_with(project.id)
        assert [c.args[0] for c in kube_service.delete_job.await_args_list] == [
            "job-x2a-init-aaaa1111", "job-x2a-analyze-bbbb2222",
        ]
        kube_service.delete_project_secret.assert_awaited_once_with(project.id)

        again = await async_client.delete(f"/projects/{project.id}")
        assert again.status_code == 404
        assert again.json()["error"]["message"] == "Project not found"

    @pytest.mark.asyncio
    async def test_delete_other_users_project(self, async_client, project, kube_service):
        response = await async_client.delete(f"/projects/{project.id}", headers={USER_HEADER: OTHER_USER})

        assert response.status_code == 404
        kube_service.delete_project_secret.assert_not_called()
        kube_service.list_jobs_for_project.assert_not_called()

    @pytest.mark.asyncio
    async def test_delete_project_survives_cluster_errors(self, async_client, project, kube_service):
        kube_service.list_jobs_for_project = AsyncMock(return_value=[
            client.V1Job(metadata=client.V1ObjectMeta(name="job-x2a-init-aaaa1111")),
            client.V1Job(metadata=client.V1ObjectMeta(name="job-x2a-analyze-bbbb2222")),
        ])
        kube_service.delete_job = AsyncMock(side_effect=[RuntimeError("apiserver down"), None])

        response = await async_client.delete(f"/projects/{project.id}")

        assert response.status_code == 200
        assert kube_service.delete_job.await_count == 2
        kube_service.delete_project_secret.assert_awaited_once_with(project.id)

        kube_service.list_jobs_for_project = AsyncMock(side_effect=RuntimeError("apiserver down"))
        other = await async_client.post("/projects", json=project_payload(name="second"))
        again = await async_client.delete(f"/projects/{other.json()['id']}")
        assert again.status_code == 200


class TestRunInit:

    @pytest.mark.asyncio
    async def test_run_creates_pending_job(self, async_client, store, project, kube_service):
        response = await async_client.post(f"/projects/{project.id}/run", json={"userPrompt": "Focus on nginx"})

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "pending"

        job = await store.get_job(data["jobId"])
        assert job.phase == MigrationPhase.INIT
        assert job.status == JobStatus.PENDING
        assert job.k8sJobName == "job-x2a-init-0a1b2c3d"

        params = kube_service.create_job.call_args.args[0]
        assert params.job_id == data["jobId"]
        assert params.user == TEST_USER
        assert params.user_prompt == "Focus on nginx"
        assert params.callback_url == f"{CALLBACK_BASE_URL}/projects/{project.id}/collectArtifacts?phase=init"
        assert params.callback_token == await store.get_job_callback_token(data["jobId"])

        source_repo = kube_service.create_job.call_args.kwargs["source_repo"]
        assert source_repo.url == "https://github.com/org/chef-repo"
        assert source_repo.token == "source-token"

    @pytest.mark.asyncio
    async def test_request_tokens_override_configuration(self, async_client, project, kube_service):
        response = await async_client.post(
            f"/projects/{project.id}/run",
            json={"sourceRepoAuth": {"token": "user-src"}, "targetRepoAuth": {"token": "user-dst"}},
        )

        assert response.status_code == 200
        kwargs = kube_service.create_job.call_args.kwargs
        assert kwargs["source_repo"].token == "user-src"
        assert kwargs["target_repo"].token == "user-dst"

    @pytest.mark.asyncio
    async def test_run_while_active_conflicts(self, async_client, project):
        first = await async_client.post(f"/projects/{project.id}/run")
        assert first.status_code == 200

        second = await async_client.post(f"/projects/{project.id}/run")

        assert second.status_code == 409
        body = second.json()
        assert body["error"] == "JobAlreadyRunning"
        assert body["activeJobId"] == first.json()["jobId"]
        assert body["activeJobPhase"] == "init"

    @pytest.mark.asyncio
    async def test_stale_active_job_is_reconciled(self, async_client, store, project, kube_service):
        first = await async_client.post(f"/projects/{project.id}/run")
        kube_service.get_job_status = AsyncMock(return_value=JobStatusInfo(JobStatus.ERROR, "Job failed"))

        second = await async_client.post(f"/projects/{project.id}/run")

        assert second.status_code == 200
        assert second.json()["jobId"] != first.json()["jobId"]
        stale = await store.get_job(first.json()["jobId"])
        assert stale.status == JobStatus.ERROR
        assert stale.errorDetails == "Job failed"
        assert stale.log == "cluster log"

    @pytest.mark.asyncio
    async def test_cluster_failure_closes_job(self, async_client, store, project, kube_service):
        kube_service.create_job = AsyncMock(side_effect=RuntimeError("apiserver down"))

        with pytest.raises(RuntimeError):
            await async_client.post(f"/projects/{project.id}/run")

        [job] = await store.list_jobs(project.id)
        assert job.status == JobStatus.ERROR
        assert job.errorDetails == "Failed to submit Kubernetes job: apiserver down"
        assert job.finishedAt is not None
        kube_service.delete_job_secret.assert_awaited_once_with(job.id)

    @pytest.mark.asyncio
    async def test_missing_repository_token(self, store, project, kube_service):
        app = create_app(
            settings=make_settings(git_source_repo_token=""),
            store=store,
            kube_service=kube_service,
            discovery=StaticDiscoveryService(CALLBACK_BASE_URL),
        )
        async with client_for(app) as client:
            response = await client.post(f"/projects/{project.id}/run")

        assert response.status_code == 400
        assert response.json()["error"]["message"].startswith("Source repository token is required.")
        assert await store.list_jobs(project.id) == []

    @pytest.mark.asyncio
    async def test_missing_aap_credentials(self, store, project, kube_service):
        app = create_app(
            settings=make_settings(aap_url="", aap_org_name="", aap_oauth_token=""),
            store=store,
            kube_service=kube_service,
            discovery=StaticDiscoveryService(CALLBACK_BASE_URL),
        )
        async with client_for(app) as client:
            response = await client.post(f"/projects/{project.id}/run")

        assert response.status_code == 400
        assert response.json()["error"]["name"] == "ConfigurationError"
        kube_service.create_job.assert_not_called()
        assert await store.list_jobs(project.id) == []

    @pytest.mark.asyncio
    async def test_contradictory_aap_credentials(self, async_client, store, project):
        response = await async_client.post(
            f"/projects/{project.id}/run",
            json={"aapCredentials": {
                "url": "https://aap", "orgName": "o", "oauthToken": "t", "username": "u", "password": "p",
            }},
        )

        assert response.status_code == 400
        assert "not both" in response.json()["error"]["message"]
        assert await store.list_jobs(project.id) == []

    @pytest.mark.asyncio
    async def test_run_unknown_project(self, async_client):
        response = await async_client.post("/projects/00000000-0000-0000-0000-000000000000/run")
        assert response.status_code == 404


class TestInitLog:

    @pytest.mark.asyncio
    async def test_no_init_job(self, async_client, project):
        response = await async_client.get(f"/projects/{project.id}/log")

        assert response.status_code == 404
        assert response.json()["error"]["message"] == "No jobs found for project with phase 'init'"

    @pytest.mark.asyncio
    async def test_finished_job_serves_stored_log(self, async_client, store, project, kube_service):
        job = await store.create_job(project.id, MigrationPhase.INIT)
        await store.update_job(job.id, status=JobStatus.SUCCESS, log="stored log", k8s_job_name="job-x2a-init-1")

        response = await async_client.get(f"/projects/{project.id}/log")

        assert response.status_code == 200
        assert response.text == "stored log"
        assert response.headers["content-type"].startswith("text/plain")
        kube_service.get_job_logs.assert_not_called()

    @pytest.mark.asyncio
    async def test_active_job_reads_cluster_log(self, async_client, store, project, kube_service):
        job = await store.create_job(project.id, MigrationPhase.INIT)
        await store.update_job(job.id, k8s_job_name="job-x2a-init-1")

        response = await async_client.get(f"/projects/{project.id}/log")

        assert response.text == "cluster log"
        kube_service.get_job_logs.assert_awaited_once_with("job-x2a-init-1", streaming=False)

    @pytest.mark.asyncio
    async def test_active_job_streams_cluster_log(self, async_client, store, project, kube_service):
        async def stream():
            yield "line 1\n"
            yield "line 2\n"

        kube_service.get_job_logs = AsyncMock(return_value=stream())
        job = await store.create_job(project.id, MigrationPhase.INIT)
        await store.update_job(job.id, k8s_job_name="job-x2a-init-1")

        response = await async_client.get(f"/projects/{project.id}/log", params={"streaming": "true"})

        assert response.status_code == 200
        assert response.text == "line 1\nline 2\n"
        kube_service.get_job_logs.assert_awaited_once_with("job-x2a-init-1", streaming=True)

    @pytest.mark.asyncio
    async def test_job_not_yet_submitted(self, async_client, store, project):
        await store.create_job(project.id, MigrationPhase.INIT)

        response = await async_client.get(f"/projects/{project.id}/log")

        assert response.status_code == 200
        assert response.text == ""


class TestProjectJobs:

    @pytest.mark.asyncio
    async def test_jobs_without_logs(self, async_client, store, project):
        job = await store.create_job(project.id, MigrationPhase.INIT)
        await store.update_job(job.id, status=JobStatus.SUCCESS, log="big log")

        response = await async_client.get(f"/projects/{project.id}/jobs")

        assert response.status_code == 200
        [listed] = response.json()
        assert listed["id"] == job.id
        assert listed["log"] is None
        assert "callbackToken" not in listed
