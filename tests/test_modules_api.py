"""
Integration tests for the modules API: listing with status, manual module
management, module phase runs and module logs.
"""

import pytest

from x2a_backend.auth import USER_HEADER
from x2a_backend.schemas import JobStatus, MigrationPhase, ProjectCreate

from conftest import CALLBACK_BASE_URL, OTHER_USER, TEST_USER, project_payload


class TestModuleCrud:

    @pytest.mark.asyncio
    async def test_create_and_list(self, async_client, project):
        created = await async_client.post(
            f"/projects/{project.id}/modules",
            json={"name": "nginx", "sourcePath": "cookbooks/nginx"},
        )
        assert created.status_code == 201

        response = await async_client.get(f"/projects/{project.id}/modules")

        assert response.status_code == 200
        [module] = response.json()
        assert module["id"] == created.json()["id"]
        assert module["sourcePath"] == "cookbooks/nginx"
        assert module["status"] == "pending"
        assert module["analyze"] is None

    @pytest.mark.asyncio
    async def test_list_requires_visible_project(self, async_client, project, module):
        response = await async_client.get(
            f"/projects/{project.id}/modules", headers={USER_HEADER: OTHER_USER}
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_get_module_with_latest_jobs(self, async_client, store, project, module):
        job = await store.create_job(project.id, MigrationPhase.ANALYZE, module_id=module.id)
        await store.update_job(job.id, status=JobStatus.SUCCESS, log="analysis")

        response = await async_client.get(f"/projects/{project.id}/modules/{module.id}")

        data = response.json()
        assert data["status"] == "success"
        assert data["analyze"]["id"] == job.id
        assert data["analyze"]["log"] is None

    @pytest.mark.asyncio
    async def test_module_of_other_project_is_not_found(self, async_client, store, module):
        other = await store.create_project(ProjectCreate(**project_payload(name="other")), created_by=TEST_USER)

        response = await async_client.get(f"/projects/{other.id}/modules/{module.id}")

        assert response.status_code == 404
        assert response.json()["error"]["message"] == f'Module "{module.id}" in project "{other.id}" not found.'

    @pytest.mark.asyncio
    async def test_delete_module(self, async_client, store, project, module):
        response = await async_client.delete(f"/projects/{project.id}/modules/{module.id}")

        assert response.json() == {"deletedCount": 1}
        assert await store.get_module(module.id) is None


class TestRunModulePhase:

    @pytest.mark.asyncio
    async def test_run_analyze(self, async_client, store, project, module, kube_service):
        response = await async_client.post(
            f"/projects/{project.id}/modules/{module.id}/run", json={"phase": "analyze"}
        )

        assert response.status_code == 200
        job = await store.get_job(response.json()["jobId"])
        assert job.phase == MigrationPhase.ANALYZE
        assert job.moduleId == module.id

        params = kube_service.create_job.call_args.args[0]
        assert params.module_id == module.id
        assert params.module_name == "nginx"
        assert params.callback_url == (
            f"{CALLBACK_BASE_URL}/projects/{project.id}/collectArtifacts"
            f"?phase=analyze&moduleId={module.id}"
        )

    @pytest.mark.asyncio
    async def test_init_phase_is_rejected(self, async_client, project, module):
        response = await async_client.post(
            f"/projects/{project.id}/modules/{module.id}/run", json={"phase": "init"}
        )

        assert response.status_code == 400
        assert "phase" in response.json()["error"]["message"]

    @pytest.mark.asyncio
    async def test_any_active_phase_blocks_module(self, async_client, project, module):
        first = await async_client.post(
            f"/projects/{project.id}/modules/{module.id}/run", json={"phase": "analyze"}
        )

        second = await async_client.post(
            f"/projects/{project.id}/modules/{module.id}/run", json={"phase": "migrate"}
        )

        assert second.status_code == 409
        body = second.json()
        assert body["message"] == "A analyze job is already running for this module"
        assert body["activeJobId"] == first.json()["jobId"]
        assert body["activeJobPhase"] == "analyze"

    @pytest.mark.asyncio
    async def test_modules_run_independently(self, async_client, store, project, module):
        other = await store.create_module(name="apache", source_path="cookbooks/apache", project_id=project.id)

        first = await async_client.post(
            f"/projects/{project.id}/modules/{module.id}/run", json={"phase": "analyze"}
        )
        second = await async_client.post(
            f"/projects/{project.id}/modules/{other.id}/run", json={"phase": "analyze"}
        )

        assert first.status_code == 200
        assert second.status_code == 200

    @pytest.mark.asyncio
    async def test_unknown_module(self, async_client, project):
        response = await async_client.post(
            f"/projects/{project.id}/modules/00000000-0000-0000-0000-000000000000/run",
            json={"phase": "analyze"},
        )
        assert response.status_code == 404


class TestModuleLog:

    @pytest.mark.asyncio
    async def test_no_jobs_for_phase(self, async_client, project, module):
        response = await async_client.get(
            f"/projects/{project.id}/modules/{module.id}/log", params={"phase": "migrate"}
        )

        assert response.status_code == 404
        assert response.json()["error"]["message"] == "No jobs found for module with phase 'migrate'"

    @pytest.mark.asyncio
    async def test_latest_job_log(self, async_client, store, project, module):
        job = await store.create_job(project.id, MigrationPhase.ANALYZE, module_id=module.id)
        await store.update_job(job.id, status=JobStatus.ERROR, error_details="x", log="analyze output")

        response = await async_client.get(
            f"/projects/{project.id}/modules/{module.id}/log", params={"phase": "analyze"}
        )

        assert response.status_code == 200
        assert response.text == "analyze output"

    @pytest.mark.asyncio
    async def test_module_must_belong_to_project(self, async_client, store, module):
        other = await store.create_project(ProjectCreate(**project_payload(name="other")), created_by=TEST_USER)

        response = await async_client.get(
            f"/projects/{other.id}/modules/{module.id}/log", params={"phase": "analyze"}
        )

        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Module does not belong to project"

    @pytest.mark.asyncio
    async def test_unknown_module(self, async_client, project):
        response = await async_client.get(
            f"/projects/{project.id}/modules/00000000-0000-0000-0000-000000000000/log",
            params={"phase": "analyze"},
        )
        assert response.json()["error"]["message"] == "Module not found"

    @pytest.mark.asyncio
    async def test_invisible_project(self, async_client, project, module):
        response = await async_client.get(
            f"/projects/{project.id}/modules/{module.id}/log",
            params={"phase": "analyze"},
            headers={USER_HEADER: OTHER_USER},
        )
        assert response.json()["error"]["message"] == "Project not found"
