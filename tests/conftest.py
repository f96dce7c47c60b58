"""
Test configuration and fixtures for pytest.

Fixtures include: settings with LLM/AAP credentials, a SQLite-backed
migration store, a mocked Kubernetes gateway and an HTTP client bound to
the FastAPI app.
"""

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock, MagicMock
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import NullPool

from x2a_backend.auth import USER_HEADER, StaticDiscoveryService
from x2a_backend.config import Settings
from x2a_backend.database import Base
from x2a_backend.main import create_app
from x2a_backend.schemas import JobStatus, ProjectCreate
from x2a_backend.services.kube_service import JobStatusInfo
from x2a_backend.services.store import MigrationStore
from x2a_backend import models  # noqa: F401

TEST_USER = "user:default/alice"
OTHER_USER = "user:default/bob"
ADMIN_USER = "user:default/admin"

CALLBACK_BASE_URL = "http://x2a.test/api/x2a"


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")


def make_settings(**overrides) -> Settings:
    values = dict(
        database_url="sqlite+aiosqlite:///:memory:",
        k8s_namespace="x2a-test",
        llm_credentials={
            "AWS_REGION": "us-east-1",
            "AWS_ACCESS_KEY_ID": "AKIATEST",
            "AWS_SECRET_ACCESS_KEY": "secret",
        },
        aap_url="https://aap.example.com",
        aap_org_name="Default",
        aap_oauth_token="aap-token",
        git_source_repo_token="source-token",
        git_target_repo_token="target-token",
        admin_users=ADMIN_USER,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest_asyncio.fixture
async def store(tmp_path):
    """Migration store on a fresh SQLite file (one connection per session)."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path}/x2a.db",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield MigrationStore(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))

    await engine.dispose()


@pytest.fixture
def kube_service():
    """Kubernetes gateway double; every cluster call is an AsyncMock."""
    kube = MagicMock()
    kube.create_job = AsyncMock(return_value="job-x2a-init-0a1b2c3d")
    kube.get_job_status = AsyncMock(return_value=JobStatusInfo(JobStatus.RUNNING, "Job is running"))
    kube.get_job_logs = AsyncMock(return_value="cluster log")
    kube.delete_job = AsyncMock()
    kube.list_jobs_for_project = AsyncMock(return_value=[])
    kube.delete_job_secret = AsyncMock()
    kube.delete_project_secret = AsyncMock()
    kube.create_project_secret = AsyncMock()
    return kube


@pytest.fixture
def app(settings, store, kube_service):
    return create_app(
        settings=settings,
        store=store,
        kube_service=kube_service,
        discovery=StaticDiscoveryService(CALLBACK_BASE_URL),
    )


@pytest_asyncio.fixture
async def async_client(app):
    """Create async test client authenticated as TEST_USER."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={USER_HEADER: TEST_USER},
    ) as client:
        yield client


def project_payload(**overrides) -> dict:
    payload = {
        "name": "Cookbooks",
        "abbreviation": "cb",
        "description": "Chef cookbooks to Ansible",
        "sourceRepoUrl": "https://github.com/org/chef-repo",
        "sourceRepoBranch": "main",
        "targetRepoUrl": "https://github.com/org/ansible-repo",
        "targetRepoBranch": "main",
    }
    payload.update(overrides)
    return payload


@pytest_asyncio.fixture
async def project(store):
    """A project owned by TEST_USER."""
    return await store.create_project(ProjectCreate(**project_payload()), created_by=TEST_USER)


@pytest_asyncio.fixture
async def module(store, project):
    return await store.create_module(name="nginx", source_path="cookbooks/nginx", project_id=project.id)
