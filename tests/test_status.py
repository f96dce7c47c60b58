"""
Tests for module and project status derivation.
"""

import pytest
from datetime import datetime, timezone
from uuid import uuid4

from x2a_backend.schemas import Job, JobStatus, MigrationPhase, Module, ProjectState
from x2a_backend.services.status import (
    calculate_module_status,
    calculate_project_status,
    summarize_modules,
)

PROJECT_ID = str(uuid4())


def make_job(phase, status, error_details=None, module_id=None) -> Job:
    return Job(
        id=str(uuid4()),
        projectId=PROJECT_ID,
        moduleId=module_id,
        phase=phase,
        status=status,
        startedAt=datetime.now(timezone.utc),
        errorDetails=error_details,
    )


def make_module(analyze=None, migrate=None, publish=None) -> Module:
    result = calculate_module_status(analyze, migrate, publish)
    return Module(
        id=str(uuid4()),
        name="m",
        sourcePath="cookbooks/m",
        projectId=PROJECT_ID,
        status=result.status,
        errorDetails=result.error_details,
        analyze=analyze,
        migrate=migrate,
        publish=publish,
    )


def finished_module() -> Module:
    return make_module(
        analyze=make_job(MigrationPhase.ANALYZE, JobStatus.SUCCESS),
        migrate=make_job(MigrationPhase.MIGRATE, JobStatus.SUCCESS),
        publish=make_job(MigrationPhase.PUBLISH, JobStatus.SUCCESS),
    )


class TestModuleStatus:

    def test_no_jobs_is_pending(self):
        result = calculate_module_status()
        assert result.status == JobStatus.PENDING
        assert result.error_details is None

    def test_latest_phase_wins(self):
        result = calculate_module_status(
            analyze=make_job(MigrationPhase.ANALYZE, JobStatus.SUCCESS),
            migrate=make_job(MigrationPhase.MIGRATE, JobStatus.ERROR, "boom"),
        )
        assert result.status == JobStatus.ERROR
        assert result.error_details == "boom"

    def test_failed_analyze_rerun_does_not_downgrade_published(self):
        result = calculate_module_status(
            analyze=make_job(MigrationPhase.ANALYZE, JobStatus.ERROR, "analyze failed"),
            publish=make_job(MigrationPhase.PUBLISH, JobStatus.SUCCESS),
        )
        assert result.status == JobStatus.SUCCESS
        assert result.error_details is None


class TestModulesSummary:

    def test_buckets(self):
        modules = [
            finished_module(),
            make_module(analyze=make_job(MigrationPhase.ANALYZE, JobStatus.SUCCESS)),
            make_module(),
            make_module(analyze=make_job(MigrationPhase.ANALYZE, JobStatus.RUNNING)),
            make_module(migrate=make_job(MigrationPhase.MIGRATE, JobStatus.ERROR, "x")),
        ]

        summary = summarize_modules(modules)

        assert summary.total == 5
        assert summary.finished == 1
        assert summary.waiting == 1
        assert summary.pending == 1
        assert summary.running == 1
        assert summary.error == 1

    def test_buckets_sum_to_total(self):
        modules = [finished_module(), make_module(), make_module()]
        s = summarize_modules(modules)
        assert s.finished + s.waiting + s.pending + s.running + s.error == s.total


class TestProjectStatus:

    def test_new_project_is_created(self):
        status = calculate_project_status([], None)
        assert status.state == ProjectState.CREATED
        assert status.modulesSummary.total == 0

    def test_modules_without_init_is_failed(self):
        assert calculate_project_status([make_module()], None).state == ProjectState.FAILED

    @pytest.mark.parametrize("init_status", [JobStatus.PENDING, JobStatus.RUNNING])
    def test_initializing(self, init_status):
        init = make_job(MigrationPhase.INIT, init_status)
        assert calculate_project_status([], init).state == ProjectState.INITIALIZING

    def test_init_error_is_failed(self):
        init = make_job(MigrationPhase.INIT, JobStatus.ERROR, "clone failed")
        assert calculate_project_status([], init).state == ProjectState.FAILED

    def test_module_error_is_failed(self):
        init = make_job(MigrationPhase.INIT, JobStatus.SUCCESS)
        modules = [finished_module(), make_module(analyze=make_job(MigrationPhase.ANALYZE, JobStatus.ERROR, "x"))]
        assert calculate_project_status(modules, init).state == ProjectState.FAILED

    def test_all_published_is_completed(self):
        init = make_job(MigrationPhase.INIT, JobStatus.SUCCESS)
        modules = [finished_module(), finished_module()]
        assert calculate_project_status(modules, init).state == ProjectState.COMPLETED

    def test_successful_init_without_modules_is_completed(self):
        init = make_job(MigrationPhase.INIT, JobStatus.SUCCESS)
        assert calculate_project_status([], init).state == ProjectState.COMPLETED

    def test_partially_published_is_in_progress(self):
        init = make_job(MigrationPhase.INIT, JobStatus.SUCCESS)
        modules = [finished_module(), make_module()]
        status = calculate_project_status(modules, init)
        assert status.state == ProjectState.IN_PROGRESS
        assert status.modulesSummary.finished == 1
        assert status.modulesSummary.pending == 1


class TestPhasePrecedence:

    def test_failed_analyze_under_successful_later_phases(self):
        result = calculate_module_status(
            analyze=make_job(MigrationPhase.ANALYZE, JobStatus.ERROR, "x"),
            migrate=make_job(MigrationPhase.MIGRATE, JobStatus.SUCCESS),
            publish=make_job(MigrationPhase.PUBLISH, JobStatus.SUCCESS),
        )
        assert result.status == JobStatus.SUCCESS

    def test_failed_publish(self):
        result = calculate_module_status(
            analyze=make_job(MigrationPhase.ANALYZE, JobStatus.SUCCESS),
            migrate=make_job(MigrationPhase.MIGRATE, JobStatus.SUCCESS),
            publish=make_job(MigrationPhase.PUBLISH, JobStatus.ERROR, "push rejected"),
        )
        assert result.status == JobStatus.ERROR
        assert result.error_details == "push rejected"
