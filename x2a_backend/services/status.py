"""
Derived status for modules and projects.

Nothing here is persisted: module and project status are recomputed from
the latest job of each phase every time they are read.
"""

from dataclasses import dataclass
from typing import Iterable, Optional

from ..schemas import (
    Job,
    JobStatus,
    Module,
    ModulesSummary,
    ProjectState,
    ProjectStatus,
)


@dataclass
class ModuleStatus:
    status: JobStatus
    error_details: Optional[str] = None


def calculate_module_status(
    analyze: Optional[Job] = None,
    migrate: Optional[Job] = None,
    publish: Optional[Job] = None,
) -> ModuleStatus:
    """
    Status of the module's last-attempted phase.

    Precedence is by phase order (publish > migrate > analyze), not by
    timestamp: a failed re-run of analyze does not downgrade a module whose
    publish already succeeded.
    """
    for job in (publish, migrate, analyze):
        if job is not None:
            return ModuleStatus(job.status, job.errorDetails)
    return ModuleStatus(JobStatus.PENDING)


def _is_finished(module: Module) -> bool:
    return (
        module.status == JobStatus.SUCCESS
        and module.publish is not None
        and module.publish.status == JobStatus.SUCCESS
    )


def summarize_modules(modules: Iterable[Module]) -> ModulesSummary:
    """Count each module in exactly one bucket."""
    summary = ModulesSummary()
    for module in modules:
        summary.total += 1
        status = module.status or JobStatus.PENDING
        if status == JobStatus.ERROR:
            summary.error += 1
        elif status == JobStatus.RUNNING:
            summary.running += 1
        elif status == JobStatus.PENDING:
            summary.pending += 1
        elif _is_finished(module):
            summary.finished += 1
        else:
            # Succeeded an earlier phase, no publish yet
            summary.waiting += 1
    return summary


def calculate_project_status(
    modules: Iterable[Module],
    init_job: Optional[Job] = None,
) -> ProjectStatus:
    summary = summarize_modules(modules)
    return ProjectStatus(state=_project_state(summary, init_job), modulesSummary=summary)


def _project_state(summary: ModulesSummary, init_job: Optional[Job]) -> ProjectState:
    if summary.error > 0:
        return ProjectState.FAILED

    if init_job is None:
        # Modules without an init run means they were created out of band
        return ProjectState.CREATED if summary.total == 0 else ProjectState.FAILED

    if init_job.status == JobStatus.ERROR:
        return ProjectState.FAILED

    if init_job.status in (JobStatus.PENDING, JobStatus.RUNNING):
        return ProjectState.INITIALIZING

    if summary.finished == summary.total:
        return ProjectState.COMPLETED

    if summary.pending + summary.running + summary.waiting > 0:
        return ProjectState.IN_PROGRESS

    return ProjectState.INITIALIZED
