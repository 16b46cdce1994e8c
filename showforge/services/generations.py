"""Service functions behind the generation and task routes."""

from __future__ import annotations

import logging

from showforge.api.models import BackgroundTaskResponse, GenerationCreateRequest, JobDescriptorResponse, ShowTasksResponse
from showforge.jobs.errors import JobNotFoundError
from showforge.jobs.models import JobKind
from showforge.jobs.orchestrator import GenerationOrchestrator

logger = logging.getLogger(__name__)


def start_generation(payload: GenerationCreateRequest, orchestrator: GenerationOrchestrator) -> JobDescriptorResponse:
  """Submit or restart a request and return the descriptor it is now tracking."""
  request = payload.to_domain()
  if payload.restart:
    orchestrator.restart(request)
  else:
    orchestrator.submit(request)

  descriptor = orchestrator.snapshot(request.kind, request.subject_id)
  if descriptor is None:
    # The runner has not been scheduled yet, so the entry must exist.
    raise JobNotFoundError(f"No {request.kind} job is tracked for {request.subject_id}.")
  logger.info("Accepted %s generation for %s as %s", request.kind, request.subject_id, descriptor.job_id)
  return JobDescriptorResponse.from_descriptor(descriptor)


def get_generation(kind: JobKind, subject_id: str, orchestrator: GenerationOrchestrator) -> JobDescriptorResponse:
  descriptor = orchestrator.snapshot(kind, subject_id)
  if descriptor is None:
    raise JobNotFoundError(f"No {kind} job is tracked for {subject_id}.")
  return JobDescriptorResponse.from_descriptor(descriptor)


def list_show_tasks(show_id: str, orchestrator: GenerationOrchestrator) -> ShowTasksResponse:
  tasks = orchestrator.registry.list_for_show(show_id)
  return ShowTasksResponse(show_id=show_id, tasks=[BackgroundTaskResponse.from_task(task) for task in tasks])
