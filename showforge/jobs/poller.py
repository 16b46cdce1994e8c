"""Status poller driving one attempt from launch to a terminal provider status."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from showforge.jobs.arena import SubjectArena, SubjectEntry
from showforge.jobs.classify import JobFailure
from showforge.jobs.errors import TransientNetworkError
from showforge.jobs.registry import BackgroundTaskRegistry
from showforge.jobs.scheduler import PollHandle, PollScheduler
from showforge.jobs.watchdog import Watchdog
from showforge.providers.base import GenerationProvider
from showforge.storage.pointer_store import TrailerPointerStore

logger = logging.getLogger(__name__)

PollStatus = Literal["succeeded", "failed", "superseded"]


@dataclass(frozen=True)
class PollResult:
  """How one attempt ended from the poller's point of view."""

  status: PollStatus
  output_url: str | None = None
  model_used: str | None = None
  failure: JobFailure | None = None


class StatusPoller:
  """Poll a provider on a fixed interval and mirror each transition.

  Every tick re-checks that the entry still owns the job id it was started
  for, so a superseded loop neither mutates state nor reports a result.
  """

  def __init__(self, *, arena: SubjectArena, registry: BackgroundTaskRegistry, scheduler: PollScheduler, pointer_store: TrailerPointerStore, clock: Callable[[], float], poll_interval_seconds: float, success_grace_seconds: float, notify: Callable[[SubjectEntry], None]) -> None:
    self._arena = arena
    self._registry = registry
    self._scheduler = scheduler
    self._pointer_store = pointer_store
    self._clock = clock
    self._interval = poll_interval_seconds
    self._success_grace = success_grace_seconds
    self._notify = notify

  async def poll(self, entry: SubjectEntry, provider: GenerationProvider, watchdog: Watchdog) -> PollResult:
    """Poll until the attempt settles or the loop is retired."""
    job_id = entry.descriptor.job_id
    task = self._scheduler.schedule(job_id, lambda handle: self._run(handle, entry, provider, watchdog))
    return await task

  async def _run(self, handle: PollHandle, entry: SubjectEntry, provider: GenerationProvider, watchdog: Watchdog) -> PollResult:
    descriptor = entry.descriptor
    while True:
      job_id = handle.key
      if handle.stopped or not self._arena.owns(entry, job_id):
        return PollResult(status="superseded")

      # Check the watchdog before spending a status query.
      trip = watchdog.check(descriptor, self._clock())
      if trip is not None:
        logger.warning("Watchdog tripped for %s %s job %s: %s", descriptor.kind, descriptor.subject_id, job_id, trip.message)
        return self._fail(entry, JobFailure(job_id=job_id, message=trip.message, trip=trip.reason))

      try:
        status = await provider.fetch_status(job_id)
      except TransientNetworkError as exc:
        logger.warning("Skipping status tick for %s job %s: %s", descriptor.kind, job_id, exc)
        if not await handle.sleep(self._interval):
          return PollResult(status="superseded")
        continue
      except Exception as exc:  # noqa: BLE001
        # Anything the provider did not classify ends this attempt, not the request.
        logger.error("Status check for %s job %s raised unexpectedly", descriptor.kind, job_id, exc_info=True)
        if handle.stopped or not self._arena.owns(entry, job_id):
          return PollResult(status="superseded")
        return self._fail(entry, JobFailure(job_id=job_id, message=f"Status check failed: {exc}"))

      # The entry may have been superseded while the query was in flight.
      if handle.stopped or not self._arena.owns(entry, job_id):
        return PollResult(status="superseded")

      descriptor.poll_count += 1
      if status.job_id and status.job_id != job_id:
        self._rekey(entry, job_id, status.job_id)
        job_id = status.job_id

      if status.status is None:
        return self._fail(entry, JobFailure(job_id=job_id, message=status.error_detail or "Provider no longer knows this job."))

      if status.status == "failed":
        return self._fail(entry, JobFailure(job_id=job_id, message=status.error_detail or "Generation failed."))

      if status.status == "succeeded":
        if not status.output_url:
          return self._fail(entry, JobFailure(job_id=job_id, message="Provider reported success without an output URL."))
        return self._succeed(entry, status.output_url, status.model)

      if status.status != descriptor.status:
        descriptor.status = status.status
        self._registry.update(job_id, status=status.status)
        self._notify(entry)

      if not await handle.sleep(self._interval):
        return PollResult(status="superseded")

  def _rekey(self, entry: SubjectEntry, old_id: str, new_id: str) -> None:
    logger.info("Provider reissued %s job %s as %s", entry.descriptor.kind, old_id, new_id)
    entry.descriptor.job_id = new_id
    self._scheduler.rekey(old_id, new_id)
    self._registry.rekey(old_id, new_id)
    if entry.descriptor.kind == "trailer":
      self._pointer_store.rekey(old_id, new_id)

  def _succeed(self, entry: SubjectEntry, output_url: str, model: str | None) -> PollResult:
    descriptor = entry.descriptor
    descriptor.status = "succeeded"
    descriptor.output_url = output_url
    descriptor.error_detail = None
    if model:
      descriptor.model_used = model

    self._registry.update(descriptor.job_id, status="succeeded", output_url=output_url, completed_at=self._clock())
    self._registry.remove_later(descriptor.job_id, self._success_grace)
    logger.info("%s %s succeeded on attempt %s (job %s)", descriptor.kind, descriptor.subject_id, descriptor.attempt, descriptor.job_id)
    self._notify(entry)
    return PollResult(status="succeeded", output_url=output_url, model_used=descriptor.model_used)

  def _fail(self, entry: SubjectEntry, failure: JobFailure) -> PollResult:
    # Attempt failures stay out of the registry status; only exhaustion is terminal there.
    descriptor = entry.descriptor
    descriptor.status = "failed"
    descriptor.error_detail = failure.message
    self._registry.update(descriptor.job_id, metadata={"lastError": failure.message})
    self._notify(entry)
    return PollResult(status="failed", failure=failure)
