"""Generation orchestrator tying the arena, poller, retry controller, and registry together."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from showforge.config import DEFAULT_MODERATION_MARKERS, DEFAULT_RATE_LIMIT_MARKERS, Settings
from showforge.jobs.arena import RetryState, SubjectArena, SubjectEntry
from showforge.jobs.classify import FailureClassifier, JobFailure
from showforge.jobs.errors import GenerationExhaustedError, ProviderRequestError, TransientNetworkError
from showforge.jobs.fallback import DEFAULT_TRAILER_CHAIN, ChainLink, TrailerFallbackCoordinator
from showforge.jobs.models import DEFAULT_STEP_NUMBERS, BackgroundTask, GenerationRequest, JobDescriptor, JobKind, JobOutcome, TrailerPointer
from showforge.jobs.poller import PollResult, StatusPoller
from showforge.jobs.policy import RetryPolicy, policy_for
from showforge.jobs.registry import BackgroundTaskRegistry
from showforge.jobs.retry import RetryController, Sleep
from showforge.jobs.scheduler import PollScheduler
from showforge.jobs.watchdog import Watchdog
from showforge.providers.base import GenerationProvider, LaunchRequest, PromptAdjuster
from showforge.storage.pointer_store import TrailerPointerStore
from showforge.utils.ids import generate_correlation_id

logger = logging.getLogger(__name__)

DescriptorListener = Callable[[JobDescriptor], None]


@dataclass(frozen=True)
class OrchestratorConfig:
  """Timing and classification knobs for the orchestrator."""

  poll_interval_seconds: float = 3.0
  success_grace_seconds: float = 5.0
  failure_grace_seconds: float = 10.0
  trailer_pointer_ttl_seconds: float = 600.0
  moderation_markers: tuple[str, ...] = DEFAULT_MODERATION_MARKERS
  rate_limit_markers: tuple[str, ...] = DEFAULT_RATE_LIMIT_MARKERS
  policies: dict[JobKind, RetryPolicy] = field(default_factory=dict)
  trailer_chain: tuple[ChainLink, ...] = DEFAULT_TRAILER_CHAIN

  @classmethod
  def from_settings(cls, settings: Settings) -> OrchestratorConfig:
    return cls(
      poll_interval_seconds=settings.poll_interval_seconds,
      success_grace_seconds=settings.success_grace_seconds,
      failure_grace_seconds=settings.failure_grace_seconds,
      trailer_pointer_ttl_seconds=settings.trailer_pointer_ttl_seconds,
      moderation_markers=settings.moderation_markers,
      rate_limit_markers=settings.rate_limit_markers,
    )


class GenerationOrchestrator:
  """Run logical generation requests to completion, one active job per subject.

  ``submit`` reuses an in-flight request for the same subject, ``restart``
  replaces it. Both return the asyncio task settling the request. Every
  descriptor change is published to subscribers as a detached snapshot.
  """

  def __init__(
    self,
    *,
    provider: GenerationProvider,
    registry: BackgroundTaskRegistry,
    pointer_store: TrailerPointerStore,
    adjuster: PromptAdjuster | None = None,
    providers: Mapping[str, GenerationProvider] | None = None,
    config: OrchestratorConfig | None = None,
    clock: Callable[[], float] = time.time,
    sleep: Sleep = asyncio.sleep,
  ) -> None:
    self._provider = provider
    self._providers = dict(providers or {})
    self._registry = registry
    self._pointer_store = pointer_store
    self._config = config or OrchestratorConfig()
    self._clock = clock
    self._arena = SubjectArena()
    self._scheduler = PollScheduler()
    self._listeners: list[DescriptorListener] = []
    self._classifiers: dict[str, FailureClassifier] = {}
    self._poller = StatusPoller(arena=self._arena, registry=registry, scheduler=self._scheduler, pointer_store=pointer_store, clock=clock, poll_interval_seconds=self._config.poll_interval_seconds, success_grace_seconds=self._config.success_grace_seconds, notify=self._notify)
    self._retry = RetryController(arena=self._arena, adjuster=adjuster, sleep=sleep)
    self._fallback = TrailerFallbackCoordinator(retry=self._retry, policy=self._policy("trailer"), classifier_for=lambda link: self._classifier_for(self._provider_named(link.provider)), chain=self._config.trailer_chain)

  @property
  def registry(self) -> BackgroundTaskRegistry:
    return self._registry

  def submit(self, request: GenerationRequest) -> asyncio.Task[JobOutcome]:
    """Start a request unless one is already running for the same subject."""
    existing = self._arena.get(*request.subject_key)
    if existing is not None and existing.is_running and existing.runner is not None:
      logger.info("Reusing in-flight %s job %s for %s", request.kind, existing.descriptor.job_id, request.subject_id)
      return existing.runner
    if existing is not None:
      self._supersede(existing)
    return self._start(request)

  def restart(self, request: GenerationRequest) -> asyncio.Task[JobOutcome]:
    """Replace whatever is tracked for the subject with a fresh request.

    The old poll loop is stopped, the mapping and retry bookkeeping are
    cleared and the new request is launched without yielding in between.
    """
    existing = self._arena.get(*request.subject_key)
    if existing is not None:
      logger.info("Restarting %s for %s, superseding job %s", request.kind, request.subject_id, existing.descriptor.job_id)
      self._supersede(existing)
    return self._start(request)

  async def generate(self, request: GenerationRequest) -> JobOutcome:
    return await self.submit(request)

  def snapshot(self, kind: JobKind, subject_id: str) -> JobDescriptor | None:
    entry = self._arena.get(kind, subject_id)
    return entry.descriptor.snapshot() if entry is not None else None

  def snapshots(self, show_id: str | None = None) -> list[JobDescriptor]:
    return [entry.descriptor.snapshot() for entry in self._arena if show_id is None or entry.descriptor.show_id == show_id]

  def subscribe(self, listener: DescriptorListener) -> Callable[[], None]:
    self._listeners.append(listener)

    def _unsubscribe() -> None:
      if listener in self._listeners:
        self._listeners.remove(listener)

    return _unsubscribe

  def resume(self) -> asyncio.Task[JobOutcome] | None:
    """Reconcile persisted state after a restart and reattach to a recent trailer job."""
    self._registry.reconcile_startup()
    pointer = self._pointer_store.get()
    if pointer is None:
      return None

    age = self._clock() - pointer.started_at
    if age >= self._config.trailer_pointer_ttl_seconds:
      logger.info("Discarding trailer pointer for job %s (%.0fs old)", pointer.job_id, age)
      self._pointer_store.clear()
      return None

    existing = self._arena.get("trailer", pointer.show_id)
    if existing is not None and existing.is_running and existing.runner is not None:
      return existing.runner
    if existing is not None:
      self._arena.release(existing)

    logger.info("Resuming trailer job %s for show %s", pointer.job_id, pointer.show_id)
    request = GenerationRequest(kind="trailer", subject_id=pointer.show_id, show_id=pointer.show_id, prompt="", step_number=DEFAULT_STEP_NUMBERS["trailer"], metadata={"resumed": True})
    entry, _ = self._arena.begin(request, job_id=pointer.job_id, started_at=pointer.started_at)
    entry.descriptor.status = "processing"
    self._registry.register(BackgroundTask(id=pointer.job_id, type="trailer", show_id=pointer.show_id, status="processing", created_at=pointer.started_at, subject_id=pointer.show_id, step_number=request.step_number, metadata={"resumed": True, "attempt": 1}))
    self._notify(entry)
    return self._spawn(entry)

  async def shutdown(self) -> None:
    """Stop every loop; the trailer pointer is kept so the next process can resume."""
    runners = [entry.runner for entry in self._arena if entry.runner is not None and not entry.runner.done()]
    await self._scheduler.shutdown()
    for runner in runners:
      runner.cancel()
    if runners:
      await asyncio.gather(*runners, return_exceptions=True)
    self._registry.close()

  def _start(self, request: GenerationRequest) -> asyncio.Task[JobOutcome]:
    now = self._clock()
    correlation_id = generate_correlation_id(request.kind, request.subject_id)
    entry, previous = self._arena.begin(request, job_id=correlation_id, started_at=now)
    if previous is not None:
      self._supersede(previous)

    step_number = request.step_number if request.step_number is not None else DEFAULT_STEP_NUMBERS[request.kind]
    metadata = {**request.metadata, "subjectId": request.subject_id, "attempt": 1}
    self._registry.register(BackgroundTask(id=correlation_id, type=request.kind, show_id=request.show_id, status="starting", created_at=now, character_id=request.character_id, subject_id=request.subject_id, step_number=step_number, metadata=metadata))
    self._notify(entry)
    return self._spawn(entry)

  def _spawn(self, entry: SubjectEntry) -> asyncio.Task[JobOutcome]:
    descriptor = entry.descriptor
    runner = asyncio.create_task(self._run(entry), name=f"generate:{descriptor.kind}:{descriptor.subject_id}")
    runner.add_done_callback(self._observe_runner)
    entry.runner = runner
    return runner

  def _supersede(self, entry: SubjectEntry) -> None:
    # Synchronous on purpose: no await may interleave between these steps.
    job_id = entry.descriptor.job_id
    self._scheduler.stop(job_id)
    self._arena.release(entry)
    entry.retry = RetryState()
    self._registry.remove(job_id)
    if entry.descriptor.kind == "trailer":
      self._clear_pointer(job_id)

  async def _run(self, entry: SubjectEntry) -> JobOutcome:
    try:
      if entry.request.metadata.get("resumed"):
        result = await self._run_resumed(entry)
      elif entry.request.kind == "trailer":
        result = await self._fallback.run(entry, self._run_link)
      else:
        result = await self._run_single(entry)
    except GenerationExhaustedError as exc:
      self._mark_exhausted(entry, exc)
      raise
    except asyncio.CancelledError:
      raise
    except Exception as exc:
      logger.error("Unexpected failure generating %s for %s", entry.descriptor.kind, entry.descriptor.subject_id, exc_info=True)
      if self._arena.owns(entry, entry.descriptor.job_id):
        self._mark_failed(entry, f"Unexpected error: {exc}")
      raise
    return self._settle(entry, result)

  async def _run_single(self, entry: SubjectEntry) -> PollResult:
    request = entry.request
    provider = self._provider
    policy = self._policy(request.kind)
    classifier = self._classifier_for(provider)
    watchdog = Watchdog(policy)
    prompt = request.prompt

    while True:
      result = await self._attempt(entry, provider, watchdog, prompt=prompt, model=request.model, reference_urls=request.reference_urls)
      if result.status != "failed" or result.failure is None:
        return result

      classification = classifier.classify(result.failure)
      decision = await self._retry.recover(entry, result.failure, classification, policy)
      if decision.action == "superseded":
        return PollResult(status="superseded")
      if decision.action == "exhausted":
        raise self._retry.exhaust(entry)
      prompt = decision.prompt or prompt

  async def _run_link(self, entry: SubjectEntry, link: ChainLink, prompt: str) -> PollResult:
    provider = self._provider_named(link.provider)
    reference_urls = entry.request.reference_urls if link.use_reference else ()
    return await self._attempt(entry, provider, Watchdog(self._policy("trailer")), prompt=prompt, model=link.model, reference_urls=reference_urls)

  async def _run_resumed(self, entry: SubjectEntry) -> PollResult:
    # The prompt context of a resumed trailer is gone, so a failure cannot be retried.
    entry.retry.scope_attempts = 1
    job_id = entry.descriptor.job_id
    result = await self._poller.poll(entry, self._provider, Watchdog(self._policy("trailer")))
    if result.status == "failed" and result.failure is not None:
      entry.retry.last_error = result.failure.message
      raise self._retry.exhaust(entry, message=f"Resumed trailer job {job_id} failed: {result.failure.message}")
    return result

  async def _attempt(self, entry: SubjectEntry, provider: GenerationProvider, watchdog: Watchdog, *, prompt: str, model: str | None, reference_urls: tuple[str, ...]) -> PollResult:
    """Launch one attempt and poll it to a terminal state."""
    descriptor = entry.descriptor
    if descriptor.status == "failed":
      self._advance(entry)

    retry = entry.retry
    retry.scope_attempts += 1
    correlation_id = descriptor.job_id
    descriptor.model_used = model
    descriptor.adjusted_prompt = retry.adjusted_prompt
    descriptor.used_prompt_adjustment = retry.adjusted_prompt is not None
    descriptor.adjustment_reason = retry.adjustment_reason
    self._registry.update(correlation_id, metadata={"attempt": descriptor.attempt, "model": model, "link": descriptor.link_label, "promptAdjusted": descriptor.used_prompt_adjustment})

    launch = LaunchRequest(kind=descriptor.kind, model=model, prompt=prompt, correlation_id=correlation_id, reference_urls=reference_urls, params=dict(entry.request.params))
    try:
      receipt = await provider.launch(launch)
    except Exception as exc:  # noqa: BLE001
      if not isinstance(exc, (ProviderRequestError, TransientNetworkError)):
        logger.error("Launch of %s attempt %s for %s raised unexpectedly", descriptor.kind, descriptor.attempt, descriptor.subject_id, exc_info=True)
      if not self._arena.owns(entry, correlation_id):
        return PollResult(status="superseded")
      descriptor.status = "failed"
      descriptor.error_detail = str(exc)
      self._registry.update(correlation_id, metadata={"lastError": str(exc)})
      self._notify(entry)
      return PollResult(status="failed", failure=JobFailure(job_id=correlation_id, message=str(exc)))

    if not self._arena.owns(entry, correlation_id):
      logger.info("Ignoring %s job %s launched for a superseded request", descriptor.kind, receipt.job_id)
      return PollResult(status="superseded")

    descriptor.job_id = receipt.job_id
    descriptor.status = receipt.status
    if receipt.model:
      descriptor.model_used = receipt.model
    self._registry.rekey(correlation_id, receipt.job_id)
    self._registry.update(receipt.job_id, status=receipt.status)
    if descriptor.kind == "trailer":
      self._pointer_store.set(TrailerPointer(job_id=receipt.job_id, show_id=descriptor.show_id, started_at=descriptor.started_at))
    logger.info("Launched %s attempt %s for %s as job %s", descriptor.kind, descriptor.attempt, descriptor.subject_id, receipt.job_id)
    self._notify(entry)

    return await self._poller.poll(entry, provider, watchdog)

  def _advance(self, entry: SubjectEntry) -> None:
    """Move the descriptor to a fresh attempt under a new correlation id."""
    descriptor = entry.descriptor
    previous_id = descriptor.job_id
    descriptor.attempt += 1
    descriptor.job_id = generate_correlation_id(descriptor.kind, descriptor.subject_id)
    descriptor.status = "starting"
    descriptor.started_at = self._clock()
    descriptor.poll_count = 0
    descriptor.output_url = None
    descriptor.error_detail = None
    self._registry.rekey(previous_id, descriptor.job_id)
    self._registry.update(descriptor.job_id, status="starting")
    if descriptor.kind == "trailer":
      self._clear_pointer(previous_id)

  def _settle(self, entry: SubjectEntry, result: PollResult) -> JobOutcome:
    descriptor = entry.descriptor
    if result.status != "succeeded":
      return JobOutcome(status="superseded", kind=descriptor.kind, subject_id=descriptor.subject_id, job_id=descriptor.job_id, attempts=descriptor.attempt)

    if descriptor.kind == "trailer":
      self._clear_pointer(descriptor.job_id)
    entry.retry = RetryState()
    return JobOutcome(
      status="succeeded",
      kind=descriptor.kind,
      subject_id=descriptor.subject_id,
      job_id=descriptor.job_id,
      output_url=descriptor.output_url,
      model_used=descriptor.model_used,
      attempts=descriptor.attempt,
      used_prompt_adjustment=descriptor.used_prompt_adjustment,
      adjustment_reason=descriptor.adjustment_reason,
    )

  def _mark_exhausted(self, entry: SubjectEntry, exc: GenerationExhaustedError) -> None:
    logger.error("%s for %s exhausted: %s", entry.descriptor.kind, entry.descriptor.subject_id, exc)
    self._mark_failed(entry, str(exc))

  def _mark_failed(self, entry: SubjectEntry, message: str) -> None:
    descriptor = entry.descriptor
    descriptor.status = "failed"
    descriptor.error_detail = message
    self._registry.update(descriptor.job_id, status="failed", error=message, completed_at=self._clock())
    self._registry.remove_later(descriptor.job_id, self._config.failure_grace_seconds)
    if descriptor.kind == "trailer":
      self._clear_pointer(descriptor.job_id)
    self._notify(entry)

  def _clear_pointer(self, job_id: str) -> None:
    pointer = self._pointer_store.get()
    if pointer is not None and pointer.job_id == job_id:
      self._pointer_store.clear()

  def _policy(self, kind: JobKind) -> RetryPolicy:
    return policy_for(kind, self._config.policies)

  def _provider_named(self, name: str | None) -> GenerationProvider:
    if name is None:
      return self._provider
    return self._providers.get(name, self._provider)

  def _classifier_for(self, provider: GenerationProvider) -> FailureClassifier:
    classifier = self._classifiers.get(provider.name)
    if classifier is None:
      classifier = FailureClassifier.from_markers(moderation_markers=(*self._config.moderation_markers, *provider.moderation_markers), rate_limit_markers=self._config.rate_limit_markers)
      self._classifiers[provider.name] = classifier
    return classifier

  def _notify(self, entry: SubjectEntry) -> None:
    snapshot = entry.descriptor.snapshot()
    for listener in list(self._listeners):
      try:
        listener(snapshot)
      except Exception:  # noqa: BLE001
        logger.warning("Descriptor listener failed for %s %s", snapshot.kind, snapshot.subject_id, exc_info=True)

  @staticmethod
  def _observe_runner(task: asyncio.Task[JobOutcome]) -> None:
    # Retrieve the exception so fire-and-forget submissions never warn at shutdown.
    if task.cancelled():
      return
    exc = task.exception()
    if exc is not None and not isinstance(exc, GenerationExhaustedError):
      logger.debug("Generation task %s ended with %r", task.get_name(), exc)
