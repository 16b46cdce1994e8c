"""Retry and backoff decisions for failed generation attempts."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Literal

from showforge.jobs.arena import RetryState, SubjectArena, SubjectEntry
from showforge.jobs.classify import FailureClass, FailureClassification, JobFailure
from showforge.jobs.errors import GenerationExhaustedError, PromptAdjustmentError
from showforge.jobs.policy import RetryPolicy
from showforge.providers.base import PromptAdjuster, PromptAdjustmentRequest

logger = logging.getLogger(__name__)

RetryAction = Literal["retry", "exhausted", "superseded"]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class RetryDecision:
  """What to do after a failed attempt."""

  action: RetryAction
  classification: FailureClassification
  delay_seconds: float = 0.0
  prompt: str | None = None
  adjusted: bool = False


def compute_backoff(policy: RetryPolicy, failure_class: FailureClass, attempt: int, *, will_adjust: bool) -> float:
  """Return the delay before the next attempt.

  Rate-limited failures grow linearly up to a cap; every other class uses a
  fixed delay, lengthened when the next attempt also calls the adjuster.
  """
  if failure_class is FailureClass.RATE_LIMITED:
    return min(policy.rate_limit_base_seconds + attempt * policy.rate_limit_increment_seconds, policy.rate_limit_cap_seconds)
  if will_adjust:
    return policy.adjust_delay_seconds
  return policy.fixed_delay_seconds


def current_prompt(entry: SubjectEntry) -> str:
  """Prompt the next attempt should use; an adjusted prompt sticks for the rest of the request."""
  return entry.retry.adjusted_prompt or entry.request.prompt


def exhaustion_message(entry: SubjectEntry) -> str:
  descriptor = entry.descriptor
  retry = entry.retry
  label = descriptor.kind.capitalize()
  attempts = descriptor.attempt
  plural = "attempt" if attempts == 1 else "attempts"
  if retry.adjusted_prompt:
    adjustment = f" even with an AI-adjusted prompt ({retry.adjustment_reason})" if retry.adjustment_reason else " even with an AI-adjusted prompt"
  else:
    adjustment = " without prompt adjustment"
  last_error = retry.last_error or descriptor.error_detail or "unknown error"
  return f"{label} generation failed after {attempts} {plural}{adjustment}. Last error: {last_error}"


class RetryController:
  """Decide between retrying and giving up, invoking the prompt adjuster at most once per request."""

  def __init__(self, *, arena: SubjectArena, adjuster: PromptAdjuster | None = None, sleep: Sleep = asyncio.sleep) -> None:
    self._arena = arena
    self._adjuster = adjuster
    self._sleep = sleep

  async def recover(self, entry: SubjectEntry, failure: JobFailure, classification: FailureClassification, policy: RetryPolicy) -> RetryDecision:
    """Record a failure, wait out the backoff, and return the decision for the next attempt."""
    retry = entry.retry
    descriptor = entry.descriptor
    retry.last_error = failure.message
    if classification.counts_toward_adjustment:
      retry.adjustment_failures += 1

    logger.warning("%s %s attempt %s failed (%s): %s", descriptor.kind, descriptor.subject_id, descriptor.attempt, classification.failure_class.value, failure.message)

    if retry.scope_attempts >= policy.max_attempts:
      return RetryDecision(action="exhausted", classification=classification)

    will_adjust = self._should_adjust(retry, classification, policy)
    delay = compute_backoff(policy, classification.failure_class, descriptor.attempt, will_adjust=will_adjust)
    job_id = descriptor.job_id
    await self._sleep(delay)
    if not self._arena.owns(entry, job_id):
      return RetryDecision(action="superseded", classification=classification, delay_seconds=delay)

    adjusted = False
    if will_adjust:
      adjusted = await self._adjust(entry, failure)
      if not self._arena.owns(entry, job_id):
        return RetryDecision(action="superseded", classification=classification, delay_seconds=delay)

    return RetryDecision(action="retry", classification=classification, delay_seconds=delay, prompt=current_prompt(entry), adjusted=adjusted)

  def exhaust(self, entry: SubjectEntry, *, message: str | None = None, links: tuple = ()) -> GenerationExhaustedError:
    """Build the terminal error and clear the request's retry bookkeeping."""
    descriptor = entry.descriptor
    retry = entry.retry
    error = GenerationExhaustedError(
      message or exhaustion_message(entry),
      kind=descriptor.kind,
      subject_id=descriptor.subject_id,
      attempts=descriptor.attempt,
      used_prompt_adjustment=retry.adjusted_prompt is not None,
      adjustment_reason=retry.adjustment_reason,
      last_error=retry.last_error,
      links=links,
    )
    entry.retry = RetryState()
    return error

  def _should_adjust(self, retry: RetryState, classification: FailureClassification, policy: RetryPolicy) -> bool:
    if self._adjuster is None or not classification.counts_toward_adjustment:
      return False
    return retry.adjusted_prompt is None and retry.adjustment_failures >= policy.adjust_threshold

  async def _adjust(self, entry: SubjectEntry, failure: JobFailure) -> bool:
    """Ask the collaborator for a new prompt; a refusal leaves the prompt unchanged."""
    assert self._adjuster is not None
    descriptor = entry.descriptor
    retry = entry.retry
    request = PromptAdjustmentRequest(original_prompt=entry.request.prompt, generation_kind=str(entry.request.metadata.get("adjustmentKind") or descriptor.kind), attempt_number=descriptor.attempt + 1, last_error_text=failure.message)

    try:
      result = await self._adjuster.adjust(request)
    except PromptAdjustmentError as exc:
      logger.warning("Prompt adjustment unavailable for %s %s: %s", descriptor.kind, descriptor.subject_id, exc)
      return False

    if not result.success or not result.adjusted_prompt:
      logger.warning("Prompt adjustment declined for %s %s: %s", descriptor.kind, descriptor.subject_id, result.refusal)
      return False

    retry.adjusted_prompt = result.adjusted_prompt
    retry.adjustment_reason = result.adjustment_reason
    logger.info("Using adjusted prompt for %s %s: %s", descriptor.kind, descriptor.subject_id, result.adjustment_reason)
    return True
