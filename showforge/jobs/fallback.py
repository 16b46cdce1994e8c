"""Ordered fallback chain for trailer generation."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from showforge.jobs.arena import SubjectEntry
from showforge.jobs.classify import FailureClass, FailureClassifier
from showforge.jobs.errors import ChainLinkFailure
from showforge.jobs.models import GenerationRequest
from showforge.jobs.poller import PollResult
from showforge.jobs.policy import RetryPolicy
from showforge.jobs.retry import RetryController, current_prompt

logger = logging.getLogger(__name__)

AUTO_MODEL = "auto"


@dataclass(frozen=True)
class ChainLink:
  """One provider/model configuration tried in order."""

  label: str
  model: str
  use_reference: bool = True
  adjustable: bool = True
  provider: str | None = None


DEFAULT_TRAILER_CHAIN: tuple[ChainLink, ...] = (
  ChainLink(label="sora-2 with character grid", model="openai/sora-2"),
  ChainLink(label="veo-3.1 with character grid", model="google/veo-3.1", adjustable=False),
  ChainLink(label="sora-2 without character grid", model="openai/sora-2", use_reference=False, adjustable=False),
)

LinkRunner = Callable[[SubjectEntry, ChainLink, str], Awaitable[PollResult]]


def chain_for(request: GenerationRequest, default_chain: tuple[ChainLink, ...]) -> tuple[ChainLink, ...]:
  """A request that pins a model skips the chain and only tries that model."""
  if request.model and request.model != AUTO_MODEL:
    return (ChainLink(label=request.model, model=request.model),)
  return default_chain


def chain_failure_message(entry: SubjectEntry, failures: list[ChainLinkFailure]) -> str:
  attempts = entry.descriptor.attempt
  adjusted = "yes" if entry.retry.adjusted_prompt else "no"
  lines = [f"All trailer generation methods failed after {attempts} attempts (AI prompt adjustment used: {adjusted}):"]
  lines.extend(f"{index}. {failure.label}: {failure.reason}" for index, failure in enumerate(failures, start=1))
  return "\n".join(lines)


class TrailerFallbackCoordinator:
  """Walk the chain, letting the retry controller govern attempts within each link."""

  def __init__(self, *, retry: RetryController, policy: RetryPolicy, classifier_for: Callable[[ChainLink], FailureClassifier], chain: tuple[ChainLink, ...] = DEFAULT_TRAILER_CHAIN) -> None:
    self._retry = retry
    self._policy = policy
    self._classifier_for = classifier_for
    self._chain = chain

  async def run(self, entry: SubjectEntry, run_link: LinkRunner) -> PollResult:
    """Return the first success or a superseded result; raise GenerationExhaustedError when every link fails."""
    links = chain_for(entry.request, self._chain)
    failures: list[ChainLinkFailure] = []

    for index, link in enumerate(links):
      has_next = index + 1 < len(links)
      classifier = self._classifier_for(link)
      entry.retry.scope_attempts = 0
      entry.descriptor.link_label = link.label
      prompt = current_prompt(entry)
      logger.info("Trailer %s trying %s", entry.descriptor.subject_id, link.label)

      while True:
        result = await run_link(entry, link, prompt)
        if result.status != "failed" or result.failure is None:
          return result

        failure = result.failure
        classification = classifier.classify(failure)
        reason = f"{classification.reason}: {failure.message}"

        # Moderation once the adjusted prompt is in play means this link will not get through.
        if has_next and classification.failure_class is FailureClass.CONTENT_MODERATION and (not link.adjustable or entry.retry.adjusted_prompt is not None):
          entry.retry.last_error = failure.message
          failures.append(ChainLinkFailure(label=link.label, reason=reason))
          logger.warning("Trailer %s moving past %s after moderation: %s", entry.descriptor.subject_id, link.label, failure.message)
          break

        decision = await self._retry.recover(entry, failure, classification, self._policy)
        if decision.action == "superseded":
          return PollResult(status="superseded")
        if decision.action == "exhausted":
          failures.append(ChainLinkFailure(label=link.label, reason=reason))
          break
        prompt = decision.prompt or prompt

    message = chain_failure_message(entry, failures)
    raise self._retry.exhaust(entry, message=message, links=tuple(failures))
