"""Failure classification for generation attempts."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Literal

TripReason = Literal["wall_clock", "stuck_poll"]
FailurePredicate = Callable[[str], bool]


class FailureClass(str, Enum):
  """Recoverable failure classes; exhaustion is decided by the retry controller."""

  CONTENT_MODERATION = "content_moderation"
  RATE_LIMITED = "rate_limited"
  STUCK_TIMEOUT = "stuck_timeout"
  GENERIC_ERROR = "generic_error"


@dataclass(frozen=True)
class JobFailure:
  """Raw terminal failure observed for one attempt."""

  job_id: str
  message: str
  trip: TripReason | None = None


@dataclass(frozen=True)
class FailureClassification:
  """Classification result for a failed attempt."""

  failure_class: FailureClass
  reason: str
  counts_toward_adjustment: bool


def marker_predicate(markers: Iterable[str]) -> FailurePredicate:
  """Build a case-insensitive substring predicate over known error markers."""
  lowered = tuple(marker.lower() for marker in markers if marker)

  def _matches(text: str) -> bool:
    haystack = (text or "").lower()
    return any(marker in haystack for marker in lowered)

  return _matches


class FailureClassifier:
  """Classify failures; first match wins in moderation, rate limit, watchdog, generic order."""

  def __init__(self, *, is_moderation: FailurePredicate, is_rate_limited: FailurePredicate) -> None:
    self._is_moderation = is_moderation
    self._is_rate_limited = is_rate_limited

  @classmethod
  def from_markers(cls, *, moderation_markers: Iterable[str], rate_limit_markers: Iterable[str]) -> FailureClassifier:
    return cls(is_moderation=marker_predicate(moderation_markers), is_rate_limited=marker_predicate(rate_limit_markers))

  def classify(self, failure: JobFailure) -> FailureClassification:
    if self._is_moderation(failure.message):
      return FailureClassification(failure_class=FailureClass.CONTENT_MODERATION, reason="Flagged by content moderation", counts_toward_adjustment=True)

    if self._is_rate_limited(failure.message):
      return FailureClassification(failure_class=FailureClass.RATE_LIMITED, reason="Provider rate limit", counts_toward_adjustment=False)

    # Wall-clock timeouts are liveness failures; poll-count stalls may be prompt-sensitive.
    if failure.trip == "wall_clock":
      return FailureClassification(failure_class=FailureClass.STUCK_TIMEOUT, reason="Timed out", counts_toward_adjustment=False)
    if failure.trip == "stuck_poll":
      return FailureClassification(failure_class=FailureClass.STUCK_TIMEOUT, reason="Stuck without progress", counts_toward_adjustment=True)

    return FailureClassification(failure_class=FailureClass.GENERIC_ERROR, reason="Provider error", counts_toward_adjustment=False)
