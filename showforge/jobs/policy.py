"""Per-kind retry, backoff, and watchdog limits."""

from __future__ import annotations

from dataclasses import dataclass

from showforge.jobs.models import JobKind


@dataclass(frozen=True)
class RetryPolicy:
  """Bounds for one kind of logical request."""

  max_retries: int
  adjust_threshold: int = 2
  wall_clock_seconds: float = 300.0
  stuck_poll_limit: int | None = None
  fixed_delay_seconds: float = 1.5
  adjust_delay_seconds: float = 3.0
  rate_limit_base_seconds: float = 2.0
  rate_limit_increment_seconds: float = 3.0
  rate_limit_cap_seconds: float = 30.0

  @property
  def max_attempts(self) -> int:
    return self.max_retries + 1


DEFAULT_POLICIES: dict[JobKind, RetryPolicy] = {
  # The portrait provider is observed to wedge silently, so it gets the stuck-poll detector.
  "portrait": RetryPolicy(max_retries=8, stuck_poll_limit=60),
  "video": RetryPolicy(max_retries=4),
  "poster": RetryPolicy(max_retries=3),
  # Trailer retries are per fallback link; the chain coordinator escalates afterwards.
  "trailer": RetryPolicy(max_retries=2, wall_clock_seconds=900.0),
}


def policy_for(kind: JobKind, overrides: dict[JobKind, RetryPolicy] | None = None) -> RetryPolicy:
  """Resolve the retry policy for a job kind."""
  if overrides and kind in overrides:
    return overrides[kind]
  return DEFAULT_POLICIES[kind]
