"""Wall-clock and poll-count watchdog for in-flight attempts."""

from __future__ import annotations

from dataclasses import dataclass

from showforge.jobs.classify import TripReason
from showforge.jobs.models import JobDescriptor
from showforge.jobs.policy import RetryPolicy


@dataclass(frozen=True)
class WatchdogTrip:
  """Reason the watchdog forced an attempt to fail."""

  reason: TripReason
  message: str


class Watchdog:
  """Detect attempts that neither finish nor fail within their bounds."""

  def __init__(self, policy: RetryPolicy) -> None:
    self._wall_clock_seconds = policy.wall_clock_seconds
    self._stuck_poll_limit = policy.stuck_poll_limit

  def check(self, descriptor: JobDescriptor, now: float) -> WatchdogTrip | None:
    """Return a trip when either trigger fires, otherwise None."""
    elapsed = now - descriptor.started_at
    if elapsed > self._wall_clock_seconds:
      minutes = self._wall_clock_seconds / 60
      return WatchdogTrip(reason="wall_clock", message=f"Generation timed out after {minutes:g} minutes.")

    if self._stuck_poll_limit is not None and descriptor.poll_count > self._stuck_poll_limit:
      return WatchdogTrip(reason="stuck_poll", message=f"Generation stuck after {descriptor.poll_count} status checks without progress.")

    return None
