from __future__ import annotations

import pytest

from showforge.config import DEFAULT_MODERATION_MARKERS, DEFAULT_RATE_LIMIT_MARKERS
from showforge.jobs.classify import FailureClass, FailureClassifier, JobFailure
from showforge.jobs.models import JobDescriptor
from showforge.jobs.policy import DEFAULT_POLICIES, RetryPolicy, policy_for
from showforge.jobs.retry import compute_backoff
from showforge.jobs.watchdog import Watchdog


def _descriptor(**overrides) -> JobDescriptor:
  fields = {"kind": "portrait", "subject_id": "char-1", "show_id": "show-1", "job_id": "job-1", "started_at": 1000.0}
  fields.update(overrides)
  return JobDescriptor(**fields)


def _classifier() -> FailureClassifier:
  return FailureClassifier.from_markers(moderation_markers=DEFAULT_MODERATION_MARKERS, rate_limit_markers=DEFAULT_RATE_LIMIT_MARKERS)


def test_watchdog_trips_wall_clock_after_limit():
  watchdog = Watchdog(RetryPolicy(max_retries=1, wall_clock_seconds=300))
  assert watchdog.check(_descriptor(), now=1300.0) is None

  trip = watchdog.check(_descriptor(), now=1300.5)
  assert trip is not None
  assert trip.reason == "wall_clock"
  assert "5 minutes" in trip.message


def test_watchdog_trips_stuck_poll_only_when_configured():
  descriptor = _descriptor(poll_count=61)
  assert Watchdog(DEFAULT_POLICIES["video"]).check(descriptor, now=1001.0) is None

  # Reaching the limit is tolerated; only exceeding it trips.
  assert Watchdog(DEFAULT_POLICIES["portrait"]).check(_descriptor(poll_count=60), now=1001.0) is None
  trip = Watchdog(DEFAULT_POLICIES["portrait"]).check(descriptor, now=1001.0)
  assert trip is not None
  assert trip.reason == "stuck_poll"


def test_wall_clock_wins_over_stuck_poll():
  trip = Watchdog(DEFAULT_POLICIES["portrait"]).check(_descriptor(poll_count=99), now=2000.0)
  assert trip is not None
  assert trip.reason == "wall_clock"


def test_policy_defaults_per_kind():
  assert policy_for("portrait").max_attempts == 9
  assert policy_for("video").max_retries == 4
  assert policy_for("poster").max_retries == 3
  assert policy_for("trailer").wall_clock_seconds == 900
  override = RetryPolicy(max_retries=0)
  assert policy_for("video", {"video": override}) is override


@pytest.mark.parametrize(
  ("failure", "expected_class", "counts"),
  [
    (JobFailure(job_id="j", message="E005: output flagged as sensitive"), FailureClass.CONTENT_MODERATION, True),
    (JobFailure(job_id="j", message="429 Too Many Requests"), FailureClass.RATE_LIMITED, False),
    (JobFailure(job_id="j", message="Generation timed out", trip="wall_clock"), FailureClass.STUCK_TIMEOUT, False),
    (JobFailure(job_id="j", message="no progress", trip="stuck_poll"), FailureClass.STUCK_TIMEOUT, True),
    (JobFailure(job_id="j", message="CUDA out of memory"), FailureClass.GENERIC_ERROR, False),
  ],
)
def test_classification(failure, expected_class, counts):
  result = _classifier().classify(failure)
  assert result.failure_class is expected_class
  assert result.counts_toward_adjustment is counts


def test_moderation_wins_over_rate_limit_and_watchdog():
  failure = JobFailure(job_id="j", message="rate limit hit after content policy violation", trip="wall_clock")
  assert _classifier().classify(failure).failure_class is FailureClass.CONTENT_MODERATION


def test_custom_predicates_are_used():
  classifier = FailureClassifier(is_moderation=lambda text: text.startswith("NSFW"), is_rate_limited=lambda text: False)
  assert classifier.classify(JobFailure(job_id="j", message="NSFW detected")).failure_class is FailureClass.CONTENT_MODERATION
  assert classifier.classify(JobFailure(job_id="j", message="429")).failure_class is FailureClass.GENERIC_ERROR


def test_backoff_schedule():
  policy = RetryPolicy(max_retries=4)
  assert compute_backoff(policy, FailureClass.RATE_LIMITED, 1, will_adjust=False) == 5.0
  assert compute_backoff(policy, FailureClass.RATE_LIMITED, 3, will_adjust=False) == 11.0
  assert compute_backoff(policy, FailureClass.RATE_LIMITED, 20, will_adjust=False) == 30.0
  assert compute_backoff(policy, FailureClass.GENERIC_ERROR, 5, will_adjust=False) == 1.5
  assert compute_backoff(policy, FailureClass.CONTENT_MODERATION, 2, will_adjust=True) == 3.0
