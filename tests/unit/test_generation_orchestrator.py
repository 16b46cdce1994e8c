from __future__ import annotations

import asyncio

import pytest

from showforge.jobs.errors import GenerationExhaustedError, PromptAdjustmentError, ProviderRequestError, TransientNetworkError
from showforge.jobs.models import GenerationRequest, JobDescriptor
from showforge.jobs.policy import RetryPolicy
from showforge.providers.base import PromptAdjustment
from tests.fakes import FakeClock, RecordingSleep, ScriptedProvider, StubAdjuster, build_orchestrator, failed, processing, succeeded

MODERATION = "E005: The output was flagged as sensitive"


def _request(kind="portrait", subject_id="char-1", prompt="A grizzled detective in the rain", **overrides) -> GenerationRequest:
  fields = {"kind": kind, "subject_id": subject_id, "show_id": "show-1", "prompt": prompt, "character_id": subject_id if kind in ("portrait", "video") else None}
  fields.update(overrides)
  return GenerationRequest(**fields)


async def _wait_for(predicate, timeout: float = 1.0) -> None:
  deadline = asyncio.get_running_loop().time() + timeout
  while not predicate():
    if asyncio.get_running_loop().time() > deadline:
      raise AssertionError("condition not reached")
    await asyncio.sleep(0.001)


@pytest.mark.anyio
async def test_first_attempt_success_mirrors_registry():
  provider = ScriptedProvider([[processing(), succeeded("https://cdn.example.com/p.png")]])
  orchestrator = build_orchestrator(provider)

  outcome = await orchestrator.generate(_request())

  assert outcome.status == "succeeded"
  assert outcome.output_url == "https://cdn.example.com/p.png"
  assert outcome.attempts == 1
  assert outcome.used_prompt_adjustment is False
  task = orchestrator.registry.get("job-1")
  assert task is not None
  assert task.status == "succeeded"
  assert task.step_number == 4
  assert orchestrator.snapshot("portrait", "char-1").status == "succeeded"
  await orchestrator.shutdown()


@pytest.mark.anyio
async def test_repeated_moderation_adjusts_prompt_once_then_succeeds():
  provider = ScriptedProvider([[failed(MODERATION)], [failed(MODERATION)], [succeeded()]])
  adjuster = StubAdjuster()
  sleep = RecordingSleep()
  orchestrator = build_orchestrator(provider, adjuster=adjuster, sleep=sleep)

  outcome = await orchestrator.generate(_request())

  assert outcome.status == "succeeded"
  assert outcome.attempts == 3
  assert outcome.used_prompt_adjustment is True
  assert outcome.adjustment_reason == "softened wording"
  assert provider.prompts == ["A grizzled detective in the rain", "A grizzled detective in the rain", "softened prompt"]
  assert len(adjuster.calls) == 1
  assert adjuster.calls[0].original_prompt == "A grizzled detective in the rain"
  assert adjuster.calls[0].attempt_number == 3
  assert sleep.delays == [1.5, 3.0]
  await orchestrator.shutdown()


@pytest.mark.anyio
async def test_adjusted_prompt_is_reused_and_adjuster_called_at_most_once():
  provider = ScriptedProvider([[failed(MODERATION)]] * 5 + [[succeeded()]])
  adjuster = StubAdjuster()
  orchestrator = build_orchestrator(provider, adjuster=adjuster)

  outcome = await orchestrator.generate(_request())

  assert outcome.attempts == 6
  assert len(adjuster.calls) == 1
  assert provider.prompts[2:] == ["softened prompt"] * 4


@pytest.mark.anyio
async def test_refused_adjustment_is_retried_on_next_eligible_failure():
  provider = ScriptedProvider([[failed(MODERATION)]] * 3 + [[succeeded()]])
  adjuster = StubAdjuster(PromptAdjustment(success=False, refusal="I can't help with that."), PromptAdjustmentError("down"), PromptAdjustment(success=True, adjusted_prompt="gentler", adjustment_reason="r"))
  orchestrator = build_orchestrator(provider, adjuster=adjuster)

  outcome = await orchestrator.generate(_request())

  assert outcome.status == "succeeded"
  assert len(adjuster.calls) == 2
  assert provider.prompts[-1] == "A grizzled detective in the rain"
  assert outcome.used_prompt_adjustment is False


@pytest.mark.anyio
async def test_generic_failures_exhaust_after_max_retries():
  provider = ScriptedProvider([[failed("CUDA out of memory")]] * 10)
  adjuster = StubAdjuster()
  orchestrator = build_orchestrator(provider, adjuster=adjuster, failure_grace_seconds=30)

  with pytest.raises(GenerationExhaustedError) as excinfo:
    await orchestrator.generate(_request(kind="video"))

  assert len(provider.launches) == 5
  assert excinfo.value.attempts == 5
  assert excinfo.value.used_prompt_adjustment is False
  assert "after 5 attempts without prompt adjustment" in str(excinfo.value)
  assert "CUDA out of memory" in str(excinfo.value)
  assert adjuster.calls == []
  task = orchestrator.registry.get("job-5")
  assert task is not None
  assert task.status == "failed"
  assert "5 attempts" in task.error
  await orchestrator.shutdown()


@pytest.mark.anyio
async def test_rate_limited_failures_back_off_linearly():
  provider = ScriptedProvider([ProviderRequestError("429 Too Many Requests", status_code=429), [failed("rate limit exceeded")], [succeeded()]])
  sleep = RecordingSleep()
  orchestrator = build_orchestrator(provider, sleep=sleep)

  outcome = await orchestrator.generate(_request(kind="poster", subject_id="show-1"))

  assert outcome.attempts == 3
  assert sleep.delays == [5.0, 8.0]


@pytest.mark.anyio
async def test_transient_status_errors_skip_the_tick():
  provider = ScriptedProvider([[TransientNetworkError("connection reset"), TransientNetworkError("dns"), processing(), succeeded()]])
  orchestrator = build_orchestrator(provider)

  outcome = await orchestrator.generate(_request())

  assert outcome.attempts == 1
  assert len(provider.status_calls) == 4
  assert orchestrator.snapshot("portrait", "char-1").poll_count == 2


@pytest.mark.anyio
async def test_success_without_output_url_counts_as_failure():
  provider = ScriptedProvider([[succeeded("")], [succeeded()]])
  orchestrator = build_orchestrator(provider)
  outcome = await orchestrator.generate(_request())
  assert outcome.attempts == 2


@pytest.mark.anyio
async def test_stuck_portrait_counts_toward_adjustment():
  provider = ScriptedProvider([[processing()], [processing()], [succeeded()]])
  adjuster = StubAdjuster()
  policies = {"portrait": RetryPolicy(max_retries=8, stuck_poll_limit=3)}
  orchestrator = build_orchestrator(provider, adjuster=adjuster, policies=policies)

  outcome = await orchestrator.generate(_request())

  assert outcome.attempts == 3
  assert len(adjuster.calls) == 1
  assert "stuck" in adjuster.calls[0].last_error_text


@pytest.mark.anyio
async def test_wall_clock_timeout_does_not_count_toward_adjustment():
  clock = FakeClock()
  provider = ScriptedProvider([[processing()], [processing()], [succeeded()]])
  adjuster = StubAdjuster()
  orchestrator = build_orchestrator(provider, adjuster=adjuster, clock=clock, policies={"video": RetryPolicy(max_retries=4, wall_clock_seconds=60)})

  async def _advance_clock() -> None:
    while True:
      clock.advance(30)
      await asyncio.sleep(0.002)

  ticker = asyncio.create_task(_advance_clock())
  try:
    outcome = await orchestrator.generate(_request(kind="video"))
  finally:
    ticker.cancel()

  assert outcome.attempts == 3
  assert adjuster.calls == []


@pytest.mark.anyio
async def test_restart_supersedes_previous_request():
  provider = ScriptedProvider([[processing()], [succeeded("https://cdn.example.com/new.png")]])
  orchestrator = build_orchestrator(provider)

  first = orchestrator.submit(_request())
  await _wait_for(lambda: provider.status_calls)
  second = orchestrator.restart(_request(prompt="A retired detective"))

  first_outcome = await asyncio.wait_for(first, timeout=1)
  second_outcome = await asyncio.wait_for(second, timeout=1)

  assert first_outcome.status == "superseded"
  assert second_outcome.status == "succeeded"
  assert second_outcome.output_url == "https://cdn.example.com/new.png"
  assert orchestrator.registry.get("job-1") is None
  assert [task.id for task in orchestrator.registry.list_for_show("show-1")] == ["job-2"]
  calls_after = len([call for call in provider.status_calls if call == "job-1"])
  await asyncio.sleep(0.01)
  assert len([call for call in provider.status_calls if call == "job-1"]) == calls_after
  await orchestrator.shutdown()


@pytest.mark.anyio
async def test_restart_during_backoff_abandons_old_retry():
  provider = ScriptedProvider([[failed("boom")], [succeeded()]])
  gate = asyncio.Event()

  async def _blocking_sleep(seconds: float) -> None:
    await gate.wait()

  orchestrator = build_orchestrator(provider, sleep=_blocking_sleep)

  first = orchestrator.submit(_request())
  await _wait_for(lambda: orchestrator.snapshot("portrait", "char-1").status == "failed")
  second = orchestrator.restart(_request())
  gate.set()

  assert (await asyncio.wait_for(first, timeout=1)).status == "superseded"
  assert (await asyncio.wait_for(second, timeout=1)).status == "succeeded"
  assert len(provider.launches) == 2


@pytest.mark.anyio
async def test_submit_reuses_in_flight_request():
  provider = ScriptedProvider([[processing(), processing(), succeeded()]])
  orchestrator = build_orchestrator(provider)

  first = orchestrator.submit(_request())
  second = orchestrator.submit(_request(prompt="something else"))

  assert first is second
  await first
  assert len(provider.launches) == 1


@pytest.mark.anyio
async def test_subjects_are_independent():
  provider = ScriptedProvider([[processing(), succeeded("a")], [succeeded("b")]])
  orchestrator = build_orchestrator(provider)

  outcomes = await asyncio.gather(orchestrator.generate(_request(subject_id="char-a")), orchestrator.generate(_request(subject_id="char-b")))

  assert {outcome.subject_id for outcome in outcomes} == {"char-a", "char-b"}
  assert all(outcome.status == "succeeded" for outcome in outcomes)


@pytest.mark.anyio
async def test_subscribers_get_snapshots_and_listener_errors_are_contained():
  provider = ScriptedProvider([[failed("boom")], [succeeded()], [succeeded()]])
  orchestrator = build_orchestrator(provider)
  seen: list[JobDescriptor] = []

  def _boom(descriptor: JobDescriptor) -> None:
    raise RuntimeError("listener failed")

  orchestrator.subscribe(_boom)
  unsubscribe = orchestrator.subscribe(seen.append)
  await orchestrator.generate(_request())

  assert seen[0].status == "starting"
  assert seen[-1].status == "succeeded"
  assert {descriptor.attempt for descriptor in seen} == {1, 2}
  seen[-1].status = "failed"
  assert orchestrator.snapshot("portrait", "char-1").status == "succeeded"

  unsubscribe()
  count = len(seen)
  await orchestrator.generate(_request(subject_id="char-2"))
  assert len(seen) == count


@pytest.mark.anyio
async def test_registry_tracks_attempt_ids():
  provider = ScriptedProvider([[failed("boom")], [processing(), processing(), succeeded()]])
  orchestrator = build_orchestrator(provider)
  actions: list[str] = []
  orchestrator.registry.subscribe(lambda event: actions.append(event.action))

  await orchestrator.generate(_request())

  assert actions.count("registered") == 1
  assert actions.count("rekeyed") == 3
  task = orchestrator.registry.get("job-2")
  assert task.metadata["attempt"] == 2
  assert task.metadata["lastError"] == "boom"


@pytest.mark.anyio
async def test_registry_keeps_one_entry_per_subject_without_character():
  provider = ScriptedProvider([[processing()], [processing()]])
  orchestrator = build_orchestrator(provider)

  orchestrator.submit(_request(kind="video", subject_id="char-a", character_id=None))
  orchestrator.submit(_request(kind="video", subject_id="char-b", character_id=None))
  await _wait_for(lambda: len(provider.status_calls) >= 2)

  tasks = orchestrator.registry.list_for_show("show-1")
  assert sorted(task.id for task in tasks) == ["job-1", "job-2"]
  assert sorted(task.subject_id for task in tasks) == ["char-a", "char-b"]
  await orchestrator.shutdown()


@pytest.mark.anyio
async def test_unexpected_status_error_fails_the_attempt_not_the_request():
  provider = ScriptedProvider([[RuntimeError("unexpected payload")], [succeeded()]])
  orchestrator = build_orchestrator(provider)

  outcome = await orchestrator.generate(_request())

  assert outcome.status == "succeeded"
  assert outcome.attempts == 2
  assert orchestrator.registry.get("job-2").metadata["lastError"] == "Status check failed: unexpected payload"


@pytest.mark.anyio
async def test_unexpected_launch_error_is_retried():
  provider = ScriptedProvider([ValueError("bad input shape"), [succeeded()]])
  orchestrator = build_orchestrator(provider)

  outcome = await orchestrator.generate(_request())

  assert outcome.status == "succeeded"
  assert outcome.attempts == 2
  assert len(provider.launches) == 2


@pytest.mark.anyio
async def test_portrait_gets_eight_retries_before_exhaustion():
  provider = ScriptedProvider([[failed("boom")]] * 12)
  orchestrator = build_orchestrator(provider)

  with pytest.raises(GenerationExhaustedError) as excinfo:
    await orchestrator.generate(_request())

  assert len(provider.launches) == 9
  assert excinfo.value.attempts == 9


@pytest.mark.anyio
async def test_succeeded_entry_leaves_registry_after_grace_window():
  provider = ScriptedProvider([[processing(), processing(), succeeded()]])
  orchestrator = build_orchestrator(provider, success_grace_seconds=0.02)

  await orchestrator.generate(_request())
  assert orchestrator.registry.get("job-1").status == "succeeded"

  await _wait_for(lambda: orchestrator.registry.get("job-1") is None, timeout=0.5)
  assert orchestrator.registry.list_for_show("show-1") == []
  await orchestrator.shutdown()
