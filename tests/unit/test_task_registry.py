from __future__ import annotations

import asyncio

import msgspec
import pytest

from showforge.jobs.models import BackgroundTask
from showforge.jobs.registry import REGISTRY_SNAPSHOT_KEY, BackgroundTaskRegistry, RegistryEvent
from showforge.storage.kv_store import InMemoryKeyValueStore
from tests.fakes import FakeClock


def _task(task_id: str, **overrides) -> BackgroundTask:
  fields = {"id": task_id, "type": "portrait", "show_id": "show-1", "status": "processing", "created_at": 1000.0, "character_id": "char-1", "step_number": 4}
  fields.update(overrides)
  return BackgroundTask(**fields)


def test_register_replaces_entry_for_same_subject():
  registry = BackgroundTaskRegistry()
  registry.register(_task("old"))
  registry.register(_task("other", character_id="char-2"))
  registry.register(_task("new"))

  assert registry.get("old") is None
  assert {task.id for task in registry.list_active()} == {"other", "new"}


def test_subjects_without_character_keep_separate_entries():
  registry = BackgroundTaskRegistry()
  registry.register(_task("job-a", type="video", character_id=None, subject_id="char-a"))
  registry.register(_task("job-b", type="video", character_id=None, subject_id="char-b"))
  registry.register(_task("job-a2", type="video", character_id=None, subject_id="char-a"))

  assert registry.get("job-a") is None
  assert {task.id for task in registry.list_active()} == {"job-a2", "job-b"}
  assert registry.update("job-b", status="succeeded") is not None


def test_update_merges_metadata_and_stamps_completion():
  clock = FakeClock(start=2000.0)
  registry = BackgroundTaskRegistry(clock=clock)
  registry.register(_task("job-1", metadata={"attempt": 1}))

  registry.update("job-1", metadata={"lastError": "boom"})
  updated = registry.update("job-1", status="failed", error="boom")

  assert updated is not None
  assert updated.metadata == {"attempt": 1, "lastError": "boom"}
  assert updated.completed_at == 2000.0
  assert registry.update("missing", status="failed") is None


def test_rekey_emits_single_event_and_keeps_order():
  registry = BackgroundTaskRegistry()
  registry.register(_task("a", character_id="c-a"))
  registry.register(_task("b", character_id="c-b"))
  events: list[RegistryEvent] = []
  registry.subscribe(events.append)

  registry.rekey("a", "a-2")

  assert [event.action for event in events] == ["rekeyed"]
  assert events[0].previous_id == "a"
  assert events[0].task.id == "a-2"
  assert [task.id for task in registry.list_active()] == ["a-2", "b"]


def test_list_for_show_orders_by_step_then_creation():
  registry = BackgroundTaskRegistry()
  registry.register(_task("trailer", type="trailer", character_id=None, step_number=8, created_at=1.0))
  registry.register(_task("portrait-b", character_id="b", created_at=3.0))
  registry.register(_task("portrait-a", character_id="a", created_at=2.0))
  registry.register(_task("poster", type="poster", character_id=None, step_number=0, created_at=9.0))
  registry.register(_task("elsewhere", show_id="show-2"))

  assert [task.id for task in registry.list_for_show("show-1")] == ["poster", "portrait-a", "portrait-b", "trailer"]


def test_prune_drops_stale_entries():
  registry = BackgroundTaskRegistry()
  registry.register(_task("stuck", character_id="a", created_at=0.0))
  registry.register(_task("fresh", character_id="b", created_at=1500.0))
  registry.register(_task("done", character_id="c", status="succeeded", created_at=0.0, completed_at=1000.0))

  assert registry.prune(now=1900.0) == 2
  assert [task.id for task in registry.list_for_show("show-1")] == ["fresh"]


def test_clear_completed_keeps_active():
  registry = BackgroundTaskRegistry()
  registry.register(_task("running", character_id="a"))
  registry.register(_task("done", character_id="b", status="succeeded"))
  assert registry.clear_completed() == 1
  assert len(registry) == 1


@pytest.mark.anyio
async def test_remove_later_and_cancel_on_remove():
  registry = BackgroundTaskRegistry()
  registry.register(_task("a", character_id="a"))
  registry.register(_task("b", character_id="b"))
  events: list[str] = []
  registry.subscribe(lambda event: events.append(f"{event.action}:{event.task.id}"))

  registry.remove_later("a", 0.01)
  registry.remove_later("b", 0.01)
  registry.remove("b")
  await asyncio.sleep(0.05)

  assert registry.get("a") is None
  assert events == ["removed:b", "removed:a"]


def test_listener_errors_do_not_break_registry():
  registry = BackgroundTaskRegistry()

  def _boom(event: RegistryEvent) -> None:
    raise RuntimeError("listener failed")

  registry.subscribe(_boom)
  registry.register(_task("a"))
  assert registry.get("a") is not None


def test_snapshot_reconciliation_discards_active_entries():
  store = InMemoryKeyValueStore()
  clock = FakeClock(start=1100.0)
  previous = BackgroundTaskRegistry(store=store, clock=clock)
  previous.register(_task("running", character_id="a"))
  previous.register(_task("done", character_id="b", status="succeeded", completed_at=1050.0))

  restored = BackgroundTaskRegistry(store=store, clock=clock)
  assert restored.reconcile_startup() == 1
  assert [task.id for task in restored.list_for_show("show-1")] == ["done"]

  persisted = msgspec.json.decode(store.get(REGISTRY_SNAPSHOT_KEY), type=list[BackgroundTask])
  assert [task.id for task in persisted] == ["done"]


def test_unreadable_snapshot_is_dropped():
  store = InMemoryKeyValueStore()
  store.set(REGISTRY_SNAPSHOT_KEY, b"not json")
  registry = BackgroundTaskRegistry(store=store)
  assert registry.reconcile_startup() == 0
  assert store.get(REGISTRY_SNAPSHOT_KEY) is None
