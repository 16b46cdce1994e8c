"""Background task registry giving every screen a shared view of in-flight generation."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Any, Literal

import msgspec

from showforge.jobs.models import BackgroundTask
from showforge.storage.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

REGISTRY_SNAPSHOT_KEY = "background-tasks"

RegistryAction = Literal["registered", "updated", "rekeyed", "removed"]


@dataclass(frozen=True)
class RegistryEvent:
  """Change notification delivered to registry subscribers."""

  action: RegistryAction
  task: BackgroundTask
  previous_id: str | None = None


RegistryListener = Callable[[RegistryEvent], None]


class BackgroundTaskRegistry:
  """Ordered ledger of background tasks keyed by id.

  Entries are mirrored by the orchestration core and may be persisted as a
  snapshot so a restarted process can show recently finished work. Active
  entries from a previous process are never trusted after a restart because
  nothing is polling them any more.
  """

  def __init__(self, *, store: KeyValueStore | None = None, clock: Callable[[], float] = time.time, max_active_age_seconds: float = 1800.0, max_completed_age_seconds: float = 600.0) -> None:
    self._store = store
    self._clock = clock
    self._max_active_age = max_active_age_seconds
    self._max_completed_age = max_completed_age_seconds
    self._tasks: dict[str, BackgroundTask] = {}
    self._removals: dict[str, asyncio.TimerHandle] = {}
    self._listeners: list[RegistryListener] = []

  def register(self, task: BackgroundTask) -> BackgroundTask:
    """Add a task, replacing any entry for the same (type, show, subject)."""
    for existing in list(self._tasks.values()):
      if existing.id != task.id and existing.ledger_key == task.ledger_key:
        self._drop(existing.id)

    self._cancel_removal(task.id)
    stored = replace(task, metadata=dict(task.metadata))
    self._tasks[stored.id] = stored
    self._persist()
    self._emit(RegistryEvent(action="registered", task=stored))
    return stored

  def update(self, task_id: str, **fields: Any) -> BackgroundTask | None:
    """Apply a partial update; metadata is merged rather than replaced."""
    current = self._tasks.get(task_id)
    if current is None:
      logger.debug("Ignoring update for unknown background task %s", task_id)
      return None

    if "metadata" in fields:
      fields["metadata"] = {**current.metadata, **(fields["metadata"] or {})}
    updated = replace(current, **fields)
    if not updated.is_active and updated.completed_at is None:
      updated = replace(updated, completed_at=self._clock())

    self._tasks[task_id] = updated
    self._persist()
    self._emit(RegistryEvent(action="updated", task=updated))
    return updated

  def rekey(self, old_id: str, new_id: str) -> BackgroundTask | None:
    """Move an entry to a new id as one change."""
    current = self._tasks.get(old_id)
    if current is None or old_id == new_id:
      return current

    moved = replace(current, id=new_id)
    # Rebuild in place so ordering survives the rename.
    rebuilt: dict[str, BackgroundTask] = {}
    for key, value in self._tasks.items():
      if key == old_id:
        rebuilt[new_id] = moved
      elif key != new_id:
        rebuilt[key] = value
    self._tasks = rebuilt
    pending = self._removals.pop(old_id, None)
    if pending is not None:
      pending.cancel()
      self.remove_later(new_id, max(pending.when() - asyncio.get_running_loop().time(), 0.0))

    self._persist()
    self._emit(RegistryEvent(action="rekeyed", task=moved, previous_id=old_id))
    return moved

  def remove(self, task_id: str) -> bool:
    self._cancel_removal(task_id)
    removed = self._drop(task_id)
    return removed

  def remove_later(self, task_id: str, delay_seconds: float) -> None:
    """Schedule removal after a grace period so observers see the terminal state."""
    self._cancel_removal(task_id)
    loop = asyncio.get_running_loop()
    self._removals[task_id] = loop.call_later(delay_seconds, self._expire, task_id)

  def get(self, task_id: str) -> BackgroundTask | None:
    return self._tasks.get(task_id)

  def list_for_show(self, show_id: str) -> list[BackgroundTask]:
    tasks = [task for task in self._tasks.values() if task.show_id == show_id]
    return sorted(tasks, key=lambda task: (task.step_number if task.step_number is not None else 1_000, task.created_at))

  def list_active(self) -> list[BackgroundTask]:
    return [task for task in self._tasks.values() if task.is_active]

  def clear_completed(self) -> int:
    finished = [task.id for task in self._tasks.values() if not task.is_active]
    for task_id in finished:
      self.remove(task_id)
    return len(finished)

  def prune(self, now: float | None = None) -> int:
    """Drop active entries older than the active window and finished ones past the completed window."""
    moment = self._clock() if now is None else now
    stale: list[str] = []
    for task in self._tasks.values():
      if task.is_active and moment - task.created_at > self._max_active_age:
        stale.append(task.id)
      elif not task.is_active and moment - (task.completed_at or task.created_at) > self._max_completed_age:
        stale.append(task.id)

    for task_id in stale:
      self.remove(task_id)
    if stale:
      logger.info("Pruned %s stale background tasks", len(stale))
    return len(stale)

  def reconcile_startup(self) -> int:
    """Load the persisted snapshot, discarding entries no live poller owns."""
    if self._store is None:
      return 0

    raw = self._store.get(REGISTRY_SNAPSHOT_KEY)
    if raw is None:
      return 0

    try:
      restored = msgspec.json.decode(raw, type=list[BackgroundTask])
    except (msgspec.DecodeError, msgspec.ValidationError) as exc:
      logger.warning("Discarding unreadable background task snapshot: %s", exc)
      self._store.delete(REGISTRY_SNAPSHOT_KEY)
      return 0

    discarded = 0
    for task in restored:
      if task.is_active:
        discarded += 1
        continue
      self._tasks.setdefault(task.id, task)

    self.prune()
    self._persist()
    if discarded:
      logger.info("Discarded %s background tasks left active by a previous process", discarded)
    return discarded

  def subscribe(self, listener: RegistryListener) -> Callable[[], None]:
    """Register a change listener and return a callable that unsubscribes it."""
    self._listeners.append(listener)

    def _unsubscribe() -> None:
      if listener in self._listeners:
        self._listeners.remove(listener)

    return _unsubscribe

  def close(self) -> None:
    for handle in self._removals.values():
      handle.cancel()
    self._removals.clear()

  def __len__(self) -> int:
    return len(self._tasks)

  def _expire(self, task_id: str) -> None:
    self._removals.pop(task_id, None)
    self._drop(task_id)

  def _drop(self, task_id: str) -> bool:
    task = self._tasks.pop(task_id, None)
    if task is None:
      return False
    self._persist()
    self._emit(RegistryEvent(action="removed", task=task))
    return True

  def _cancel_removal(self, task_id: str) -> None:
    handle = self._removals.pop(task_id, None)
    if handle is not None:
      handle.cancel()

  def _persist(self) -> None:
    if self._store is None:
      return
    self._store.set(REGISTRY_SNAPSHOT_KEY, msgspec.json.encode(list(self._tasks.values())))

  def _emit(self, event: RegistryEvent) -> None:
    for listener in list(self._listeners):
      try:
        listener(event)
      except Exception:  # noqa: BLE001
        logger.warning("Background task listener failed for %s", event.task.id, exc_info=True)
