"""Cancellable repeating poll tasks keyed by job identity."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")
logger = logging.getLogger(__name__)


class PollHandle:
  """Identity token held by one poll loop; stopping it ends the loop at its next tick."""

  def __init__(self, key: str) -> None:
    self._key = key
    self._stopped = asyncio.Event()

  @property
  def key(self) -> str:
    return self._key

  @property
  def stopped(self) -> bool:
    return self._stopped.is_set()

  def stop(self) -> None:
    self._stopped.set()

  async def sleep(self, seconds: float) -> bool:
    """Wait for the next tick; return False when the handle was stopped meanwhile."""
    if self._stopped.is_set():
      return False
    try:
      await asyncio.wait_for(self._stopped.wait(), timeout=max(seconds, 0.0))
    except TimeoutError:
      return True
    return False


class PollScheduler:
  """Own one live poll loop per job id and stop loops by identity rather than by force."""

  def __init__(self) -> None:
    self._handles: dict[str, PollHandle] = {}
    self._tasks: dict[str, asyncio.Task] = {}

  def schedule(self, key: str, loop_fn: Callable[[PollHandle], Awaitable[T]]) -> asyncio.Task[T]:
    """Start a poll loop for a job id, retiring any loop already registered under it."""
    self.stop(key)
    handle = PollHandle(key)
    task: asyncio.Task[T] = asyncio.create_task(loop_fn(handle), name=f"poll:{key}")
    self._handles[key] = handle
    self._tasks[key] = task
    task.add_done_callback(lambda _task, _handle=handle: self._forget(_handle))
    return task

  def stop(self, key: str) -> bool:
    """Retire the loop for a job id; the loop notices on its next tick."""
    handle = self._handles.pop(key, None)
    self._tasks.pop(key, None)
    if handle is None:
      return False
    handle.stop()
    logger.debug("Stopped poll loop for job %s", key)
    return True

  def rekey(self, old_key: str, new_key: str) -> None:
    """Move a live loop to the provider-issued job id."""
    handle = self._handles.pop(old_key, None)
    task = self._tasks.pop(old_key, None)
    if handle is None or task is None:
      return
    handle._key = new_key
    self._handles[new_key] = handle
    self._tasks[new_key] = task

  def is_live(self, key: str) -> bool:
    handle = self._handles.get(key)
    return handle is not None and not handle.stopped

  async def shutdown(self) -> None:
    """Stop every loop and wait for the tasks to unwind."""
    tasks = list(self._tasks.values())
    for key in list(self._handles):
      self.stop(key)
    for task in tasks:
      task.cancel()
    if tasks:
      await asyncio.gather(*tasks, return_exceptions=True)

  def _forget(self, handle: PollHandle) -> None:
    # Only drop the mapping when it still points at the finished loop.
    if self._handles.get(handle.key) is handle:
      self._handles.pop(handle.key, None)
      self._tasks.pop(handle.key, None)
