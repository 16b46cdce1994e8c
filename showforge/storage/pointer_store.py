"""Durable pointer to the single in-flight trailer job."""

from __future__ import annotations

import logging

import msgspec

from showforge.jobs.models import TrailerPointer
from showforge.storage.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

TRAILER_POINTER_KEY = "trailer-job"


class TrailerPointerStore:
  """Read and write the trailer resumption pointer through a key-value store."""

  def __init__(self, store: KeyValueStore, *, key: str = TRAILER_POINTER_KEY) -> None:
    self._store = store
    self._key = key

  def get(self) -> TrailerPointer | None:
    raw = self._store.get(self._key)
    if raw is None:
      return None

    try:
      return msgspec.json.decode(raw, type=TrailerPointer)
    except (msgspec.DecodeError, msgspec.ValidationError) as exc:
      # A corrupt pointer cannot be resumed; drop it so startup does not trip on it again.
      logger.warning("Discarding unreadable trailer pointer: %s", exc)
      self._store.delete(self._key)
      return None

  def set(self, pointer: TrailerPointer) -> None:
    self._store.set(self._key, msgspec.json.encode(pointer))

  def clear(self) -> None:
    self._store.delete(self._key)

  def rekey(self, old_id: str, new_id: str) -> bool:
    """Point at a provider-reissued job id, but only if the pointer still names old_id."""
    pointer = self.get()
    if pointer is None or pointer.job_id != old_id:
      return False
    self.set(msgspec.structs.replace(pointer, job_id=new_id))
    return True
