"""Small key-value stores backing the durable trailer pointer and registry snapshot."""

from __future__ import annotations

import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)

_KEY_PATTERN = re.compile(r"[A-Za-z0-9._-]+")


class KeyValueStore(Protocol):
  """Byte-valued store surviving (or not) across process restarts."""

  def get(self, key: str) -> bytes | None:
    """Return the stored value or None."""

  def set(self, key: str, value: bytes) -> None:
    """Store a value, replacing any previous one."""

  def delete(self, key: str) -> None:
    """Remove a value if present."""


class InMemoryKeyValueStore:
  """Process-local store used in tests and when no state directory is configured."""

  def __init__(self) -> None:
    self._values: dict[str, bytes] = {}

  def get(self, key: str) -> bytes | None:
    return self._values.get(key)

  def set(self, key: str, value: bytes) -> None:
    self._values[key] = bytes(value)

  def delete(self, key: str) -> None:
    self._values.pop(key, None)


class FileKeyValueStore:
  """Store each key as a JSON file under a root directory, written atomically."""

  def __init__(self, root: Path) -> None:
    self._root = Path(root)
    self._root.mkdir(parents=True, exist_ok=True)

  def _path_for(self, key: str) -> Path:
    if not _KEY_PATTERN.fullmatch(key):
      raise ValueError(f"Invalid store key: {key!r}")
    return self._root / f"{key}.json"

  def get(self, key: str) -> bytes | None:
    path = self._path_for(key)
    try:
      return path.read_bytes()
    except FileNotFoundError:
      return None

  def set(self, key: str, value: bytes) -> None:
    path = self._path_for(key)
    # Write to a sibling temp file so readers never observe a partial value.
    fd, tmp_name = tempfile.mkstemp(prefix=f".{key}.", suffix=".tmp", dir=self._root)
    try:
      with os.fdopen(fd, "wb") as handle:
        handle.write(value)
      os.replace(tmp_name, path)
    except OSError:
      Path(tmp_name).unlink(missing_ok=True)
      raise

  def delete(self, key: str) -> None:
    self._path_for(key).unlink(missing_ok=True)
