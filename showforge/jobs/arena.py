"""Per-subject arena holding the single active job descriptor and its retry bookkeeping."""

from __future__ import annotations

import asyncio
from collections.abc import Iterator
from dataclasses import dataclass, field

from showforge.jobs.models import GenerationRequest, JobDescriptor, JobKind, JobOutcome


@dataclass
class RetryState:
  """Retry bookkeeping for one logical request."""

  scope_attempts: int = 0
  adjustment_failures: int = 0
  adjusted_prompt: str | None = None
  adjustment_reason: str | None = None
  last_error: str | None = None


@dataclass
class SubjectEntry:
  """Everything the core tracks for one (kind, subject) pair."""

  request: GenerationRequest
  descriptor: JobDescriptor
  retry: RetryState = field(default_factory=RetryState)
  runner: asyncio.Task[JobOutcome] | None = None
  superseded: bool = False

  @property
  def key(self) -> tuple[JobKind, str]:
    return (self.descriptor.kind, self.descriptor.subject_id)

  @property
  def is_running(self) -> bool:
    return self.runner is not None and not self.runner.done()


class SubjectArena:
  """One entry per (kind, subject_id); replacing an entry invalidates the old one."""

  def __init__(self) -> None:
    self._entries: dict[tuple[JobKind, str], SubjectEntry] = {}

  def get(self, kind: JobKind, subject_id: str) -> SubjectEntry | None:
    return self._entries.get((kind, subject_id))

  def begin(self, request: GenerationRequest, *, job_id: str, started_at: float) -> tuple[SubjectEntry, SubjectEntry | None]:
    """Install a fresh entry for the request and return it with the entry it replaced."""
    descriptor = JobDescriptor(kind=request.kind, subject_id=request.subject_id, show_id=request.show_id, job_id=job_id, started_at=started_at, character_id=request.character_id, model_used=request.model)
    entry = SubjectEntry(request=request, descriptor=descriptor)
    previous = self._entries.get(request.subject_key)
    if previous is not None:
      previous.superseded = True
    self._entries[request.subject_key] = entry
    return entry, previous

  def release(self, entry: SubjectEntry) -> bool:
    """Drop the mapping for an entry if it is still the active one."""
    entry.superseded = True
    if self._entries.get(entry.key) is entry:
      del self._entries[entry.key]
      return True
    return False

  def owns(self, entry: SubjectEntry, job_id: str) -> bool:
    """Return True when the entry is still active and still tracking job_id."""
    if entry.superseded:
      return False
    return self._entries.get(entry.key) is entry and entry.descriptor.job_id == job_id

  def __iter__(self) -> Iterator[SubjectEntry]:
    return iter(list(self._entries.values()))

  def __len__(self) -> int:
    return len(self._entries)
