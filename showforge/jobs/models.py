"""Domain models for generation jobs and the background task ledger."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Literal

import msgspec

JobKind = Literal["portrait", "video", "trailer", "poster"]
JobStatus = Literal["starting", "processing", "succeeded", "failed"]
TaskType = Literal["show-generation", "character-seeds", "character-dossier", "portrait", "video", "portrait-grid", "poster", "library-poster", "trailer"]
TaskStatus = Literal["starting", "processing", "succeeded", "failed", "canceled"]
OutcomeStatus = Literal["succeeded", "superseded"]

ACTIVE_TASK_STATUSES = frozenset({"starting", "processing"})

# Pipeline positions used to order progress views.
DEFAULT_STEP_NUMBERS: dict[JobKind, int] = {"poster": 0, "portrait": 4, "video": 5, "trailer": 8}


@dataclass
class JobDescriptor:
  """State of the current attempt for one (kind, subject) logical request."""

  kind: JobKind
  subject_id: str
  show_id: str
  job_id: str
  status: JobStatus = "starting"
  attempt: int = 1
  started_at: float = 0.0
  poll_count: int = 0
  output_url: str | None = None
  error_detail: str | None = None
  used_prompt_adjustment: bool = False
  adjustment_reason: str | None = None
  adjusted_prompt: str | None = None
  model_used: str | None = None
  character_id: str | None = None
  link_label: str | None = None

  def snapshot(self) -> JobDescriptor:
    """Return a detached copy safe to hand to subscribers."""
    return replace(self)


@dataclass
class BackgroundTask:
  """Registry entry giving cross-screen visibility of a generation job."""

  id: str
  type: TaskType
  show_id: str
  status: TaskStatus
  created_at: float
  character_id: str | None = None
  subject_id: str | None = None
  step_number: int | None = None
  metadata: dict[str, Any] = field(default_factory=dict)
  completed_at: float | None = None
  output_url: str | None = None
  error: str | None = None

  @property
  def is_active(self) -> bool:
    return self.status in ACTIVE_TASK_STATUSES

  @property
  def ledger_key(self) -> tuple[str, str, str | None]:
    """Identity used to collapse duplicate entries for the same subject."""
    return (self.type, self.show_id, self.subject_id if self.subject_id is not None else self.character_id)


class TrailerPointer(msgspec.Struct, frozen=True):
  """Durable resumption pointer for the in-flight trailer job."""

  job_id: str
  show_id: str
  started_at: float


@dataclass(frozen=True)
class GenerationRequest:
  """Caller's ask for one artifact; may span several chained attempts."""

  kind: JobKind
  subject_id: str
  show_id: str
  prompt: str
  model: str | None = None
  character_id: str | None = None
  reference_urls: tuple[str, ...] = ()
  params: dict[str, Any] = field(default_factory=dict, hash=False)
  step_number: int | None = None
  metadata: dict[str, Any] = field(default_factory=dict, hash=False)

  @property
  def subject_key(self) -> tuple[JobKind, str]:
    return (self.kind, self.subject_id)


@dataclass(frozen=True)
class JobOutcome:
  """Result handed back to the caller once a logical request settles."""

  status: OutcomeStatus
  kind: JobKind
  subject_id: str
  job_id: str | None = None
  output_url: str | None = None
  model_used: str | None = None
  attempts: int = 0
  used_prompt_adjustment: bool = False
  adjustment_reason: str | None = None
