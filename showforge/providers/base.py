"""Provider abstractions for media generation and prompt adjustment."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from showforge.jobs.models import JobKind, JobStatus

AdjustmentKind = str


@dataclass(frozen=True)
class LaunchRequest:
  """Everything a provider needs to start one attempt."""

  kind: JobKind
  model: str | None
  prompt: str
  correlation_id: str
  reference_urls: tuple[str, ...] = ()
  params: dict[str, Any] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class LaunchReceipt:
  """Provider acknowledgement of a launched job."""

  job_id: str
  status: JobStatus = "starting"
  model: str | None = None


@dataclass(frozen=True)
class ProviderStatus:
  """Normalized status for one provider job; status None means the job is unknown."""

  status: JobStatus | None
  output_url: str | None = None
  error_detail: str | None = None
  model: str | None = None
  job_id: str | None = None


@dataclass(frozen=True)
class PromptAdjustmentRequest:
  original_prompt: str
  generation_kind: AdjustmentKind
  attempt_number: int
  last_error_text: str | None = None


@dataclass(frozen=True)
class PromptAdjustment:
  """Result of asking the collaborator for a moderation-friendlier prompt."""

  success: bool
  adjusted_prompt: str | None = None
  adjustment_reason: str | None = None
  confidence_level: str | None = None
  refusal: str | None = None


class GenerationProvider(ABC):
  """Asynchronous media generation backend."""

  name: str = "provider"
  moderation_markers: tuple[str, ...] = ()

  @abstractmethod
  async def launch(self, request: LaunchRequest) -> LaunchReceipt:
    """Start a job; raise ProviderRequestError on rejection."""
    raise NotImplementedError

  @abstractmethod
  async def fetch_status(self, job_id: str) -> ProviderStatus:
    """Return the job status; raise TransientNetworkError when the provider is unreachable."""
    raise NotImplementedError


class PromptAdjuster(ABC):
  """External collaborator that rewrites prompts rejected by moderation."""

  @abstractmethod
  async def adjust(self, request: PromptAdjustmentRequest) -> PromptAdjustment:
    """Return an adjustment or a refusal; raise PromptAdjustmentError on transport failure."""
    raise NotImplementedError
