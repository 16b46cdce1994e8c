"""Exceptions raised across the generation orchestration core."""

from __future__ import annotations

from dataclasses import dataclass


class GenerationError(Exception):
  """Base class for orchestration failures."""


class TransientNetworkError(GenerationError):
  """Raised when a provider could not be reached; never counts as a job failure."""


class ProviderRequestError(GenerationError):
  """Raised when a provider rejects a launch request."""

  def __init__(self, message: str, *, status_code: int | None = None) -> None:
    super().__init__(message)
    self.status_code = status_code


class PromptAdjustmentError(GenerationError):
  """Raised when the prompt adjustment collaborator cannot be reached or misbehaves."""


class JobNotFoundError(GenerationError):
  """Raised when no job is tracked for a (kind, subject) pair."""


@dataclass(frozen=True)
class ChainLinkFailure:
  """Why one link of a fallback chain gave up."""

  label: str
  reason: str


class GenerationExhaustedError(GenerationError):
  """Terminal failure once every retry and fallback option has been used."""

  def __init__(self, message: str, *, kind: str, subject_id: str, attempts: int, used_prompt_adjustment: bool, adjustment_reason: str | None = None, last_error: str | None = None, links: tuple[ChainLinkFailure, ...] = ()) -> None:
    super().__init__(message)
    self.kind = kind
    self.subject_id = subject_id
    self.attempts = attempts
    self.used_prompt_adjustment = used_prompt_adjustment
    self.adjustment_reason = adjustment_reason
    self.last_error = last_error
    self.links = links
