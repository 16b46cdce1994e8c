from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, StrictStr

from showforge.jobs.models import BackgroundTask, GenerationRequest, JobDescriptor


class GenerationCreateRequest(BaseModel):
  """Request payload for starting or restarting a generation."""

  kind: Literal["portrait", "video", "trailer", "poster"] = Field(description="Artifact kind to generate.")
  subject_id: StrictStr = Field(min_length=1, description="Character id for portraits and videos, show id for trailers and posters.")
  show_id: StrictStr = Field(min_length=1, description="Show the artifact belongs to.")
  prompt: StrictStr = Field(min_length=1, description="Generation prompt.")
  model: StrictStr | None = Field(default=None, description="Provider model; 'auto' or unset lets trailers use the fallback chain.")
  character_id: StrictStr | None = Field(default=None, description="Character id mirrored into the task registry.")
  reference_urls: list[StrictStr] = Field(default_factory=list, max_length=8, description="Reference images passed to the provider.")
  params: dict[str, Any] = Field(default_factory=dict, description="Extra provider input fields.")
  step_number: int | None = Field(default=None, ge=0, description="Pipeline position used to order progress views.")
  restart: bool = Field(default=False, description="Supersede any in-flight job for the same subject.")
  model_config = ConfigDict(extra="forbid")

  def to_domain(self) -> GenerationRequest:
    return GenerationRequest(
      kind=self.kind,
      subject_id=self.subject_id,
      show_id=self.show_id,
      prompt=self.prompt,
      model=self.model,
      character_id=self.character_id,
      reference_urls=tuple(self.reference_urls),
      params=dict(self.params),
      step_number=self.step_number,
    )


class JobDescriptorResponse(BaseModel):
  """Public view of the active job for a subject."""

  kind: str
  subject_id: str
  show_id: str
  job_id: str
  status: str
  attempt: int
  started_at: float
  poll_count: int
  output_url: str | None = None
  error_detail: str | None = None
  used_prompt_adjustment: bool = False
  adjustment_reason: str | None = None
  model_used: str | None = None
  link_label: str | None = None

  @classmethod
  def from_descriptor(cls, descriptor: JobDescriptor) -> JobDescriptorResponse:
    return cls(
      kind=descriptor.kind,
      subject_id=descriptor.subject_id,
      show_id=descriptor.show_id,
      job_id=descriptor.job_id,
      status=descriptor.status,
      attempt=descriptor.attempt,
      started_at=descriptor.started_at,
      poll_count=descriptor.poll_count,
      output_url=descriptor.output_url,
      error_detail=descriptor.error_detail,
      used_prompt_adjustment=descriptor.used_prompt_adjustment,
      adjustment_reason=descriptor.adjustment_reason,
      model_used=descriptor.model_used,
      link_label=descriptor.link_label,
    )


class BackgroundTaskResponse(BaseModel):
  id: str
  type: str
  show_id: str
  status: str
  created_at: float
  character_id: str | None = None
  subject_id: str | None = None
  step_number: int | None = None
  metadata: dict[str, Any] = Field(default_factory=dict)
  completed_at: float | None = None
  output_url: str | None = None
  error: str | None = None

  @classmethod
  def from_task(cls, task: BackgroundTask) -> BackgroundTaskResponse:
    return cls(
      id=task.id,
      type=task.type,
      show_id=task.show_id,
      status=task.status,
      created_at=task.created_at,
      character_id=task.character_id,
      subject_id=task.subject_id,
      step_number=task.step_number,
      metadata=dict(task.metadata),
      completed_at=task.completed_at,
      output_url=task.output_url,
      error=task.error,
    )


class ShowTasksResponse(BaseModel):
  show_id: str
  tasks: list[BackgroundTaskResponse]
