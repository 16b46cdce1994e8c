import logging
from typing import Literal

from fastapi import APIRouter, Depends, status

from showforge.api.deps import get_orchestrator
from showforge.api.models import GenerationCreateRequest, JobDescriptorResponse
from showforge.jobs.orchestrator import GenerationOrchestrator
from showforge.services import generations as generation_service

router = APIRouter()
logger = logging.getLogger("showforge.api.routes.generations")


@router.post("", response_model=JobDescriptorResponse, status_code=status.HTTP_202_ACCEPTED)
async def create_generation(  # noqa: B008
  payload: GenerationCreateRequest,
  orchestrator: GenerationOrchestrator = Depends(get_orchestrator),  # noqa: B008
) -> JobDescriptorResponse:
  """Start a generation, or restart it when requested."""
  return generation_service.start_generation(payload, orchestrator)


@router.get("/{kind}/{subject_id}", response_model=JobDescriptorResponse)
async def get_generation(  # noqa: B008
  kind: Literal["portrait", "video", "trailer", "poster"],
  subject_id: str,
  orchestrator: GenerationOrchestrator = Depends(get_orchestrator),  # noqa: B008
) -> JobDescriptorResponse:
  """Fetch the job currently tracked for a subject."""
  return generation_service.get_generation(kind, subject_id, orchestrator)
