import logging

from fastapi import APIRouter, Depends

from showforge.api.deps import get_orchestrator
from showforge.api.models import ShowTasksResponse
from showforge.jobs.orchestrator import GenerationOrchestrator
from showforge.services import generations as generation_service

router = APIRouter()
logger = logging.getLogger("showforge.api.routes.tasks")


@router.get("/{show_id}/tasks", response_model=ShowTasksResponse)
async def list_show_tasks(  # noqa: B008
  show_id: str,
  orchestrator: GenerationOrchestrator = Depends(get_orchestrator),  # noqa: B008
) -> ShowTasksResponse:
  """List background tasks for a show in pipeline order."""
  return generation_service.list_show_tasks(show_id, orchestrator)
