"""Shared FastAPI dependencies."""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request, status

from showforge.jobs.orchestrator import GenerationOrchestrator

logger = logging.getLogger(__name__)


def get_orchestrator(request: Request) -> GenerationOrchestrator:
  """Return the orchestrator built during startup."""
  orchestrator = getattr(request.app.state, "orchestrator", None)
  if orchestrator is None:
    logger.warning("Generation requested before the orchestrator was configured")
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Generation is not configured.")
  return orchestrator
