import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from showforge.core.logging import _initialize_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
  """Set up logging, build the orchestrator, and resume any recent trailer job."""
  from showforge.config import get_settings
  from showforge.services.orchestration import build_orchestrator

  settings = get_settings()
  logger = logging.getLogger("showforge.core.lifespan")

  try:
    _initialize_logging(settings)
    logger.info("Startup complete - logging verified.")
  except Exception:  # noqa: BLE001
    logger.warning("Initial logging setup failed; continuing with default handlers.", exc_info=True)

  # Tests may install their own orchestrator before startup.
  orchestrator = getattr(app.state, "orchestrator", None)
  if orchestrator is None:
    try:
      orchestrator = build_orchestrator(settings)
    except ValueError as exc:
      logger.error("Generation disabled: %s", exc)
    app.state.orchestrator = orchestrator

  if orchestrator is not None:
    resumed = orchestrator.resume()
    if resumed is not None:
      logger.info("Resumed in-flight trailer generation")

  try:
    yield
  finally:
    if orchestrator is not None:
      await orchestrator.shutdown()
      logger.info("Orchestrator shut down.")
