from __future__ import annotations

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError

from showforge.api.routes import generations, tasks
from showforge.core.exceptions import generation_exception_handler, global_exception_handler, http_exception_handler, job_not_found_exception_handler, request_validation_exception_handler
from showforge.core.lifespan import lifespan
from showforge.core.middleware import RequestLoggingMiddleware
from showforge.jobs.errors import GenerationError, JobNotFoundError


def create_app() -> FastAPI:
  """Build the FastAPI application."""
  app = FastAPI(title="showforge-engine", lifespan=lifespan)

  app.add_exception_handler(Exception, global_exception_handler)
  app.add_exception_handler(HTTPException, http_exception_handler)
  app.add_exception_handler(JobNotFoundError, job_not_found_exception_handler)
  app.add_exception_handler(GenerationError, generation_exception_handler)
  app.add_exception_handler(RequestValidationError, request_validation_exception_handler)

  app.add_middleware(RequestLoggingMiddleware)

  @app.get("/health", include_in_schema=False)
  async def health_check() -> dict[str, str]:
    """Return a simple health status."""
    return {"status": "ok", "version": "0.1.0"}

  app.include_router(generations.router, prefix="/v1/generations", tags=["generations"])
  app.include_router(tasks.router, prefix="/v1/shows", tags=["tasks"])
  return app


app = create_app()
