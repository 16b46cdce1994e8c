"""Factory wiring the orchestrator from settings."""

from __future__ import annotations

import logging

from showforge.config import Settings
from showforge.jobs.orchestrator import GenerationOrchestrator, OrchestratorConfig
from showforge.jobs.registry import BackgroundTaskRegistry
from showforge.providers.base import PromptAdjuster
from showforge.providers.prompt_adjuster import OpenAIPromptAdjuster
from showforge.providers.replicate import ReplicateProvider
from showforge.storage.kv_store import FileKeyValueStore, InMemoryKeyValueStore, KeyValueStore
from showforge.storage.pointer_store import TrailerPointerStore

logger = logging.getLogger(__name__)


def build_store(settings: Settings) -> KeyValueStore:
  """Use a file-backed store when a state directory is configured."""
  if settings.state_dir is None:
    logger.info("No state directory configured; trailer resumption will not survive restarts.")
    return InMemoryKeyValueStore()
  return FileKeyValueStore(settings.state_dir)


def build_adjuster(settings: Settings) -> PromptAdjuster | None:
  if not settings.openai_api_key:
    logger.warning("OPENAI_API_KEY not set; prompt adjustment is disabled.")
    return None
  return OpenAIPromptAdjuster(api_key=settings.openai_api_key, model=settings.prompt_adjust_model)


def build_orchestrator(settings: Settings) -> GenerationOrchestrator:
  """Build a fully wired orchestrator; raises ValueError when the provider token is missing."""
  store = build_store(settings)
  provider = ReplicateProvider(api_token=settings.replicate_api_token, base_url=settings.replicate_base_url, timeout_seconds=settings.provider_timeout_seconds, openai_api_key=settings.openai_api_key)
  registry = BackgroundTaskRegistry(store=store, max_active_age_seconds=settings.max_active_task_age_seconds, max_completed_age_seconds=settings.max_completed_task_age_seconds)
  return GenerationOrchestrator(provider=provider, registry=registry, pointer_store=TrailerPointerStore(store), adjuster=build_adjuster(settings), config=OrchestratorConfig.from_settings(settings))
