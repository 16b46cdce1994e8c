"""Application configuration loaded from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from showforge.utils.env import env_file_path, load_env_file

load_env_file(env_file_path(), override=False)

DEFAULT_MODERATION_MARKERS = ("E005", "flagged as sensitive", "content policy", "safety system", "moderation")
DEFAULT_RATE_LIMIT_MARKERS = ("429", "too many requests", "rate limit", "rate-limit", "throttled")


@dataclass(frozen=True)
class Settings:
  """Typed settings for the showforge orchestration engine."""

  environment: str
  debug: bool
  log_dir: Path
  log_max_bytes: int
  log_backup_count: int
  log_http_4xx: bool
  state_dir: Path | None
  replicate_api_token: str | None
  replicate_base_url: str
  provider_timeout_seconds: float
  openai_api_key: str | None
  prompt_adjust_model: str
  poll_interval_seconds: float
  success_grace_seconds: float
  failure_grace_seconds: float
  max_active_task_age_seconds: float
  max_completed_task_age_seconds: float
  trailer_pointer_ttl_seconds: float
  moderation_markers: tuple[str, ...]
  rate_limit_markers: tuple[str, ...]


def _parse_bool(raw: str | None) -> bool:
  """Parse a boolean-ish string from environment variables."""

  if raw is None:
    return False

  normalized = raw.strip().lower()
  return normalized in {"1", "true", "yes", "on"}


def _optional_str(raw: str | None) -> str | None:
  if raw is None:
    return None
  value = raw.strip()
  if value == "":
    return None
  return value


def _positive_float(name: str, default: str, *, allow_zero: bool = False) -> float:
  value = float(os.getenv(name, default))
  if value < 0 or (value == 0 and not allow_zero):
    raise ValueError(f"{name} must be a positive number.")
  return value


def _positive_int(name: str, default: str) -> int:
  value = int(os.getenv(name, default))
  if value <= 0:
    raise ValueError(f"{name} must be a positive integer.")
  return value


def _parse_markers(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
  """Parse a comma separated marker list, falling back to defaults when unset."""

  raw = os.getenv(name)
  if raw is None:
    return default

  markers = tuple(marker.strip() for marker in raw.split(",") if marker.strip())
  if not markers:
    raise ValueError(f"{name} must include at least one marker when set.")
  return markers


@lru_cache(maxsize=1)
def get_settings() -> Settings:
  """Load settings once per process."""

  environment = os.getenv("SHOWFORGE_ENV", "development").lower()
  # Toggle verbose diagnostics in non-production environments.
  debug = _parse_bool(os.getenv("SHOWFORGE_DEBUG"))

  log_max_bytes = _positive_int("SHOWFORGE_LOG_MAX_BYTES", "5242880")  # 5MB default
  log_backup_count = int(os.getenv("SHOWFORGE_LOG_BACKUP_COUNT", "10"))
  if log_backup_count < 0:
    raise ValueError("SHOWFORGE_LOG_BACKUP_COUNT must be zero or a positive integer.")

  # Durable stores are file-backed only when a state directory is configured.
  raw_state_dir = _optional_str(os.getenv("SHOWFORGE_STATE_DIR"))
  state_dir = Path(raw_state_dir).expanduser() if raw_state_dir else None

  return Settings(
    environment=environment,
    debug=debug,
    log_dir=Path(os.getenv("SHOWFORGE_LOG_DIR", "logs")).expanduser(),
    log_max_bytes=log_max_bytes,
    log_backup_count=log_backup_count,
    log_http_4xx=_parse_bool(os.getenv("SHOWFORGE_LOG_HTTP_4XX")),
    state_dir=state_dir,
    replicate_api_token=_optional_str(os.getenv("REPLICATE_API_TOKEN")),
    replicate_base_url=(os.getenv("SHOWFORGE_REPLICATE_BASE_URL") or "https://api.replicate.com/v1").strip().rstrip("/"),
    provider_timeout_seconds=_positive_float("SHOWFORGE_PROVIDER_TIMEOUT_SECONDS", "30"),
    openai_api_key=_optional_str(os.getenv("OPENAI_API_KEY")),
    prompt_adjust_model=(os.getenv("SHOWFORGE_PROMPT_ADJUST_MODEL") or "gpt-4o-2024-08-06").strip(),
    poll_interval_seconds=_positive_float("SHOWFORGE_POLL_INTERVAL_SECONDS", "3"),
    success_grace_seconds=_positive_float("SHOWFORGE_SUCCESS_GRACE_SECONDS", "5", allow_zero=True),
    failure_grace_seconds=_positive_float("SHOWFORGE_FAILURE_GRACE_SECONDS", "10", allow_zero=True),
    max_active_task_age_seconds=_positive_float("SHOWFORGE_MAX_ACTIVE_TASK_AGE_SECONDS", "1800"),
    max_completed_task_age_seconds=_positive_float("SHOWFORGE_MAX_COMPLETED_TASK_AGE_SECONDS", "600"),
    trailer_pointer_ttl_seconds=_positive_float("SHOWFORGE_TRAILER_POINTER_TTL_SECONDS", "600"),
    moderation_markers=_parse_markers("SHOWFORGE_MODERATION_MARKERS", DEFAULT_MODERATION_MARKERS),
    rate_limit_markers=_parse_markers("SHOWFORGE_RATE_LIMIT_MARKERS", DEFAULT_RATE_LIMIT_MARKERS),
  )
