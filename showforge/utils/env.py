"""Read a local .env file into the process environment before settings load."""

from __future__ import annotations

import os
from collections.abc import Iterable
from pathlib import Path

ENV_FILE_VARIABLE = "SHOWFORGE_ENV_FILE"


def env_file_path() -> Path:
  """Resolve the .env file: SHOWFORGE_ENV_FILE when set, else the project root."""
  configured = os.getenv(ENV_FILE_VARIABLE)
  if configured:
    return Path(configured).expanduser()
  return Path(__file__).resolve().parents[2] / ".env"


def _unquote(value: str) -> str:
  if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
    return value[1:-1]
  # Unquoted values may carry a trailing comment.
  marker = value.find(" #")
  return value[:marker].rstrip() if marker != -1 else value


def parse_env_lines(lines: Iterable[str]) -> dict[str, str]:
  """Parse KEY=VALUE lines; blank lines, comments and malformed lines are skipped."""
  values: dict[str, str] = {}
  for raw_line in lines:
    line = raw_line.strip()
    if line.startswith("export "):
      line = line.removeprefix("export ").lstrip()
    name, sep, value = line.partition("=")
    name = name.strip()
    if not sep or not name or name.startswith("#"):
      continue
    values[name] = _unquote(value.strip())
  return values


def load_env_file(path: Path, *, override: bool = False) -> dict[str, str]:
  """Apply a .env file and return the variables it actually set."""
  if not path.is_file():
    return {}

  applied: dict[str, str] = {}
  for name, value in parse_env_lines(path.read_text(encoding="utf-8").splitlines()).items():
    if override or name not in os.environ:
      os.environ[name] = value
      applied[name] = value
  return applied
