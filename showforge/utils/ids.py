"""Identifier utilities."""

from __future__ import annotations

import uuid


def generate_correlation_id(kind: str, subject_id: str) -> str:
  """Return a local correlation id used until the provider issues a job id."""
  return f"{kind}-{subject_id}-{uuid.uuid4().hex[:12]}"
