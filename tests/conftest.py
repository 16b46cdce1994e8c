"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from showforge.config import get_settings


@pytest.fixture
def anyio_backend():
  return "asyncio"


@pytest.fixture(autouse=True)
def _reset_settings_cache():
  get_settings.cache_clear()
  yield
  get_settings.cache_clear()
