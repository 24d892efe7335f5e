"""
tests/conftest.py

Pytest configuration and shared fixtures for the Bundleflow test suite.

Unit tests run entirely in memory: the ledger, object store, queue and
collaborators are the fakes in tests/helpers.py. Tests marked `integration`
need a Postgres with the pgmq extension at BUNDLEFLOW_TEST_DATABASE_URL and
are skipped without it.
"""

from __future__ import annotations

import logging
import os
from typing import Generator

import pytest

from bundleflow.core.config import Settings, reset_settings
from bundleflow.core.logging import clear_context
from tests.helpers import (
    InMemoryLedger,
    Pipeline,
    RecordingQueue,
    RecordingSender,
    make_settings,
    make_store,
)

# =============================================================================
# GLOBAL TEST CONFIGURATION
# =============================================================================


def pytest_configure(config: pytest.Config) -> None:
    """
    Registers custom markers:
      - unit: in-memory tests with no external services
      - integration: tests that need a real Postgres with pgmq
    """
    config.addinivalue_line("markers", "unit: marks tests that run fully in memory")
    config.addinivalue_line(
        "markers",
        "integration: marks tests as requiring Postgres with the pgmq extension",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if os.environ.get("BUNDLEFLOW_TEST_DATABASE_URL"):
        return
    skip = pytest.mark.skip(reason="BUNDLEFLOW_TEST_DATABASE_URL not set")
    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip)


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture(autouse=True)
def _isolate_process_state() -> Generator[None, None, None]:
    """Cached settings and log context never leak between tests."""
    reset_settings()
    clear_context()
    yield
    reset_settings()
    clear_context()
    logging.getLogger().setLevel(logging.WARNING)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def ledger() -> InMemoryLedger:
    return InMemoryLedger()


@pytest.fixture
def store(settings: Settings):
    return make_store(settings)


@pytest.fixture
def queue(settings: Settings) -> RecordingQueue:
    return RecordingQueue(settings.DEAD_LETTER_QUEUE)


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def pipeline() -> Pipeline:
    return Pipeline()
