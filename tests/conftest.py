"""sitewright test configuration — shared fixtures for unit tests."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from fakes import FakePageDriver, listing_page

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _reset_settings_cache():
    """Clear the settings LRU cache between tests."""
    from sitewright.settings.config import get_settings

    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture()
def recipe_settings():
    """Recipe limits tightened so waits and retries finish quickly."""
    from sitewright.settings.config import RecipeSettings

    return RecipeSettings(
        poll_interval_sec=0.01,
        wait_timeout_sec=0.2,
        details_retries=1,
        details_retry_delay_sec=0.0,
    )


# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------


@pytest.fixture()
def sql_binding_store(tmp_path: Path):
    """Create a disposable ``SqlBindingStore`` backed by a temporary SQLite DB."""
    from sitewright.store.binding_store import SqlBindingStore

    return SqlBindingStore(db_path=tmp_path / "test_bindings.db")


# ---------------------------------------------------------------------------
# Mock LLM
# ---------------------------------------------------------------------------


@pytest.fixture()
def mock_llm_provider():
    """Return a ``MagicMock`` conforming to the ``LLMProvider`` interface.

    Default behaviour: returns an empty text answer with no tool calls,
    which every structured caller treats as a failed invocation.
    """
    from sitewright.llm.base import LLMProvider, LLMResult

    mock = MagicMock(spec=LLMProvider)
    mock.check_connectivity.return_value = True
    mock.chat.return_value = LLMResult(content="", input_tokens=100, output_tokens=50, model="mock")
    mock.close.return_value = None
    return mock


# ---------------------------------------------------------------------------
# Pages
# ---------------------------------------------------------------------------


@pytest.fixture()
def listing_driver() -> FakePageDriver:
    """A driver showing five linked listing items in ``.list``."""
    return FakePageDriver(listing_page(5))


# ---------------------------------------------------------------------------
# Pytest markers
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: marks tests that require external services or real I/O")
    config.addinivalue_line("markers", "slow: marks tests that take more than a few seconds")


# ---------------------------------------------------------------------------
# Async backend
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def anyio_backend():
    """Run ``@pytest.mark.anyio`` tests on asyncio, the loop the code targets."""
    return "asyncio"
