"""
Shared test configuration for PaceCore.

Provides pytest markers, task cleanup, a virtual clock for the pacing
components and a scriptable fetch primitive.
"""

# Standard library imports
import asyncio
from typing import AsyncGenerator

# Third-party imports
import pytest
import pytest_asyncio

# Local imports
from tests.helpers import FakeClock, FakeFetch

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")
    config.addinivalue_line("markers", "slow: Tests that take >10 seconds")


# ============================================================================
# Core Test Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def cleanup_tasks() -> AsyncGenerator[None, None]:
    """
    Cancel every asyncio task a test leaves behind so drain loops and
    workers never leak into the next test.
    """
    tasks_before = asyncio.all_tasks()
    yield
    new_tasks = asyncio.all_tasks() - tasks_before

    for task in new_tasks:
        if not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                print(f"Unexpected error during task cleanup: {e}")


@pytest.fixture
def fake_clock() -> FakeClock:
    """Virtual clock starting at t=1000s."""
    return FakeClock()


@pytest.fixture
def fake_fetch() -> FakeFetch:
    """Fetch primitive that answers 404 until routes are added."""
    return FakeFetch()
