"""Pytest fixtures for Optimist tests"""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from optimist.config import EngineConfig
from optimist.engine import Reconciler
from optimist.simulation import ScriptedExecutor


class FakeSleep:
    """Awaitable sleep that records requested delays instead of sleeping."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def scripted():
    """Executor answered by hand via respond()/fail()."""
    return ScriptedExecutor()


@pytest.fixture
def config():
    return EngineConfig(max_attempts=3, base_delay_ms=10, jitter=0.0)


@pytest.fixture
def engine(config, scripted, fake_sleep):
    """Reconciler wired to a scripted executor and a fake sleep.

    Construction does not need an event loop; submit() does.
    """
    return Reconciler(config, executor=scripted, sleep=fake_sleep)


@pytest.fixture
def scenario_path(tmp_path):
    """Write a scenario document and return its path."""
    def _write(content: str) -> Path:
        path = tmp_path / "scenario.yaml"
        path.write_text(content)
        return path
    return _write
