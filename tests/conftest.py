"""Shared fixtures: import paths, the in-memory provider and a recording sleep."""

import sys
from pathlib import Path

import pytest

# src for vmseries_topology, tests for cloud_mock
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from cloud_mock import FakeSleep, MockProvider  # noqa: E402


@pytest.fixture(autouse=True)
def _no_env_kill_switch(monkeypatch: pytest.MonkeyPatch) -> None:
    """A KILL_SWITCH exported in the shell must not leak into passes under test."""
    monkeypatch.delenv("KILL_SWITCH", raising=False)


@pytest.fixture
def provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def sleep() -> FakeSleep:
    return FakeSleep()
