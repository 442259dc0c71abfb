"""
Pytest configuration and shared fixtures for PodGuard tests.

Fixtures wrap the in-memory fakes from fakes.py for the enforcement
engine seams and the Kubernetes pod source.
"""

import os
import sys
from unittest.mock import MagicMock

import pytest

# Add the parent directory to the path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from podguard.config import PodGuardConfig
from podguard.identity import IdentityTable
from podguard.kube import PodSourceError

from fakes import MemoryFlagTable, QueueEventReader, ScriptedPodSource, running_pod


# ===========================================================================
# Fixtures
# ===========================================================================

@pytest.fixture
def flag_table() -> MemoryFlagTable:
    return MemoryFlagTable()


@pytest.fixture
def identity_table() -> IdentityTable:
    return IdentityTable()


@pytest.fixture
def event_reader() -> QueueEventReader:
    return QueueEventReader()


@pytest.fixture
def pod_source() -> ScriptedPodSource:
    return ScriptedPodSource([
        running_pod("web-1", "10.0.0.5"),
        running_pod("web-2", "10.0.0.6"),
    ])


@pytest.fixture
def config() -> PodGuardConfig:
    return PodGuardConfig(
        pod_selector={"monitor": "external"},
        block_external=False,
        node_name="node-1",
        sync_interval=10.0,
    )


@pytest.fixture
def fake_engine(flag_table, event_reader) -> MagicMock:
    """Enforcement engine double that hands out the in-memory fakes."""
    engine = MagicMock()
    engine.classifier = MagicMock(fd=42)
    engine.classifier.name = "monitor_egress"
    engine.flag_table.return_value = flag_table
    engine.open_event_reader.return_value = event_reader
    return engine


@pytest.fixture
def pod_source_error() -> PodSourceError:
    return PodSourceError("listing pods failed: 503 Service Unavailable")
