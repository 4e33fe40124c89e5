"""
Shared pytest fixtures for the Salesflow test suite.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

os.environ.setdefault("SALESFLOW_JOURNAL_MODE", "DELETE")

from salesflow.agents.sequence_templates import TemplateRegistry
from salesflow.agents.throughput_governor import ThroughputGovernor
from salesflow.api.deps import build_services
from salesflow.db.models import SqliteRepository, SqliteWeightStore
from salesflow.db.repository import InMemoryRepository, InMemoryWeightStore
from tests.helpers import FakeClock, RecordingDispatcher, make_contact


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return TemplateRegistry()


@pytest.fixture
def store():
    return InMemoryRepository()


@pytest.fixture
def weights():
    return InMemoryWeightStore()


@pytest.fixture
def dispatcher(registry):
    return RecordingDispatcher(registry=registry)


@pytest.fixture
def governor(clock):
    return ThroughputGovernor(cap=5, window_seconds=3600, clock=clock)


@pytest.fixture
def test_db(tmp_path):
    """Path for a fresh SQLite database file."""
    return str(tmp_path / "test.db")


@pytest.fixture
def sqlite_store(test_db):
    return SqliteRepository(test_db)


@pytest.fixture
def sqlite_weights(test_db):
    return SqliteWeightStore(test_db)


@pytest.fixture
def services(clock):
    """In-memory service graph with sending enabled and a fake clock."""
    return build_services(in_memory=True, sending_enabled=True, clock=clock,
                          governor=ThroughputGovernor(cap=5, clock=clock))


@pytest.fixture
def new_contact():
    """Factory fixture: new_contact(store, **fields)."""
    return make_contact


@pytest.fixture
def sample_contact(store):
    return make_contact(store)
