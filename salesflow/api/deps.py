"""
Process-wide service container.

Routers call get_services() instead of building engines themselves, so tests
(and the scheduler CLI) can swap in isolated stores with configure().
"""

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from salesflow.agents.action_dispatcher import ActionDispatcher, build_dispatcher
from salesflow.agents.call_actions import CallActions
from salesflow.agents.call_scorer import CallScorer
from salesflow.agents.feedback_tracker import FeedbackTracker
from salesflow.agents.sequence_engine import SequenceEngine
from salesflow.agents.sequence_templates import TemplateRegistry
from salesflow.agents.throughput_governor import ThroughputGovernor
from salesflow.config import DB_PATH, SEQUENCE_SENDING_ENABLED
from salesflow.db.entities import utcnow
from salesflow.db.models import SqliteRepository, SqliteWeightStore
from salesflow.db.repository import (
    InMemoryRepository, InMemoryWeightStore, Repository, WeightStore,
)


@dataclass
class Services:
    store: Repository
    weights: WeightStore
    registry: TemplateRegistry
    governor: ThroughputGovernor
    dispatcher: ActionDispatcher
    engine: SequenceEngine
    scorer: CallScorer
    tracker: FeedbackTracker
    actions: CallActions


def build_services(db_path: str = None, in_memory: bool = False,
                   sending_enabled: bool = SEQUENCE_SENDING_ENABLED,
                   dispatcher: ActionDispatcher = None,
                   governor: ThroughputGovernor = None,
                   clock: Callable[[], datetime] = utcnow) -> Services:
    """Wire every engine to one store.

    Args:
        db_path: SQLite file (default: DB_PATH). Ignored when in_memory.
        in_memory: Use the in-memory stores (tests, demos).
        sending_enabled: Global switch for send mode.
        dispatcher: Override the configured dispatcher.
        governor: Override the throughput governor.
        clock: Shared clock for every engine.
    """
    if in_memory:
        store = InMemoryRepository()
        weights = InMemoryWeightStore()
    else:
        path = db_path or DB_PATH
        store = SqliteRepository(path)
        weights = SqliteWeightStore(path)

    registry = TemplateRegistry()
    governor = governor or ThroughputGovernor(clock=clock)
    dispatcher = dispatcher or build_dispatcher(registry=registry)
    engine = SequenceEngine(store, registry, dispatcher, governor=governor,
                            sending_enabled=sending_enabled, clock=clock)
    scorer = CallScorer(store, weights, clock=clock)
    tracker = FeedbackTracker(store, weights, clock=clock)
    actions = CallActions(store, scorer, tracker, dispatcher,
                          sequence_engine=engine, clock=clock)
    return Services(store=store, weights=weights, registry=registry, governor=governor,
                    dispatcher=dispatcher, engine=engine, scorer=scorer,
                    tracker=tracker, actions=actions)


_lock = threading.Lock()
_services: Optional[Services] = None


def configure(services: Services) -> Services:
    global _services
    with _lock:
        _services = services
    return services


def get_services() -> Services:
    global _services
    with _lock:
        if _services is None:
            _services = build_services()
        return _services


def reset():
    global _services
    with _lock:
        _services = None
