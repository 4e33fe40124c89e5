"""
Unit tests for the sequence scheduler loop and its CLI.
"""

import os
import sys
import time

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../.."))

from salesflow.agents import scheduler as scheduler_module
from salesflow.agents.scheduler import SequenceScheduler
from salesflow import logging_config
from salesflow.api import deps


class _ExplodingEngine:
    def __init__(self, store):
        self.store = store

    def process_due_steps(self, limit=None, mode=None):
        raise RuntimeError("database is locked")


class TestTick:

    def test_tick_runs_engine(self, services, new_contact):
        services.engine.enroll(new_contact(services.store).id, "cold_outreach")
        scheduler = SequenceScheduler(services.engine, interval=60, mode="dry_run")
        result = scheduler.tick()
        assert result.emails_dry_run == 1
        assert scheduler.ticks == 1
        assert scheduler.last_result is result

    def test_configuration_error_is_swallowed_per_tick(self, services):
        services.engine.sending_enabled = False
        scheduler = SequenceScheduler(services.engine, mode="send")
        assert scheduler.tick() is None
        assert scheduler.ticks == 1

    def test_unexpected_error_is_recorded(self, store):
        scheduler = SequenceScheduler(_ExplodingEngine(store))
        assert scheduler.tick() is None
        errors = store.list_errors(phase="scheduler")
        assert errors[0]["severity"] == "critical"
        assert errors[0]["error_type"] == "RuntimeError"


class TestLoop:

    def test_start_and_stop(self, services):
        scheduler = SequenceScheduler(services.engine, interval=0.01, mode="hold")
        scheduler.start()
        try:
            deadline = time.time() + 2
            while scheduler.ticks < 2 and time.time() < deadline:
                time.sleep(0.01)
            assert scheduler.running is True
            assert scheduler.ticks >= 2
        finally:
            scheduler.stop()
        assert scheduler.running is False

    def test_start_twice_keeps_one_thread(self, services):
        scheduler = SequenceScheduler(services.engine, interval=0.05, mode="hold")
        scheduler.start()
        try:
            thread = scheduler.thread
            scheduler.start()
            assert scheduler.thread is thread
        finally:
            scheduler.stop()


class TestCli:

    def test_once_dry_run(self, services, monkeypatch, capsys):
        monkeypatch.setattr(deps, "build_services", lambda **kwargs: services)
        monkeypatch.setattr(logging_config, "setup_logging", lambda *a, **k: None)
        assert scheduler_module.main(["--once", "--dry-run"]) == 0
        assert "dry_run" in capsys.readouterr().out

    def test_once_fails_on_unexpected_error(self, services, monkeypatch):
        services.engine = _ExplodingEngine(services.store)
        monkeypatch.setattr(deps, "build_services", lambda **kwargs: services)
        monkeypatch.setattr(logging_config, "setup_logging", lambda *a, **k: None)
        assert scheduler_module.main(["--once"]) == 1
