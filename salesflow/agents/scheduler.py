"""
Sequence Scheduler - Runs process_due_steps on a fixed interval.

Runs as a background thread (started with the API) or as a standalone process.
Overlapping runs cannot happen: the engine's run lock serializes every call,
whether it comes from this loop or from a manual API trigger.

Usage:
    # As standalone process
    python -m salesflow.agents.scheduler --once --dry-run

    # As background thread
    from salesflow.agents.scheduler import SequenceScheduler
    scheduler = SequenceScheduler(engine)
    scheduler.start()
    # ... later ...
    scheduler.stop()
"""

import logging
import threading
from typing import Optional

from salesflow.agents.error_handler import log_pipeline_error
from salesflow.config import SEQUENCE_PROCESS_LIMIT, SEQUENCE_TICK_SECONDS
from salesflow.errors import ConfigurationError

logger = logging.getLogger("salesflow.agents.scheduler")


class SequenceScheduler:

    def __init__(self, engine, interval: float = SEQUENCE_TICK_SECONDS,
                 limit: int = SEQUENCE_PROCESS_LIMIT, mode: str = None):
        self.engine = engine
        self.interval = interval
        self.limit = limit
        self.mode = mode
        self.stop_event = threading.Event()
        self.thread: Optional[threading.Thread] = None
        self.last_result = None
        self.ticks = 0

    def tick(self):
        """One scan. Misconfiguration is logged and the loop keeps going."""
        self.ticks += 1
        try:
            self.last_result = self.engine.process_due_steps(limit=self.limit, mode=self.mode)
        except ConfigurationError as e:
            logger.error("Sequence tick skipped: %s", e)
            return None
        except Exception as e:
            log_pipeline_error(phase="scheduler", error=e, severity="critical",
                               store=self.engine.store)
            return None
        return self.last_result

    def run(self):
        logger.info("Sequence scheduler running (every %ss, limit %d)", self.interval, self.limit)
        while not self.stop_event.is_set():
            self.tick()
            self.stop_event.wait(self.interval)
        logger.info("Sequence scheduler stopped")

    def start(self) -> threading.Event:
        """Start the loop on a daemon thread. Returns the stop event."""
        if self.thread is not None and self.thread.is_alive():
            return self.stop_event
        self.stop_event.clear()
        self.thread = threading.Thread(target=self.run, daemon=True, name="sequence-scheduler")
        self.thread.start()
        return self.stop_event

    def stop(self, timeout: float = 5.0):
        self.stop_event.set()
        if self.thread is not None:
            self.thread.join(timeout)
            self.thread = None

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()


# ─── CLI ─────────────────────────────────────────────────────

def main(argv=None):
    import argparse
    from salesflow.api.deps import build_services
    from salesflow.logging_config import setup_logging

    parser = argparse.ArgumentParser(description="Process due sequence steps on a timer.")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--dry-run", action="store_true", help="Simulate email sends")
    parser.add_argument("--hold", action="store_true", help="Hold email steps, run tasks only")
    parser.add_argument("--limit", type=int, default=SEQUENCE_PROCESS_LIMIT,
                        help=f"Max steps per tick (default: {SEQUENCE_PROCESS_LIMIT})")
    parser.add_argument("--interval", type=float, default=SEQUENCE_TICK_SECONDS,
                        help=f"Seconds between ticks (default: {SEQUENCE_TICK_SECONDS})")
    args = parser.parse_args(argv)

    setup_logging()
    mode = "dry_run" if args.dry_run else ("hold" if args.hold else None)
    services = build_services()
    scheduler = SequenceScheduler(services.engine, interval=args.interval,
                                  limit=args.limit, mode=mode)

    if args.once:
        result = scheduler.tick()
        if result is None:
            return 1
        print(result.to_dict())
        return 0

    print(f"Processing sequences every {args.interval}s (Ctrl+C to stop)")
    try:
        scheduler.run()
    except KeyboardInterrupt:
        print("\nStopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
