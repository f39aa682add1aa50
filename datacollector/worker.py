"""Standalone job processor process."""

import logging
import signal
import threading

from datacollector.config import Settings
from datacollector.database import create_db_engine, create_session_factory, run_migrations
from datacollector.orchestrator import build_orchestrator

logger = logging.getLogger(__name__)


def run(settings: Settings, stop_event: threading.Event) -> None:
    """Run the processor until ``stop_event`` is set.

    Args:
        settings: Application settings
        stop_event: Signals the worker to stop
    """
    engine = create_db_engine(settings.DATABASE_URL)
    run_migrations(engine, settings.DATABASE_URL)

    orchestrator = build_orchestrator(settings, session_factory=create_session_factory(engine))
    orchestrator.start()
    logger.info("Worker started - processing jobs")

    try:
        while not stop_event.wait(60):
            for stats in orchestrator.stats():
                logger.info(
                    f"{stats.name.value}-queue: waiting={stats.waiting} active={stats.active} "
                    f"delayed={stats.delayed} completed={stats.completed} failed={stats.failed}"
                )
    finally:
        orchestrator.shutdown()
        logger.info("Worker stopped")


def main():
    """Entry point for standalone worker."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    settings = Settings()
    logging.getLogger().setLevel(settings.LOG_LEVEL.upper())

    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    run(settings, stop_event)


if __name__ == "__main__":
    main()
