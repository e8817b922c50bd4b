"""Standalone sweeper process: ``python -m booking_engine.worker``."""

import signal
import threading
from typing import Any

import structlog

from booking_engine.db.engine import engine
from booking_engine.logging_config import setup_logging
from booking_engine.services.factory import build_sweeper

setup_logging()
logger = structlog.get_logger(__name__)


def main() -> None:
    sweeper = build_sweeper(engine)
    stopped = threading.Event()

    def _handle_signal(signum: int, _frame: Any) -> None:
        logger.info("worker_signal_received", signal=signum)
        stopped.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    sweeper.start()
    stopped.wait()
    sweeper.stop()
    sweeper.service.close()
    sweeper.service.dispatcher.shutdown()


if __name__ == "__main__":
    main()
