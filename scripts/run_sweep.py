import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import argparse

import structlog

from booking_engine.db.engine import engine
from booking_engine.logging_config import setup_logging
from booking_engine.services.factory import build_sweeper

setup_logging()
logger = structlog.get_logger(__name__)


def main() -> None:
    """
    Run one sweeper pass and exit (cron-friendly).

    Examples:
        python scripts/run_sweep.py              # processing reclaim + orphaned holds
        python scripts/run_sweep.py --approvals  # also expire overdue pending bookings
        python scripts/run_sweep.py --completions  # also complete finished stays
    """
    parser = argparse.ArgumentParser(description="Run a single expiry sweep")
    parser.add_argument(
        "--approvals", action="store_true", help="Also expire pending bookings past the approval SLA"
    )
    parser.add_argument(
        "--completions", action="store_true", help="Also complete confirmed bookings whose stay has ended"
    )
    args = parser.parse_args()

    sweeper = build_sweeper(engine)
    try:
        result = sweeper.sweep_once()
        if args.approvals:
            result["expired"] = sweeper.expire_pending_once()
        if args.completions:
            result["completed"] = sweeper.complete_finished_once()
        logger.info("manual_sweep_completed", **result)
    except Exception:
        logger.exception("manual_sweep_failed")
        raise
    finally:
        sweeper.service.close()
        sweeper.service.dispatcher.shutdown()


if __name__ == "__main__":
    main()
