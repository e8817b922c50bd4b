import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import argparse
from decimal import Decimal, InvalidOperation

import structlog

from booking_engine.db.engine import engine
from booking_engine.logging_config import setup_logging
from booking_engine.services.pricing_config import get_pricing_history, update_platform_fee_rate

setup_logging()
logger = structlog.get_logger(__name__)


def parse_rate(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation as e:
        raise argparse.ArgumentTypeError(f"not a decimal rate: {value}") from e


def main() -> None:
    """
    Change the platform fee rate, or print the recent history.

    Examples:
        python scripts/set_platform_fee.py --rate 0.12 --admin ops-1 --reason "Q3 promo"
        python scripts/set_platform_fee.py --history
    """
    parser = argparse.ArgumentParser(description="Manage the platform fee rate")
    parser.add_argument("--rate", type=parse_rate, help="New rate, e.g. 0.15 for 15%%")
    parser.add_argument("--admin", default="cli", help="Admin id recorded on the change")
    parser.add_argument("--reason", default="", help="Reason kept in the history")
    parser.add_argument("--history", action="store_true", help="Print recent rate versions")
    args = parser.parse_args()

    if args.history:
        with engine.connect() as conn:
            for row in get_pricing_history(conn):
                print(
                    f"v{row['version']}  {row['platform_fee_rate']}  "
                    f"active={row['is_active']}  by={row['created_by']}  {row['change_reason'] or ''}"
                )
        return

    if args.rate is None:
        parser.error("--rate is required unless --history is given")

    row = update_platform_fee_rate(engine, args.rate, args.admin, args.reason)
    logger.info("platform_fee_rate_set", rate=str(row["platform_fee_rate"]), version=row["version"])


if __name__ == "__main__":
    main()
