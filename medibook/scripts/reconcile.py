import argparse
import logging
from datetime import timedelta

from sqlmodel import Session

from medibook.core.config import get_settings
from medibook.core.logging_config import setup_logging
from medibook.database import engine
from medibook.services.gateway import get_gateway
from medibook.services.reconciliation import Reconciler

logger = logging.getLogger(__name__)


def main(argv=None):
    settings = get_settings()

    parser = argparse.ArgumentParser(description="Resume payments stuck mid-settlement.")
    parser.add_argument(
        "--older-than",
        type=int,
        default=settings.RECONCILE_AFTER_MINUTES,
        help="only touch payments idle for at least this many minutes",
    )
    args = parser.parse_args(argv)

    setup_logging(settings.LOG_LEVEL)

    with Session(engine) as session:
        summary = Reconciler(session, get_gateway()).sweep(timedelta(minutes=args.older_than))

    logger.info(f"Reconciliation finished: {summary}")
    return summary


if __name__ == "__main__":
    main()
