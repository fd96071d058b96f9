"""
Release held commissions whose hold period has elapsed.
Meant to be run from cron; exits non-zero when the store is unavailable.
"""
import sys
import os

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import logger, COMMISSION_RELEASE_BATCH_SIZE
from core.database import SessionLocal
from core.errors import DataStoreUnavailable
from utils.commission import missing_commissions, process_releases


def release(batch_size: int, drain: bool = False) -> int:
    db = SessionLocal()
    try:
        total = 0
        while True:
            result = process_releases(db, batch_size=batch_size)
            total += result["released_count"]
            if not drain or result["released_count"] == 0 or result["remaining"] == 0:
                break
        logger.info(f"Released {total} commissions, remaining={result['remaining']}")
        missing = len(missing_commissions(db))
        if missing:
            logger.error(f"{missing} converted appointments have no commission recorded")
        return 0
    except DataStoreUnavailable as ex:
        logger.error(f"Release failed: {ex}")
        return 2
    finally:
        db.close()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description='Release held affiliate commissions')
    parser.add_argument('--batch-size', type=int, default=COMMISSION_RELEASE_BATCH_SIZE,
                        help=f'Rows per batch (default: {COMMISSION_RELEASE_BATCH_SIZE})')
    parser.add_argument('--drain', action='store_true', help='Keep running batches until nothing is eligible')

    args = parser.parse_args()
    sys.exit(release(args.batch_size, drain=args.drain))
