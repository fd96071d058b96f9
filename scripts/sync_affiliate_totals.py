"""
Recompute affiliate counters (clicks, leads, bookings, sales, commission)
from raw events and report drift. Dry run unless --apply is given.
"""
import sys
import os

# Add parent directory to path to import backend modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import logger
from core.database import SessionLocal
from models.affiliates import Affiliate
from utils.reconcile import recount_affiliate, recount_all


def sync_totals(apply: bool = False, referral_code: str = None) -> int:
    db = SessionLocal()
    try:
        if referral_code:
            affiliate = db.query(Affiliate).filter(Affiliate.referral_code == referral_code).first()
            if not affiliate:
                logger.error(f"Affiliate not found: {referral_code}")
                return 1
            results = [recount_affiliate(db, affiliate, apply=apply)]
        else:
            results = recount_all(db, apply=apply)

        for r in results:
            if not r["hasDrift"]:
                continue
            logger.info(f"{r['referralCode']}:")
            for field in r["drifted"]:
                logger.info(f"  {field}: stored={r['stored'][field]} calculated={r['calculated'][field]}")

        drifted = sum(1 for r in results if r["hasDrift"])
        logger.info(f"Checked {len(results)} affiliates, {drifted} with drift")
        if not apply and drifted:
            logger.info("This was a DRY RUN. No changes were made.")
            logger.info("Run with --apply to overwrite the stored counters.")
        return 0
    except Exception as ex:
        logger.error(f"Sync failed: {ex}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description='Recompute affiliate counters from raw events')
    parser.add_argument('--apply', action='store_true', help='Overwrite stored counters (default is dry run)')
    parser.add_argument('--code', type=str, help='Only this referral code')

    args = parser.parse_args()
    sys.exit(sync_totals(apply=args.apply, referral_code=args.code))
