#!/usr/bin/env python3
"""Expire finished bookings, cancel non-compliant ones and escalate stale feedback; meant to run from cron."""
import argparse
import logging

from roombook.compliance import ComplianceSweeper
from roombook.config import get_settings
from roombook.database import SessionLocal
from roombook.feedback_triage import escalate_long_pending
from roombook.lifecycle import BookingManager


def run_maintenance(sweep: bool = True, escalate: bool = True) -> dict:
    db = SessionLocal()
    try:
        expired = BookingManager(db).expire_finished()
        result = {"expired": expired, "cancelled": 0, "failed": 0, "escalated": 0}
        if sweep:
            report = ComplianceSweeper(db).sweep_non_compliant()
            result.update(cancelled=report.cancelled, failed=report.failed)
        if escalate:
            result["escalated"] = len(escalate_long_pending(db, get_settings().feedback_escalation_hours))
        return result
    finally:
        db.close()


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--no-sweep", action="store_true", help="skip the compliance sweep")
    parser.add_argument("--no-escalate", action="store_true", help="leave pending feedback alone")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    result = run_maintenance(sweep=not args.no_sweep, escalate=not args.no_escalate)
    print(
        f"Expired: {result['expired']}, cancelled: {result['cancelled']}, "
        f"failed: {result['failed']}, escalated feedback: {result['escalated']}"
    )


if __name__ == "__main__":
    main()
