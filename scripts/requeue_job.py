#!/usr/bin/env python3
"""
Put a dead-lettered scan job back in the queue.

Usage:
    python scripts/requeue_job.py JOB_ID [--reset-attempts]
    python scripts/requeue_job.py --stale        # run the liveness sweep once
"""
import argparse
import sys

from app.features.scan.services.queue.work_queue import WorkQueue
from app.platform.exceptions import AuditEngineError


def requeue(job_id: str, reset_attempts: bool) -> None:
    scan_id = WorkQueue().requeue(job_id, reset_attempts=reset_attempts)
    print(f"✅ Job {job_id} requeued (scan {scan_id})")


def main() -> int:
    parser = argparse.ArgumentParser(description="Requeue failed or stale scan jobs")
    parser.add_argument("job_id", nargs="?", help="Failed job to requeue")
    parser.add_argument("--reset-attempts", action="store_true", help="Start the attempt counter over")
    parser.add_argument("--stale", action="store_true", help="Recover jobs held by unresponsive workers")
    args = parser.parse_args()

    try:
        if args.stale:
            recovered = WorkQueue().requeue_stale()
            print(f"✅ Recovered {recovered} stale jobs")
        elif args.job_id:
            requeue(args.job_id, args.reset_attempts)
        else:
            parser.error("give a JOB_ID or --stale")
    except AuditEngineError as e:
        print(f"❌ {e.message}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
