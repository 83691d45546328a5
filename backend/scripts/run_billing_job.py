"""
Run one scheduled billing job outside the API process.

Usage (from backend/):
  python -m scripts.run_billing_job renewal_reminders
  python -m scripts.run_billing_job renewal_reminders --days 3
  python -m scripts.run_billing_job pending_cancellation_sync

Production (cron example, when the in-process scheduler is disabled):
  */15 * * * * cd /app/backend && python -m scripts.run_billing_job pending_cancellation_sync
"""
import asyncio
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from database import database
from job_runner import JOB_RUNNERS, run_renewal_reminders


def main():
    parser = argparse.ArgumentParser(description="Run a billing job once")
    parser.add_argument("job", choices=sorted(JOB_RUNNERS), help="Job name")
    parser.add_argument("--days", type=int, default=None, help="Reminder window for renewal_reminders")
    args = parser.parse_args()

    async def _():
        await database.connect()
        try:
            if args.job == "renewal_reminders":
                result = await run_renewal_reminders(days=args.days)
            else:
                result = await JOB_RUNNERS[args.job]()
            print(result["message"])
            return 0
        finally:
            await database.close()

    return asyncio.run(_())


if __name__ == "__main__":
    sys.exit(main())
