"""
Operator retry of a DEAD provisioning job.

Usage (from backend/):
  python -m scripts.retry_provisioning_job --job-id <job_id>
  python -m scripts.retry_provisioning_job --event-id <checkout_session_id>
  python -m scripts.retry_provisioning_job --job-id <job_id> --run-now   # retry and execute inline
"""
import asyncio
import argparse
import getpass
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from config import get_settings
from database import database
from errors import InvalidJobState, JobNotFound, LeaseConflict
from services.container import build_services


async def run(job_id: str = None, event_id: str = None, run_now: bool = False, operator: str = None) -> bool:
    services = build_services(database.get_db(), get_settings())

    if not job_id and event_id:
        job = await services.jobs.get_by_event(event_id)
        if not job:
            print(f"No provisioning job found for event_id={event_id}")
            return False
        job_id = job.job_id
        print(f"Using job_id={job_id} (state={job.state.value})")
    if not job_id:
        print("Provide --job-id or --event-id")
        return False

    try:
        handle = await services.engine.retry_job(job_id, operator=operator or f"cli:{getpass.getuser()}")
    except (JobNotFound, InvalidJobState) as e:
        print(str(e))
        return False
    print(f"Job {job_id} reset to {handle.state.value}")

    if run_now:
        try:
            outcome = await services.engine.run_job(job_id)
        except LeaseConflict as e:
            print(f"{e}; the poller will pick it up")
            return True
        print(f"Job {job_id} state after run: {outcome.state.value}")
        if outcome.last_error:
            print(f"Last error: {outcome.last_error}")
    return True


def main():
    parser = argparse.ArgumentParser(description="Retry a DEAD provisioning job")
    parser.add_argument("--job-id", help="Provisioning job ID")
    parser.add_argument("--event-id", help="Checkout event (session) ID")
    parser.add_argument("--run-now", action="store_true", help="Execute the job immediately after the reset")
    parser.add_argument("--operator", help="Name recorded in the audit entry (default cli:<user>)")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    async def _():
        await database.connect()
        try:
            return await run(
                job_id=args.job_id,
                event_id=args.event_id,
                run_now=args.run_now,
                operator=args.operator,
            )
        finally:
            await database.close()

    ok = asyncio.run(_())
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
