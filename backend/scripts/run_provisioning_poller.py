"""
Lightweight poller for provisioning_jobs: runs PENDING jobs, due retries, and
jobs whose executor lease expired (crash recovery).

Webhook only persists state and returns 200; this script is the reliable dispatch.
Run via cron when the API's in-process scheduler is disabled.

Usage (from backend/):
  python -m scripts.run_provisioning_poller
  python -m scripts.run_provisioning_poller --max-jobs 5

Production (cron example):
  */2 * * * * cd /app/backend && python -m scripts.run_provisioning_poller --max-jobs 10
"""
import asyncio
import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from config import get_settings
from database import database
from services.container import build_services
from services.provisioning_poller import poll_once


async def run(max_jobs: int = 20) -> int:
    services = build_services(database.get_db(), get_settings())
    return await poll_once(services.engine, max_jobs=max_jobs)


def main():
    parser = argparse.ArgumentParser(description="Run provisioning job poller (due jobs)")
    parser.add_argument("--max-jobs", type=int, default=20, help="Max jobs per run (default 20)")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    async def _():
        await database.connect()
        try:
            n = await run(max_jobs=args.max_jobs)
            print(f"Processed {n} job(s)")
            return 0
        finally:
            await database.close()

    return asyncio.run(_())


if __name__ == "__main__":
    sys.exit(main())
