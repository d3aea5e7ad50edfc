"""
Dispatch of provisioning jobs.

Webhook only persists state and returns 200; two paths then run the job:
- BackgroundDispatcher: in-process task right after submission (fast path)
- poll_once: scheduler/cron sweep over due jobs (PENDING, due retries, and
  in-flight jobs whose lease expired after a crash) - the reliable path
"""
import asyncio
import logging
from typing import Optional, Set

from errors import JobNotFound, LeaseConflict
from models import utc_now

logger = logging.getLogger(__name__)


async def poll_once(engine, max_jobs: int = 20) -> int:
    """
    Run every due job once (runner acquires lock atomically).
    Returns number of jobs processed.
    """
    job_ids = await engine.jobs.list_due(now=utc_now(), limit=max_jobs)
    if not job_ids:
        return 0
    processed = 0
    for job_id in job_ids:
        try:
            outcome = await engine.run_job(job_id)
            processed += 1
            logger.info("Poller job %s -> %s", job_id, outcome.state.value)
        except LeaseConflict:
            logger.info("Job %s locked by another runner, skipping", job_id)
        except Exception as e:
            logger.exception("Poller run_job %s: %s", job_id, e)
    return processed


class BackgroundDispatcher:
    """Runs a job in the background right after it is enqueued.

    No timeout is applied around run_job: an in-flight CRM call is never
    cancelled (its side effect cannot be undone); the HTTP client timeout
    bounds it instead.
    """

    def __init__(self, engine=None):
        self._engine = engine
        self._tasks: Set[asyncio.Task] = set()

    def bind(self, engine) -> None:
        self._engine = engine

    def __call__(self, job_id: str) -> None:
        if self._engine is None:
            raise RuntimeError("BackgroundDispatcher is not bound to an engine")
        task = asyncio.get_running_loop().create_task(self._run(job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job_id: str) -> None:
        try:
            outcome = await self._engine.run_job(job_id)
            logger.info("Background provisioning job %s finished: %s", job_id, outcome.state.value)
        except LeaseConflict:
            logger.info("Background provisioning job %s already running elsewhere", job_id)
        except JobNotFound:
            logger.error("Background provisioning job %s not found", job_id)
        except Exception as e:
            logger.warning(
                "Background provisioning job %s failed: %s (poller can retry)", job_id, e, exc_info=True,
            )

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight tasks (used on shutdown and in tests)."""
        if self._tasks:
            await asyncio.wait(set(self._tasks), timeout=timeout)
