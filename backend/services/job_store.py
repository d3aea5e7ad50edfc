"""
Provisioning job persistence and per-job execution leases.

One job per checkout event: job_id is derived deterministically from the
event id and both are uniquely indexed, so redelivered webhooks collapse onto
the same record.

Lease: locked_until + lock_owner. Acquisition is atomic (find_one_and_update
on a free or expired lock); every state write made by an executor is
conditional on its lease token, so an executor whose lease was taken over
cannot write stale state.
"""
import logging
import os
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from errors import LeaseConflict
from models import EXECUTING_STATES, JobState, ProvisioningJob, utc_now
from utils.documents import from_doc, to_doc

logger = logging.getLogger(__name__)

LOCK_DURATION_SECONDS = 300  # 5 minutes; expired lock is considered free
JOB_ID_NAMESPACE = uuid.UUID("6f1c1f5e-3c1a-4b8e-9d7e-5a2f0c4b8e11")


def job_id_for_event(event_id: str) -> str:
    """Idempotency key: the same checkout event always maps to the same job id."""
    return str(uuid.uuid5(JOB_ID_NAMESPACE, event_id))


def default_worker_id() -> str:
    return os.environ.get("PROVISIONING_WORKER_ID") or f"{os.getpid()}-{uuid.uuid4().hex[:8]}"


def _lock_free(now: datetime) -> Dict[str, Any]:
    return {
        "$or": [
            {"locked_until": None},
            {"locked_until": {"$exists": False}},
            {"locked_until": {"$lt": now}},
        ]
    }


class JobStore:
    def __init__(self, db, lease_seconds: int = LOCK_DURATION_SECONDS, worker_id: Optional[str] = None):
        self._db = db
        self.lease_seconds = lease_seconds
        self.worker_id = worker_id or default_worker_id()

    @property
    def _jobs(self):
        return self._db.provisioning_jobs

    async def get(self, job_id: str) -> Optional[ProvisioningJob]:
        doc = await self._jobs.find_one({"job_id": job_id}, {"_id": 0})
        return from_doc(ProvisioningJob, doc)

    async def get_by_event(self, event_id: str) -> Optional[ProvisioningJob]:
        doc = await self._jobs.find_one({"event_id": event_id}, {"_id": 0})
        return from_doc(ProvisioningJob, doc)

    async def insert(self, job: ProvisioningJob) -> bool:
        """Insert a new job. Returns False if a job for the same event already exists."""
        try:
            await self._jobs.insert_one(to_doc(job))
            return True
        except DuplicateKeyError:
            logger.info("Job %s duplicate insert (race) - existing job kept", job.job_id)
            return False

    async def list_jobs(self, state: Optional[JobState] = None, limit: int = 100) -> List[ProvisioningJob]:
        query = {"state": state.value} if state else {}
        cursor = self._jobs.find(query, {"_id": 0}).sort("created_at", -1).limit(limit)
        return [from_doc(ProvisioningJob, d) for d in await cursor.to_list(length=limit)]

    async def list_due(self, now: Optional[datetime] = None, limit: int = 20) -> List[str]:
        """Job ids an executor should pick up now.

        - PENDING jobs
        - RETRY_SCHEDULED jobs whose backoff elapsed
        - PROVISIONING / TEMPLATE_APPLYING jobs whose lease expired (executor crashed)
        """
        now = now or utc_now()
        cursor = self._jobs.find(
            {
                "$and": [
                    {
                        "$or": [
                            {"state": JobState.PENDING.value},
                            {"state": JobState.RETRY_SCHEDULED.value, "next_attempt_at": {"$lte": now}},
                            {"state": {"$in": [s.value for s in EXECUTING_STATES]}},
                        ]
                    },
                    _lock_free(now),
                ]
            },
            {"_id": 0, "job_id": 1},
        ).sort("updated_at", 1).limit(limit)
        rows = await cursor.to_list(length=limit)
        return [r["job_id"] for r in rows]

    # ------------------------------------------------------------------
    # Lease
    # ------------------------------------------------------------------

    async def acquire_lease(self, job_id: str, now: Optional[datetime] = None) -> ProvisioningJob:
        """Atomically claim the job. Raises LeaseConflict if another executor holds it."""
        now = now or utc_now()
        token = f"{self.worker_id}:{uuid.uuid4().hex[:12]}"
        doc = await self._jobs.find_one_and_update(
            {"job_id": job_id, **_lock_free(now)},
            {"$set": {"locked_until": now + timedelta(seconds=self.lease_seconds), "lock_owner": token}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            current = await self._jobs.find_one({"job_id": job_id}, {"_id": 0, "lock_owner": 1})
            raise LeaseConflict(job_id, (current or {}).get("lock_owner"))
        return from_doc(ProvisioningJob, doc)

    async def renew_lease(self, job_id: str, lease: str, now: Optional[datetime] = None) -> None:
        now = now or utc_now()
        result = await self._jobs.update_one(
            {"job_id": job_id, "lock_owner": lease},
            {"$set": {"locked_until": now + timedelta(seconds=self.lease_seconds)}},
        )
        if result.matched_count == 0:
            raise LeaseConflict(job_id)

    async def release_lease(self, job_id: str, lease: str) -> None:
        """Clear lock so another runner can pick up the job if needed."""
        await self._jobs.update_one(
            {"job_id": job_id, "lock_owner": lease},
            {"$set": {"locked_until": None, "lock_owner": None, "updated_at": utc_now()}},
        )

    # ------------------------------------------------------------------
    # State writes
    # ------------------------------------------------------------------

    async def transition(
        self,
        job_id: str,
        from_state: JobState,
        to_state: JobState,
        fields: Optional[Dict[str, Any]] = None,
        lease: Optional[str] = None,
        applied_template_id: Optional[str] = None,
        audited: bool = True,
    ) -> ProvisioningJob:
        """Compare-and-set the job state.

        The write only lands if the job is still in from_state and, when a
        lease token is given, still held under that token. Audited writes bump
        audit_seq in the same update so the audit entry's sequence number is
        allocated atomically with the transition.
        """
        query: Dict[str, Any] = {"job_id": job_id, "state": from_state.value}
        if lease is not None:
            query["lock_owner"] = lease

        updates = {"state": to_state.value, "updated_at": utc_now()}
        for k, v in (fields or {}).items():
            updates[k] = v.value if isinstance(v, JobState) else v
        update: Dict[str, Any] = {"$set": updates}
        if audited:
            update["$inc"] = {"audit_seq": 1}
        if applied_template_id:
            update["$addToSet"] = {"applied_template_ids": applied_template_id}

        doc = await self._jobs.find_one_and_update(
            query,
            update,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            logger.warning(
                "Job %s transition %s->%s rejected (state changed or lease lost)",
                job_id, from_state.value, to_state.value,
            )
            raise LeaseConflict(job_id)
        return from_doc(ProvisioningJob, doc)
