"""
Provisioning Audit Log.

Append-only record of every job state transition and adapter outcome. The
engine only writes here; the admin API reads. Entries are ordered per job by
seq, which the job store allocates atomically with each transition.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from pymongo.errors import DuplicateKeyError

from models import AuditEntry, JobState
from utils.documents import from_doc, to_doc

logger = logging.getLogger(__name__)


def transition_label(from_state: JobState, to_state: JobState) -> str:
    return f"{from_state.value}->{to_state.value}"


def _jsonable(detail: Dict[str, Any]) -> Dict[str, Any]:
    out = {}
    for k, v in detail.items():
        if isinstance(v, datetime):
            v = v.isoformat()
        elif isinstance(v, JobState):
            v = v.value
        out[k] = v
    return out


class AuditLog:
    def __init__(self, db):
        self._db = db

    async def record(
        self,
        job_id: str,
        seq: int,
        from_state: JobState,
        to_state: JobState,
        detail: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            job_id=job_id,
            seq=seq,
            from_state=from_state,
            to_state=to_state,
            transition=transition_label(from_state, to_state),
            detail=_jsonable(detail or {}),
        )
        try:
            await self._db.provisioning_audit.insert_one(to_doc(entry))
        except DuplicateKeyError:
            # (job_id, seq) already written; entries are never rewritten
            logger.warning("Audit entry job_id=%s seq=%s already exists", job_id, seq)
            return entry
        logger.info(
            "JOB_TRANSITION job_id=%s seq=%s from=%s to=%s",
            job_id, seq, from_state.value, to_state.value,
        )
        return entry

    async def list_for_job(self, job_id: str, limit: int = 500) -> List[AuditEntry]:
        cursor = self._db.provisioning_audit.find({"job_id": job_id}, {"_id": 0}).sort("seq", 1).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [from_doc(AuditEntry, d) for d in docs]


def replay_audit(entries: Iterable[AuditEntry]) -> Dict[str, Any]:
    """Rebuild a job's observable state from its audit entries.

    A fresh job is PENDING. Claims (PENDING -> PROVISIONING, RETRY_SCHEDULED ->
    resume state) are lease acquisitions and show up only as the next entry's
    from_state, so each entry is applied by its to_state.
    """
    state: Dict[str, Any] = {
        "state": JobState.PENDING,
        "attempt_count": 0,
        "sub_account_id": None,
        "applied_template_ids": [],
        "last_error": None,
        "entries": 0,
    }
    last_seq = 0
    for entry in sorted(entries, key=lambda e: e.seq):
        if entry.seq <= last_seq:
            raise ValueError(f"Audit entries out of order for job {entry.job_id}: seq {entry.seq}")
        last_seq = entry.seq
        detail = entry.detail or {}
        state["state"] = entry.to_state
        state["entries"] += 1
        if detail.get("sub_account_id"):
            state["sub_account_id"] = detail["sub_account_id"]
        template_id = detail.get("template_id")
        if template_id and template_id not in state["applied_template_ids"]:
            state["applied_template_ids"].append(template_id)
        if "attempt_count" in detail:
            state["attempt_count"] = detail["attempt_count"]
        if entry.to_state in (JobState.RETRY_SCHEDULED, JobState.DEAD):
            state["last_error"] = detail.get("error")
        elif entry.to_state == JobState.PENDING:
            state["last_error"] = None
    return state
