"""
Provisioning Job Engine: single authoritative workflow from paid checkout to tenant.

State machine:
    PENDING -> PROVISIONING -> TEMPLATE_APPLYING -> SUCCEEDED
    failures -> RETRY_SCHEDULED (budget left) or DEAD (permanent / exhausted)

Idempotent:
- one job per checkout event (job_id derived from event id, unique indexes)
- every successful adapter call is recorded before the next one starts, so a
  resumed job never creates a second sub-account or re-applies a template
- per-job lease (see job_store) keeps two executors off the same job

Retries are persisted transitions (next_attempt_at); nothing here sleeps.
"""
import logging
from typing import Any, Callable, Dict, Optional

from errors import (
    AdapterError,
    AdapterPermanent,
    AdapterTransient,
    InvalidCheckoutEvent,
    InvalidJobState,
    JobNotFound,
    LeaseConflict,
    MaxAttemptsExceeded,
    PaymentNotCompleted,
)
from models import (
    EXECUTING_STATES,
    PAID_STATUSES,
    CheckoutEvent,
    JobHandle,
    JobOutcome,
    JobState,
    ProvisioningJob,
    Tenant,
    utc_now,
)
from services.audit_log import AuditLog
from services.crm_client import CRMProvisioningAdapter
from services.job_store import JobStore, job_id_for_event
from services.plan_catalog import PlanCatalog
from services.retry_policy import RetryPolicy
from services.template_registry import TemplateRegistry

logger = logging.getLogger(__name__)


class ProvisioningEngine:
    def __init__(
        self,
        catalog: PlanCatalog,
        templates: TemplateRegistry,
        jobs: JobStore,
        audit: AuditLog,
        crm: CRMProvisioningAdapter,
        policy: Optional[RetryPolicy] = None,
        dispatch: Optional[Callable[[str], None]] = None,
        clock: Callable = utc_now,
    ):
        self.catalog = catalog
        self.templates = templates
        self.jobs = jobs
        self.audit = audit
        self.crm = crm
        self.policy = policy or RetryPolicy()
        self._dispatch = dispatch
        self._clock = clock

    def set_dispatch(self, dispatch: Optional[Callable[[str], None]]) -> None:
        self._dispatch = dispatch

    # =========================================================================
    # Submission
    # =========================================================================

    async def submit_checkout_event(self, event: CheckoutEvent) -> JobHandle:
        """
        Persist a job for a paid checkout and schedule it. Never calls the CRM.

        Redelivery of the same event id returns the existing job's handle.
        Raises PlanNotFound (no job created) if the plan is not published.
        """
        if not event.event_id or not event.event_id.strip():
            raise InvalidCheckoutEvent("Checkout event id is required")

        job_id = job_id_for_event(event.event_id)
        existing = await self.jobs.get(job_id)
        if existing:
            logger.info(
                "Checkout %s already has job %s state=%s", event.event_id, job_id, existing.state.value
            )
            return JobHandle(job_id=job_id, event_id=event.event_id, state=existing.state, created=False)

        if event.payment_status not in PAID_STATUSES:
            raise PaymentNotCompleted(
                f"Checkout {event.event_id} payment_status={event.payment_status}"
            )

        plan = await self.catalog.get_published_plan(event.plan_id)
        template_ids = await self.templates.resolve(plan)

        now = self._clock()
        job = ProvisioningJob(
            job_id=job_id,
            event_id=event.event_id,
            plan_id=plan.plan_id,
            customer_id=event.customer_id,
            customer_email=event.customer_email,
            customer_name=event.customer_name,
            template_ids=template_ids,
            state=JobState.PENDING,
            created_at=now,
            updated_at=now,
        )
        created = await self.jobs.insert(job)
        if not created:
            existing = await self.jobs.get(job_id)
            return JobHandle(job_id=job_id, event_id=event.event_id, state=existing.state, created=False)

        logger.info(
            "PROVISIONING_ENQUEUED job_id=%s event_id=%s plan_id=%s", job_id, event.event_id, plan.plan_id
        )
        self._schedule(job_id)
        return JobHandle(job_id=job_id, event_id=event.event_id, state=JobState.PENDING, created=True)

    def _schedule(self, job_id: str) -> None:
        if self._dispatch is None:
            return
        try:
            self._dispatch(job_id)
        except Exception as e:
            # The poller picks up PENDING jobs; dispatch is only a fast path
            logger.warning("In-process provisioning trigger failed (poller will pick up): %s", e)

    # =========================================================================
    # Execution
    # =========================================================================

    async def run_job(self, job_id: str) -> JobOutcome:
        """
        Run (or resume) one job until it succeeds, dies, or schedules a retry.

        Safe to call any number of times. Terminal jobs and retries that are
        not yet due return immediately without touching the CRM. Raises
        LeaseConflict if another executor currently holds the job.
        """
        job = await self.jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)

        if job.state == JobState.SUCCEEDED:
            await self._record_tenant(job)
            return JobOutcome.from_job(job)
        if job.state == JobState.DEAD:
            return JobOutcome.from_job(job)
        if job.state == JobState.RETRY_SCHEDULED and job.next_attempt_at and job.next_attempt_at > self._clock():
            logger.debug("Job %s retry not due until %s", job_id, job.next_attempt_at)
            return JobOutcome.from_job(job)

        job = await self.jobs.acquire_lease(job_id)
        lease = job.lock_owner
        try:
            job = await self._execute(job, lease)
        finally:
            await self.jobs.release_lease(job_id, lease)
        return JobOutcome.from_job(job, ran=True)

    async def _execute(self, job: ProvisioningJob, lease: str) -> ProvisioningJob:
        # State may have moved between the read and the lease (another executor finished)
        if job.state == JobState.PENDING:
            job = await self.jobs.transition(
                job.job_id, JobState.PENDING, JobState.PROVISIONING, lease=lease, audited=False
            )
        elif job.state == JobState.RETRY_SCHEDULED:
            if job.next_attempt_at and job.next_attempt_at > self._clock():
                return job
            resume = job.resume_state or JobState.PROVISIONING
            job = await self.jobs.transition(
                job.job_id, JobState.RETRY_SCHEDULED, resume, lease=lease, audited=False
            )
            logger.info("Job %s resuming at %s (attempt %s)", job.job_id, resume.value, job.attempt_count + 1)

        while job.state in EXECUTING_STATES:
            if job.state == JobState.PROVISIONING:
                job = await self._run_step(job, lease, self._provision_sub_account)
            else:
                job = await self._run_step(job, lease, self._apply_templates)

        if job.state == JobState.SUCCEEDED:
            await self._record_tenant(job)
        return job

    async def _run_step(self, job: ProvisioningJob, lease: str, step) -> ProvisioningJob:
        """Run one step; adapter failures are caught here and drive the state machine."""
        try:
            return await step(job, lease)
        except LeaseConflict:
            raise
        except AdapterError as e:
            return await self._handle_failure(job, lease, e)
        except Exception as e:
            logger.exception("Job %s step %s raised unexpectedly", job.job_id, job.state.value)
            return await self._handle_failure(job, lease, AdapterTransient(f"{type(e).__name__}: {e}"))

    async def _provision_sub_account(self, job: ProvisioningJob, lease: str) -> ProvisioningJob:
        reused = bool(job.sub_account_id)
        sub_account_id = job.sub_account_id
        if not reused:
            await self.jobs.renew_lease(job.job_id, lease)
            sub_account_id = await self.crm.create_sub_account(job.customer(), idempotency_key=job.job_id)
        else:
            logger.info("Job %s reusing recorded sub-account %s", job.job_id, sub_account_id)

        return await self._transition(
            job,
            JobState.TEMPLATE_APPLYING,
            {"sub_account_id": sub_account_id, "reused": reused},
            lease=lease,
            fields={"sub_account_id": sub_account_id},
        )

    async def _apply_templates(self, job: ProvisioningJob, lease: str) -> ProvisioningJob:
        if not job.sub_account_id:
            # Cannot apply without a sub-account; go back and create one
            return await self._transition(
                job, JobState.PROVISIONING, {"reason": "missing_sub_account"}, lease=lease
            )

        remaining = job.pending_template_ids
        if not remaining:
            return await self._transition(
                job,
                JobState.SUCCEEDED,
                {"sub_account_id": job.sub_account_id, "template_ids": job.template_ids},
                lease=lease,
                fields=self._cleared_error_fields(),
            )

        for i, template_id in enumerate(remaining):
            await self.jobs.renew_lease(job.job_id, lease)
            await self.crm.apply_template(job.sub_account_id, template_id)
            if i == len(remaining) - 1:
                return await self._transition(
                    job,
                    JobState.SUCCEEDED,
                    {
                        "sub_account_id": job.sub_account_id,
                        "template_id": template_id,
                        "template_ids": job.template_ids,
                    },
                    lease=lease,
                    fields=self._cleared_error_fields(),
                    applied_template_id=template_id,
                )
            # Durably record this template before applying the next one
            job = await self._transition(
                job,
                JobState.TEMPLATE_APPLYING,
                {"sub_account_id": job.sub_account_id, "template_id": template_id},
                lease=lease,
                applied_template_id=template_id,
            )
        return job

    @staticmethod
    def _cleared_error_fields() -> Dict[str, Any]:
        return {"next_attempt_at": None, "resume_state": None, "needs_operator": False}

    async def _handle_failure(self, job: ProvisioningJob, lease: str, error: AdapterError) -> ProvisioningJob:
        attempt_count = job.attempt_count + 1
        now = self._clock()
        failed_step = job.state
        base_detail = {
            "error": str(error),
            "error_kind": error.kind,
            "status_code": error.status_code,
            "attempt_count": attempt_count,
            "failed_state": failed_step,
        }
        fields = {
            "attempt_count": attempt_count,
            "last_error": str(error),
            "last_error_kind": error.kind,
            "resume_state": failed_step,
        }

        permanent = isinstance(error, AdapterPermanent)
        if permanent or self.policy.exhausted(attempt_count):
            reason = "permanent_error" if permanent else "max_attempts_exceeded"
            detail = dict(base_detail, reason=reason, needs_operator=True)
            if not permanent:
                detail["message"] = str(MaxAttemptsExceeded(job.job_id, attempt_count))
            job = await self._transition(
                job,
                JobState.DEAD,
                detail,
                lease=lease,
                fields=dict(fields, needs_operator=True, next_attempt_at=None),
            )
            logger.error(
                "PROVISIONING_DEAD job_id=%s reason=%s attempts=%s error=%s",
                job.job_id, reason, attempt_count, error,
            )
            return job

        next_attempt_at = self.policy.next_attempt_at(attempt_count, now)
        job = await self._transition(
            job,
            JobState.RETRY_SCHEDULED,
            dict(base_detail, next_attempt_at=next_attempt_at),
            lease=lease,
            fields=dict(fields, next_attempt_at=next_attempt_at),
        )
        logger.warning(
            "PROVISIONING_RETRY_SCHEDULED job_id=%s attempt=%s/%s next_attempt_at=%s error=%s",
            job.job_id, attempt_count, self.policy.max_attempts, next_attempt_at.isoformat(), error,
        )
        return job

    async def _transition(
        self,
        job: ProvisioningJob,
        to_state: JobState,
        detail: Dict[str, Any],
        lease: Optional[str] = None,
        fields: Optional[Dict[str, Any]] = None,
        applied_template_id: Optional[str] = None,
    ) -> ProvisioningJob:
        """Persist the transition, then append its audit entry (seq allocated by the write)."""
        from_state = job.state
        updated = await self.jobs.transition(
            job.job_id,
            from_state,
            to_state,
            fields=fields,
            lease=lease,
            applied_template_id=applied_template_id,
        )
        await self.audit.record(updated.job_id, updated.audit_seq, from_state, to_state, detail)
        return updated

    async def _record_tenant(self, job: ProvisioningJob) -> None:
        """Write the provisioned tenant back to the catalog (idempotent per job)."""
        if not job.sub_account_id:
            return
        await self.catalog.record_tenant(
            Tenant(
                tenant_id=job.sub_account_id,
                job_id=job.job_id,
                event_id=job.event_id,
                plan_id=job.plan_id,
                customer_id=job.customer_id,
                customer_email=job.customer_email,
                template_ids=job.template_ids,
                provisioned_at=job.updated_at,
            )
        )

    # =========================================================================
    # Operator commands
    # =========================================================================

    async def retry_job(self, job_id: str, operator: str) -> JobHandle:
        """
        Operator retry of a DEAD job: back to PENDING with a fresh attempt budget.

        Recorded sub-account / applied templates are kept, so the rerun resumes
        instead of repeating completed steps.
        """
        job = await self.jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.state != JobState.DEAD:
            raise InvalidJobState(f"Job {job_id} is {job.state.value}; only DEAD jobs can be retried")

        try:
            updated = await self._transition(
                job,
                JobState.PENDING,
                {"operator": operator, "previous_attempt_count": job.attempt_count,
                 "previous_error": job.last_error, "attempt_count": 0},
                fields={
                    "attempt_count": 0,
                    "last_error": None,
                    "last_error_kind": None,
                    "needs_operator": False,
                    "next_attempt_at": None,
                },
            )
        except LeaseConflict:
            raise InvalidJobState(f"Job {job_id} changed state concurrently; reload and retry")

        logger.info("PROVISIONING_OPERATOR_RETRY job_id=%s operator=%s", job_id, operator)
        self._schedule(job_id)
        return JobHandle(job_id=job_id, event_id=updated.event_id, state=updated.state, created=False)

    async def get_job(self, job_id: str) -> ProvisioningJob:
        job = await self.jobs.get(job_id)
        if job is None:
            raise JobNotFound(job_id)
        return job
