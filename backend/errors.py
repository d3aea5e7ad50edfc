"""Domain exceptions for the provisioning pipeline."""
from typing import Optional


class ProvisioningError(Exception):
    """Base exception for provisioning operations."""
    pass


class InvalidCheckoutEvent(ProvisioningError):
    """Checkout event is malformed (e.g. empty id)."""
    pass


class PaymentNotCompleted(ProvisioningError):
    """Checkout event does not represent a completed payment."""
    pass


class PlanNotFound(ProvisioningError):
    """Plan id is unknown or not published. No job is created."""

    def __init__(self, plan_id: str):
        super().__init__(f"Plan not found or not published: {plan_id}")
        self.plan_id = plan_id


class JobNotFound(ProvisioningError):
    def __init__(self, job_id: str):
        super().__init__(f"Provisioning job not found: {job_id}")
        self.job_id = job_id


class InvalidJobState(ProvisioningError):
    """Requested command is not allowed from the job's current state."""
    pass


class LeaseConflict(ProvisioningError):
    """Another executor holds the job's lease. Not a job failure; back off and retry later."""

    def __init__(self, job_id: str, holder: Optional[str] = None):
        msg = f"Job {job_id} is leased by another executor"
        if holder:
            msg += f" ({holder})"
        super().__init__(msg)
        self.job_id = job_id
        self.holder = holder


class MaxAttemptsExceeded(ProvisioningError):
    """Retry budget exhausted; the job is dead until an operator retries it."""

    def __init__(self, job_id: str, attempts: int):
        super().__init__(f"Job {job_id} exhausted {attempts} attempt(s)")
        self.job_id = job_id
        self.attempts = attempts


class AdapterError(ProvisioningError):
    """Failure reported by an external adapter (CRM or payment gateway)."""

    kind = "unknown"

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code


class AdapterTransient(AdapterError):
    """Network/rate-limit failure; retried per backoff policy."""

    kind = "transient"


class AdapterPermanent(AdapterError):
    """Non-retryable condition (e.g. invalid template id, quota exceeded)."""

    kind = "permanent"


class SpreadsheetImportError(ProvisioningError):
    """Uploaded plan workbook is unreadable or has invalid rows."""

    def __init__(self, message: str, row_errors: Optional[list] = None):
        super().__init__(message)
        self.row_errors = row_errors or []
