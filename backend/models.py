from pydantic import BaseModel, EmailStr, Field, ConfigDict, field_validator
from typing import Optional, Dict, Any, List
from datetime import datetime, timezone
from enum import Enum
import uuid


def utc_now() -> datetime:
    return datetime.now(timezone.utc)

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class UserRole(str, Enum):
    ROLE_ADMIN = "ROLE_ADMIN"
    ROLE_OPERATOR = "ROLE_OPERATOR"

class PlanStatus(str, Enum):
    DRAFT = "DRAFT"
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"

class BillingInterval(str, Enum):
    ONE_TIME = "ONE_TIME"
    MONTH = "MONTH"
    YEAR = "YEAR"

class JobState(str, Enum):
    PENDING = "PENDING"
    PROVISIONING = "PROVISIONING"
    TEMPLATE_APPLYING = "TEMPLATE_APPLYING"
    RETRY_SCHEDULED = "RETRY_SCHEDULED"
    SUCCEEDED = "SUCCEEDED"
    DEAD = "DEAD"

class StripeEventStatus(str, Enum):
    RECEIVED = "RECEIVED"
    PROCESSED = "PROCESSED"
    IGNORED = "IGNORED"
    FAILED = "FAILED"


TERMINAL_STATES = frozenset({JobState.SUCCEEDED, JobState.DEAD})
# States in which an executor is (or was, before a crash) driving an adapter call
EXECUTING_STATES = frozenset({JobState.PROVISIONING, JobState.TEMPLATE_APPLYING})
PAID_STATUSES = frozenset({"paid", "no_payment_required"})


def _clean_template_ids(v: List[str]) -> List[str]:
    cleaned = [t.strip() for t in v if t and t.strip()]
    if not cleaned:
        raise ValueError("at least one template id is required")
    # Order matters for application; drop duplicates only
    return list(dict.fromkeys(cleaned))


# ============================================================================
# CATALOG
# ============================================================================

class Plan(BaseModel):
    model_config = ConfigDict(extra="ignore")

    plan_id: str
    name: str
    description: Optional[str] = None
    price_cents: int = Field(ge=0)
    currency: str = "usd"
    interval: BillingInterval = BillingInterval.MONTH
    template_ids: List[str] = Field(min_length=1)
    status: PlanStatus = PlanStatus.DRAFT
    stripe_product_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    stripe_payment_link_id: Optional[str] = None
    payment_link_url: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_recurring(self) -> bool:
        return self.interval != BillingInterval.ONE_TIME

    @field_validator("template_ids")
    @classmethod
    def _strip_template_ids(cls, v: List[str]) -> List[str]:
        return _clean_template_ids(v)

class TemplateMapping(BaseModel):
    model_config = ConfigDict(extra="ignore")

    plan_id: str
    template_ids: List[str] = Field(min_length=1)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("template_ids")
    @classmethod
    def _strip_template_ids(cls, v: List[str]) -> List[str]:
        return _clean_template_ids(v)

class Tenant(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tenant_id: str  # CRM sub-account (location) id
    job_id: str
    event_id: str
    plan_id: str
    customer_id: str
    customer_email: Optional[str] = None
    template_ids: List[str] = Field(default_factory=list)
    provisioned_at: datetime = Field(default_factory=utc_now)

# ============================================================================
# PROVISIONING
# ============================================================================

class CheckoutEvent(BaseModel):
    """Payment-completed notification. Immutable once received."""
    model_config = ConfigDict(frozen=True, extra="ignore")

    event_id: str
    plan_id: str
    customer_id: str
    customer_email: Optional[EmailStr] = None
    customer_name: Optional[str] = None
    payment_status: str = "paid"
    received_at: datetime = Field(default_factory=utc_now)

class CustomerProfile(BaseModel):
    """What the CRM needs to create a sub-account."""
    model_config = ConfigDict(frozen=True)

    customer_id: str
    email: Optional[str] = None
    name: Optional[str] = None

class ProvisioningJob(BaseModel):
    model_config = ConfigDict(extra="ignore")

    job_id: str
    event_id: str
    plan_id: str
    customer_id: str
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    template_ids: List[str] = Field(default_factory=list)

    state: JobState = JobState.PENDING
    resume_state: Optional[JobState] = None
    attempt_count: int = 0
    last_error: Optional[str] = None
    last_error_kind: Optional[str] = None
    next_attempt_at: Optional[datetime] = None
    needs_operator: bool = False

    sub_account_id: Optional[str] = None
    applied_template_ids: List[str] = Field(default_factory=list)

    locked_until: Optional[datetime] = None
    lock_owner: Optional[str] = None
    audit_seq: int = 0

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def pending_template_ids(self) -> List[str]:
        applied = set(self.applied_template_ids)
        return [t for t in dict.fromkeys(self.template_ids) if t not in applied]

    def customer(self) -> CustomerProfile:
        return CustomerProfile(
            customer_id=self.customer_id,
            email=self.customer_email,
            name=self.customer_name,
        )

class AuditEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    entry_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    job_id: str
    seq: int
    from_state: JobState
    to_state: JobState
    transition: str
    detail: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utc_now)

class JobHandle(BaseModel):
    job_id: str
    event_id: str
    state: JobState
    created: bool = False

class JobOutcome(BaseModel):
    job_id: str
    state: JobState
    attempt_count: int
    ran: bool = False
    sub_account_id: Optional[str] = None
    last_error: Optional[str] = None
    next_attempt_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: ProvisioningJob, ran: bool = False) -> "JobOutcome":
        return cls(
            job_id=job.job_id,
            state=job.state,
            attempt_count=job.attempt_count,
            ran=ran,
            sub_account_id=job.sub_account_id,
            last_error=job.last_error,
            next_attempt_at=job.next_attempt_at,
        )
