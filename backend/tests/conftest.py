"""
Pytest configuration and shared test helpers for backend tests.
"""
import asyncio
import copy
import os
import sys
from pathlib import Path
from types import SimpleNamespace

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

BACKEND_DIR = Path(__file__).resolve().parent.parent
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

import pytest
from fastapi.testclient import TestClient
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import create_access_token
from config import Settings
from database import create_indexes
from models import CheckoutEvent, Plan, PlanStatus
from services.audit_log import AuditLog
from services.container import build_services
from services.crm_client import CRMProvisioningAdapter
from services.job_store import JobStore
from services.plan_catalog import PlanCatalog
from services.provisioning_engine import ProvisioningEngine
from services.retry_policy import RetryPolicy
from services.stripe_gateway import StripeGateway
from services.template_registry import TemplateRegistry

_MISSING = object()


# ============================================================================
# In-memory motor double
# ============================================================================

def _compare(value, op, operand):
    if op == "$in":
        if isinstance(value, list):
            return any(v in operand for v in value)
        return value in operand
    if op == "$nin":
        return value not in operand
    if op == "$ne":
        return value != operand
    if value is _MISSING or value is None:
        return False
    if op == "$lt":
        return value < operand
    if op == "$lte":
        return value <= operand
    if op == "$gt":
        return value > operand
    if op == "$gte":
        return value >= operand
    raise NotImplementedError(op)


def _matches(doc, query):
    for key, cond in query.items():
        if key == "$and":
            if not all(_matches(doc, q) for q in cond):
                return False
            continue
        if key == "$or":
            if not any(_matches(doc, q) for q in cond):
                return False
            continue
        value = doc.get(key, _MISSING)
        if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
            for op, operand in cond.items():
                if op == "$exists":
                    if (value is not _MISSING) != bool(operand):
                        return False
                elif op == "$ne":
                    if (None if value is _MISSING else value) == operand:
                        return False
                elif not _compare(None if value is _MISSING else value, op, operand):
                    return False
            continue
        if cond is None:
            if value is not _MISSING and value is not None:
                return False
        elif isinstance(value, list) and not isinstance(cond, list):
            if cond not in value:
                return False
        elif value != cond:
            return False
    return True


def _project(doc, projection):
    if doc is None:
        return None
    doc = copy.deepcopy(doc)
    if not projection:
        return doc
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        return {k: doc[k] for k in included if k in doc}
    for k, v in projection.items():
        if not v:
            doc.pop(k, None)
    return doc


def _sort_key(field):
    def key(doc):
        value = doc.get(field)
        return (value is None, value if value is not None else 0)
    return key


def _apply_sort(docs, sort_spec):
    if not sort_spec:
        return docs
    if isinstance(sort_spec, str):
        sort_spec = [(sort_spec, 1)]
    for field, direction in reversed(sort_spec):
        docs = sorted(docs, key=_sort_key(field), reverse=direction == -1)
    return docs


class FakeCursor:
    def __init__(self, docs, projection):
        self._docs = docs
        self._projection = projection
        self._limit = 0

    def sort(self, key, direction=1):
        sort_spec = key if isinstance(key, list) else [(key, direction)]
        self._docs = _apply_sort(self._docs, sort_spec)
        return self

    def limit(self, n):
        self._limit = n
        return self

    async def to_list(self, length=None):
        docs = self._docs
        cap = self._limit or length
        if cap:
            docs = docs[:cap]
        return [_project(d, self._projection) for d in docs]


class FakeCollection:
    """Subset of AsyncIOMotorCollection used by the services."""

    def __init__(self, name):
        self.name = name
        self.docs = []
        self.unique_keys = []

    async def create_index(self, keys, unique=False, **kwargs):
        if isinstance(keys, str):
            fields = (keys,)
        else:
            fields = tuple(k for k, _ in keys)
        if unique and fields not in self.unique_keys:
            self.unique_keys.append(fields)
        return "_".join(fields)

    def _check_unique(self, doc, ignore=None):
        for fields in self.unique_keys:
            if not all(f in doc for f in fields):
                continue
            for other in self.docs:
                if other is ignore:
                    continue
                if all(other.get(f, _MISSING) == doc[f] for f in fields):
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {fields}")

    async def insert_one(self, doc, **kwargs):
        doc = copy.deepcopy(doc)
        self._check_unique(doc)
        self.docs.append(doc)
        return SimpleNamespace(inserted_id=len(self.docs))

    async def find_one(self, query=None, projection=None, sort=None, **kwargs):
        docs = [d for d in self.docs if _matches(d, query or {})]
        docs = _apply_sort(docs, sort)
        return _project(docs[0], projection) if docs else None

    def find(self, query=None, projection=None, **kwargs):
        docs = [d for d in self.docs if _matches(d, query or {})]
        return FakeCursor(docs, projection)

    async def count_documents(self, query, **kwargs):
        return sum(1 for d in self.docs if _matches(d, query))

    @staticmethod
    def _apply_update(doc, update, inserting=False):
        for k, v in update.get("$set", {}).items():
            doc[k] = copy.deepcopy(v)
        for k in update.get("$unset", {}):
            doc.pop(k, None)
        for k, v in update.get("$inc", {}).items():
            doc[k] = doc.get(k, 0) + v
        for k, v in update.get("$addToSet", {}).items():
            current = doc.setdefault(k, [])
            if v not in current:
                current.append(v)
        for k, v in update.get("$push", {}).items():
            doc.setdefault(k, []).append(v)
        if inserting:
            for k, v in update.get("$setOnInsert", {}).items():
                doc[k] = copy.deepcopy(v)

    def _upsert_doc(self, query, update):
        doc = {k: v for k, v in query.items() if not k.startswith("$") and not isinstance(v, dict)}
        self._apply_update(doc, update, inserting=True)
        self._check_unique(doc)
        self.docs.append(doc)
        return doc

    async def update_one(self, query, update, upsert=False, **kwargs):
        for doc in self.docs:
            if _matches(doc, query):
                self._apply_update(doc, update)
                return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if upsert:
            self._upsert_doc(query, update)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=len(self.docs))
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def update_many(self, query, update, **kwargs):
        matched = [d for d in self.docs if _matches(d, query)]
        for doc in matched:
            self._apply_update(doc, update)
        return SimpleNamespace(matched_count=len(matched), modified_count=len(matched))

    async def find_one_and_update(
        self, query, update, projection=None, return_document=ReturnDocument.BEFORE, upsert=False, **kwargs
    ):
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                self._apply_update(doc, update)
                return _project(doc if return_document == ReturnDocument.AFTER else before, projection)
        if upsert:
            doc = self._upsert_doc(query, update)
            return _project(doc, projection) if return_document == ReturnDocument.AFTER else None
        return None


class FakeDatabase:
    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._collections:
            self._collections[name] = FakeCollection(name)
        return self._collections[name]

    def __getitem__(self, name):
        return getattr(self, name)

    async def command(self, name, **kwargs):
        return {"ok": 1}


# ============================================================================
# CRM double
# ============================================================================

class FakeCRM(CRMProvisioningAdapter):
    """Scripted CRM: queue errors per operation; successful calls are recorded."""

    def __init__(self):
        self.create_attempts = 0
        self.apply_attempts = 0
        self.created = []
        self.applied = []
        self.create_errors = []
        self.apply_errors = {}

    async def create_sub_account(self, customer, idempotency_key=None):
        self.create_attempts += 1
        if self.create_errors:
            raise self.create_errors.pop(0)
        sub_account_id = f"loc_{len(self.created) + 1}"
        self.created.append((sub_account_id, customer.customer_id, idempotency_key))
        return sub_account_id

    async def apply_template(self, sub_account_id, template_id):
        self.apply_attempts += 1
        queued = self.apply_errors.get(template_id)
        if queued:
            raise queued.pop(0)
        self.applied.append((sub_account_id, template_id))


# ============================================================================
# Engine environment
# ============================================================================

class ProvisioningEnv:
    def __init__(self, db, crm, policy=None, dispatch=None):
        self.db = db
        self.crm = crm
        self.catalog = PlanCatalog(db)
        self.templates = TemplateRegistry(db)
        self.jobs = JobStore(db, lease_seconds=60, worker_id="test-worker")
        self.audit = AuditLog(db)
        self.policy = policy or RetryPolicy(base_delay_seconds=0, max_delay_seconds=0, jitter=0)
        self.engine = ProvisioningEngine(
            catalog=self.catalog,
            templates=self.templates,
            jobs=self.jobs,
            audit=self.audit,
            crm=crm,
            policy=self.policy,
            dispatch=dispatch,
        )

    async def publish_plan(self, plan_id="snap-starter", template_ids=None, **kwargs) -> Plan:
        fields = dict(
            plan_id=plan_id,
            name=kwargs.pop("name", "Starter Snapshot"),
            price_cents=kwargs.pop("price_cents", 9700),
            template_ids=template_ids or ["snapshot_a"],
            status=kwargs.pop("status", PlanStatus.PUBLISHED),
        )
        fields.update(kwargs)
        stored, _ = await self.catalog.upsert_plan(Plan(**fields))
        await self.templates.set_templates(stored.plan_id, stored.template_ids)
        return stored

    @staticmethod
    def checkout(event_id="cs_test_001", plan_id="snap-starter", **kwargs) -> CheckoutEvent:
        fields = dict(
            event_id=event_id,
            plan_id=plan_id,
            customer_id="cus_test_001",
            customer_email="owner@example.com",
            customer_name="Acme Dental",
        )
        fields.update(kwargs)
        return CheckoutEvent(**fields)

    async def audit_entries(self, job_id):
        return await self.audit.list_for_job(job_id)


@pytest.fixture
def db():
    fake = FakeDatabase()
    asyncio.run(create_indexes(fake))
    return fake


@pytest.fixture
def crm():
    return FakeCRM()


@pytest.fixture
def env(db, crm):
    return ProvisioningEnv(db, crm)


# ============================================================================
# API
# ============================================================================

@pytest.fixture
def settings():
    return Settings(public_app_url="https://app.example.com", poll_interval_seconds=60)


@pytest.fixture
def services(db, crm, settings):
    return build_services(
        db,
        settings,
        crm=crm,
        gateway=StripeGateway(secret_key="", webhook_secret=""),
    )


@pytest.fixture
def client(services):
    """TestClient for server:app with in-memory services installed on app.state."""
    from server import app

    app.state.services = services
    try:
        yield TestClient(app)
    finally:
        app.state.services = None


def _token(role, email):
    return create_access_token({"sub": email, "email": email, "role": role})


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {_token('ROLE_ADMIN', 'admin@example.com')}"}


@pytest.fixture
def operator_headers():
    return {"Authorization": f"Bearer {_token('ROLE_OPERATOR', 'ops@example.com')}"}
