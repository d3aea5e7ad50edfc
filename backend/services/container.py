"""Wiring of the provisioning services around one database handle.

Built once in the server lifespan (and by the scripts) and stored on
app.state.services; routes fetch it with get_services(request).
"""
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import HTTPException, Request, status

from config import Settings
from services.audit_log import AuditLog
from services.crm_client import CRMProvisioningAdapter, GHLClient
from services.job_store import JobStore
from services.plan_catalog import PlanCatalog
from services.plan_spreadsheet import PlanImporter
from services.provisioning_engine import ProvisioningEngine
from services.retry_policy import RetryPolicy
from services.stripe_gateway import StripeGateway
from services.stripe_webhook_service import StripeWebhookService
from services.template_registry import TemplateRegistry


@dataclass
class Services:
    settings: Settings
    catalog: PlanCatalog
    templates: TemplateRegistry
    jobs: JobStore
    audit: AuditLog
    gateway: StripeGateway
    engine: ProvisioningEngine
    webhooks: StripeWebhookService
    importer: PlanImporter


def build_services(
    db,
    settings: Settings,
    crm: Optional[CRMProvisioningAdapter] = None,
    gateway: Optional[StripeGateway] = None,
    dispatch: Optional[Callable[[str], None]] = None,
) -> Services:
    catalog = PlanCatalog(db)
    templates = TemplateRegistry(db)
    jobs = JobStore(db, lease_seconds=settings.lease_seconds, worker_id=settings.worker_id)
    audit = AuditLog(db)
    gateway = gateway or StripeGateway.from_settings(settings)
    engine = ProvisioningEngine(
        catalog=catalog,
        templates=templates,
        jobs=jobs,
        audit=audit,
        crm=crm or GHLClient.from_settings(settings),
        policy=RetryPolicy.from_settings(settings),
        dispatch=dispatch,
    )
    return Services(
        settings=settings,
        catalog=catalog,
        templates=templates,
        jobs=jobs,
        audit=audit,
        gateway=gateway,
        engine=engine,
        webhooks=StripeWebhookService(db, gateway, engine, catalog),
        importer=PlanImporter(catalog, templates, gateway),
    )


def get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Provisioning services not initialised",
        )
    return services
