"""Plan Catalog Store.

Durable record of billing plans derived from imported spreadsheets. Plans are
never deleted, only archived, so historical tenants keep a valid reference.
The provisioning engine only reads from here (get_published_plan); writes come
from the import/admin pipeline.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from errors import PlanNotFound
from models import Plan, PlanStatus, Tenant
from utils.documents import from_doc, to_doc

logger = logging.getLogger(__name__)


class PlanCatalog:
    def __init__(self, db):
        self._db = db

    async def get_plan(self, plan_id: str) -> Optional[Plan]:
        doc = await self._db.plans.find_one({"plan_id": plan_id}, {"_id": 0})
        return from_doc(Plan, doc)

    async def get_published_plan(self, plan_id: str) -> Plan:
        """Resolve a plan for purchase/provisioning. Unknown, draft and archived plans raise PlanNotFound."""
        if not plan_id:
            raise PlanNotFound(plan_id)
        doc = await self._db.plans.find_one(
            {"plan_id": plan_id, "status": PlanStatus.PUBLISHED.value},
            {"_id": 0},
        )
        if not doc:
            raise PlanNotFound(plan_id)
        return from_doc(Plan, doc)

    async def get_plan_by_payment_link(self, payment_link_id: str) -> Optional[Plan]:
        if not payment_link_id:
            return None
        doc = await self._db.plans.find_one({"stripe_payment_link_id": payment_link_id}, {"_id": 0})
        return from_doc(Plan, doc)

    async def list_plans(self, status: Optional[PlanStatus] = None, limit: int = 500) -> List[Plan]:
        query = {"status": status.value} if status else {}
        cursor = self._db.plans.find(query, {"_id": 0}).sort("plan_id", 1).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [from_doc(Plan, d) for d in docs]

    async def upsert_plan(self, plan: Plan) -> Tuple[Plan, bool]:
        """Insert or update a plan by plan_id. Returns (stored plan, created)."""
        existing = await self.get_plan(plan.plan_id)
        now = datetime.now(timezone.utc)
        if existing is None:
            plan = plan.model_copy(update={"created_at": now, "updated_at": now})
            await self._db.plans.insert_one(to_doc(plan))
            logger.info("PLAN_CREATED plan_id=%s status=%s", plan.plan_id, plan.status.value)
            return plan, True

        updates = to_doc(plan)
        updates.pop("created_at", None)
        updates["updated_at"] = now
        await self._db.plans.update_one({"plan_id": plan.plan_id}, {"$set": updates})
        logger.info("PLAN_UPDATED plan_id=%s status=%s", plan.plan_id, plan.status.value)
        return plan.model_copy(update={"created_at": existing.created_at, "updated_at": now}), False

    async def archive_plan(self, plan_id: str) -> Plan:
        now = datetime.now(timezone.utc)
        result = await self._db.plans.update_one(
            {"plan_id": plan_id},
            {"$set": {"status": PlanStatus.ARCHIVED.value, "updated_at": now}},
        )
        if result.matched_count == 0:
            raise PlanNotFound(plan_id)
        logger.info("PLAN_ARCHIVED plan_id=%s", plan_id)
        return await self.get_plan(plan_id)

    async def set_billing_refs(
        self,
        plan_id: str,
        stripe_product_id: Optional[str],
        stripe_price_id: Optional[str],
        payment_link_id: Optional[str],
        payment_link_url: Optional[str],
    ) -> None:
        await self._db.plans.update_one(
            {"plan_id": plan_id},
            {
                "$set": {
                    "stripe_product_id": stripe_product_id,
                    "stripe_price_id": stripe_price_id,
                    "stripe_payment_link_id": payment_link_id,
                    "payment_link_url": payment_link_url,
                    "updated_at": datetime.now(timezone.utc),
                }
            },
        )

    # ------------------------------------------------------------------
    # Tenants (provisioning outcome written back to the catalog)
    # ------------------------------------------------------------------

    async def record_tenant(self, tenant: Tenant) -> None:
        """Idempotent: one tenant record per job."""
        await self._db.tenants.update_one(
            {"job_id": tenant.job_id},
            {"$setOnInsert": to_doc(tenant)},
            upsert=True,
        )

    async def get_tenant_for_job(self, job_id: str) -> Optional[Tenant]:
        doc = await self._db.tenants.find_one({"job_id": job_id}, {"_id": 0})
        return from_doc(Tenant, doc)

    async def list_tenants(self, plan_id: Optional[str] = None, limit: int = 200) -> List[Tenant]:
        query = {"plan_id": plan_id} if plan_id else {}
        cursor = self._db.tenants.find(query, {"_id": 0}).sort("provisioned_at", -1).limit(limit)
        return [from_doc(Tenant, d) for d in await cursor.to_list(length=limit)]
