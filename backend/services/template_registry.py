"""Snapshot Template Registry: plan -> CRM snapshot (template) ids applied on provisioning."""
import logging
from datetime import datetime, timezone
from typing import List, Optional

from models import Plan, TemplateMapping
from utils.documents import from_doc

logger = logging.getLogger(__name__)


class TemplateRegistry:
    def __init__(self, db):
        self._db = db

    async def get_mapping(self, plan_id: str) -> Optional[TemplateMapping]:
        doc = await self._db.snapshot_templates.find_one({"plan_id": plan_id}, {"_id": 0})
        return from_doc(TemplateMapping, doc)

    async def set_templates(self, plan_id: str, template_ids: List[str]) -> TemplateMapping:
        mapping = TemplateMapping(plan_id=plan_id, template_ids=template_ids, updated_at=datetime.now(timezone.utc))
        await self._db.snapshot_templates.update_one(
            {"plan_id": plan_id},
            {"$set": {"template_ids": mapping.template_ids, "updated_at": mapping.updated_at}},
            upsert=True,
        )
        return mapping

    async def resolve(self, plan: Plan) -> List[str]:
        """Template ids to apply for a purchase of this plan.

        The registry mapping wins; plans imported before a mapping existed fall
        back to the ids stored on the plan itself.
        """
        mapping = await self.get_mapping(plan.plan_id)
        if mapping and mapping.template_ids:
            return list(mapping.template_ids)
        logger.debug("No template mapping for plan %s, using plan.template_ids", plan.plan_id)
        return list(plan.template_ids)
