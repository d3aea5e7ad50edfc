"""
Plan spreadsheet export / import (openpyxl).

Operator flow: export the catalog, edit names/prices/descriptions/status in
Excel, re-import. Import upserts plans and their snapshot template mapping and,
for published plans, makes sure a Stripe payment link exists.

Columns: plan_id | name | description | price | currency | interval |
         template_ids | status | payment_link_url
"""
import io
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from openpyxl import Workbook, load_workbook
from openpyxl.styles import Font, PatternFill
from openpyxl.utils import get_column_letter
from pydantic import ValidationError

from errors import AdapterError, SpreadsheetImportError
from models import BillingInterval, Plan, PlanStatus

logger = logging.getLogger(__name__)

COLUMNS = [
    "plan_id",
    "name",
    "description",
    "price",
    "currency",
    "interval",
    "template_ids",
    "status",
    "payment_link_url",
]
REQUIRED_COLUMNS = ("plan_id", "name", "price", "template_ids")
SHEET_TITLE = "Plans"


def export_plans(plans: List[Plan]) -> bytes:
    """Render plans to an .xlsx workbook."""
    wb = Workbook()
    ws = wb.active
    ws.title = SHEET_TITLE

    header_font = Font(bold=True, color="FFFFFF")
    header_fill = PatternFill(start_color="1F4E78", end_color="1F4E78", fill_type="solid")
    for col, name in enumerate(COLUMNS, start=1):
        cell = ws.cell(row=1, column=col, value=name)
        cell.font = header_font
        cell.fill = header_fill

    for row, plan in enumerate(plans, start=2):
        values = [
            plan.plan_id,
            plan.name,
            plan.description or "",
            float(Decimal(plan.price_cents) / 100),
            plan.currency.upper(),
            plan.interval.value,
            ", ".join(plan.template_ids),
            plan.status.value,
            plan.payment_link_url or "",
        ]
        for col, value in enumerate(values, start=1):
            ws.cell(row=row, column=col, value=value)

    for col in range(1, len(COLUMNS) + 1):
        ws.column_dimensions[get_column_letter(col)].width = 24
    ws.freeze_panes = "A2"

    buf = io.BytesIO()
    wb.save(buf)
    return buf.getvalue()


def _cell_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _parse_price_cents(value: Any) -> int:
    try:
        amount = Decimal(str(value).replace(",", "").replace("$", "").strip())
    except (InvalidOperation, AttributeError):
        raise ValueError(f"invalid price {value!r}")
    if amount < 0:
        raise ValueError("price must be >= 0")
    return int((amount * 100).quantize(Decimal("1")))


def _parse_enum(enum_cls, value: str, default):
    if not value:
        return default
    key = value.strip().upper().replace("-", "_").replace(" ", "_")
    try:
        return enum_cls(key)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValueError(f"invalid {enum_cls.__name__} {value!r} (allowed: {allowed})")


def parse_workbook(content: bytes) -> Tuple[List[Plan], List[Dict[str, Any]]]:
    """Read plans from an uploaded workbook.

    Returns (plans, row_errors); a row with errors yields no plan. Raises
    SpreadsheetImportError if the file is unreadable or headers are missing.
    """
    try:
        wb = load_workbook(io.BytesIO(content), read_only=True, data_only=True)
    except Exception as e:
        raise SpreadsheetImportError(f"Unreadable workbook: {e}")
    ws = wb[SHEET_TITLE] if SHEET_TITLE in wb.sheetnames else wb.worksheets[0]

    rows = ws.iter_rows(values_only=True)
    try:
        header = [_cell_str(h).lower() for h in next(rows)]
    except StopIteration:
        raise SpreadsheetImportError("Workbook is empty")
    missing = [c for c in REQUIRED_COLUMNS if c not in header]
    if missing:
        raise SpreadsheetImportError(f"Missing columns: {', '.join(missing)}")
    index = {name: header.index(name) for name in COLUMNS if name in header}

    plans: List[Plan] = []
    errors: List[Dict[str, Any]] = []
    seen = set()
    for row_number, row in enumerate(rows, start=2):
        if row is None or all(v is None or _cell_str(v) == "" for v in row):
            continue

        def raw(col: str) -> Any:
            i = index.get(col)
            return row[i] if i is not None and i < len(row) else None

        def get(col: str) -> str:
            return _cell_str(raw(col))

        plan_id = get("plan_id")
        try:
            if not plan_id:
                raise ValueError("plan_id is required")
            if plan_id in seen:
                raise ValueError(f"duplicate plan_id {plan_id}")
            seen.add(plan_id)
            plan = Plan(
                plan_id=plan_id,
                name=get("name"),
                description=get("description") or None,
                price_cents=_parse_price_cents(raw("price")),
                currency=(get("currency") or "usd").lower(),
                interval=_parse_enum(BillingInterval, get("interval"), BillingInterval.MONTH),
                template_ids=get("template_ids").split(","),
                status=_parse_enum(PlanStatus, get("status"), PlanStatus.DRAFT),
            )
            if not plan.name:
                raise ValueError("name is required")
            plans.append(plan)
        except ValidationError as e:
            errors.append({"row": row_number, "plan_id": plan_id or None,
                           "error": "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())})
        except ValueError as e:
            errors.append({"row": row_number, "plan_id": plan_id or None, "error": str(e)})
    wb.close()
    return plans, errors


@dataclass
class ImportReport:
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    payment_links: Dict[str, str] = field(default_factory=dict)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "payment_links": self.payment_links,
            "errors": self.errors,
            "created_count": len(self.created),
            "updated_count": len(self.updated),
            "error_count": len(self.errors),
        }


class PlanImporter:
    def __init__(self, catalog, templates, gateway=None):
        self.catalog = catalog
        self.templates = templates
        self.gateway = gateway

    async def import_workbook(self, content: bytes) -> ImportReport:
        plans, row_errors = parse_workbook(content)
        report = ImportReport(errors=list(row_errors))
        for plan in plans:
            plan = await self._carry_billing_refs(plan)
            stored, created = await self.catalog.upsert_plan(plan)
            await self.templates.set_templates(stored.plan_id, stored.template_ids)
            (report.created if created else report.updated).append(stored.plan_id)

            if stored.status == PlanStatus.PUBLISHED and self.gateway is not None:
                link = await self._ensure_payment_link(stored, report)
                if link:
                    report.payment_links[stored.plan_id] = link
        logger.info(
            "PLAN_IMPORT created=%s updated=%s errors=%s",
            len(report.created), len(report.updated), len(report.errors),
        )
        return report

    async def _carry_billing_refs(self, plan: Plan) -> Plan:
        """Keep Stripe ids across imports; a price change needs a new price and link."""
        existing = await self.catalog.get_plan(plan.plan_id)
        if existing is None:
            return plan
        update: Dict[str, Optional[str]] = {"stripe_product_id": existing.stripe_product_id}
        same_price = (
            existing.price_cents == plan.price_cents
            and existing.currency == plan.currency
            and existing.interval == plan.interval
        )
        if same_price:
            update.update(
                stripe_price_id=existing.stripe_price_id,
                stripe_payment_link_id=existing.stripe_payment_link_id,
                payment_link_url=existing.payment_link_url,
            )
        return plan.model_copy(update=update)

    async def _ensure_payment_link(self, plan: Plan, report: ImportReport) -> Optional[str]:
        try:
            product_id, price_id, link_id, url = self.gateway.ensure_payment_link(plan)
        except AdapterError as e:
            logger.error("Payment link creation failed for plan %s: %s", plan.plan_id, e)
            report.errors.append({"row": None, "plan_id": plan.plan_id, "error": str(e)})
            return None
        await self.catalog.set_billing_refs(plan.plan_id, product_id, price_id, link_id, url)
        return url
