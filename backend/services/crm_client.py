"""
GoHighLevel (LeadConnector) provisioning adapter.

Two operations used by the provisioning engine:
- create_sub_account(customer) -> location id
- apply_template(location_id, snapshot_id)

Every failure is raised as AdapterTransient or AdapterPermanent. Which HTTP
status codes / API error codes count as permanent is configuration
(CRM_*_STATUS_CODES, CRM_PERMANENT_ERROR_CODES), not hardcoded.
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, Optional

import httpx

from config import (
    DEFAULT_PERMANENT_ERROR_CODES,
    DEFAULT_PERMANENT_STATUS_CODES,
    DEFAULT_TRANSIENT_STATUS_CODES,
)
from errors import AdapterError, AdapterPermanent, AdapterTransient
from models import CustomerProfile

logger = logging.getLogger(__name__)


class CRMProvisioningAdapter(ABC):
    """Boundary the engine calls. Implementations raise AdapterTransient / AdapterPermanent."""

    @abstractmethod
    async def create_sub_account(self, customer: CustomerProfile, idempotency_key: Optional[str] = None) -> str:
        pass

    @abstractmethod
    async def apply_template(self, sub_account_id: str, template_id: str) -> None:
        pass


class ErrorClassifier:
    """Maps CRM responses and transport errors to transient vs permanent."""

    def __init__(
        self,
        transient_status_codes: FrozenSet[int] = DEFAULT_TRANSIENT_STATUS_CODES,
        permanent_status_codes: FrozenSet[int] = DEFAULT_PERMANENT_STATUS_CODES,
        permanent_error_codes: FrozenSet[str] = DEFAULT_PERMANENT_ERROR_CODES,
    ):
        self.transient_status_codes = frozenset(transient_status_codes)
        self.permanent_status_codes = frozenset(permanent_status_codes)
        self.permanent_error_codes = frozenset(c.upper() for c in permanent_error_codes)

    @classmethod
    def from_settings(cls, settings) -> "ErrorClassifier":
        return cls(
            transient_status_codes=settings.crm_transient_status_codes,
            permanent_status_codes=settings.crm_permanent_status_codes,
            permanent_error_codes=settings.crm_permanent_error_codes,
        )

    def classify_response(self, operation: str, status_code: int, body: Any, text: str = "") -> AdapterError:
        code = None
        message = text
        if isinstance(body, dict):
            code = body.get("code") or body.get("error")
            msg = body.get("message")
            if isinstance(msg, list):
                msg = "; ".join(str(m) for m in msg)
            message = msg or text
        code_str = str(code).upper() if code else None
        full = f"{operation} failed: HTTP {status_code}" + (f" [{code}]" if code else "") + (f": {message}" if message else "")

        # Explicit error codes win over status codes
        if code_str and code_str in self.permanent_error_codes:
            return AdapterPermanent(full, status_code=status_code, code=code_str)
        if status_code in self.transient_status_codes:
            return AdapterTransient(full, status_code=status_code, code=code_str)
        if status_code in self.permanent_status_codes:
            return AdapterPermanent(full, status_code=status_code, code=code_str)
        if 500 <= status_code < 600:
            return AdapterTransient(full, status_code=status_code, code=code_str)
        # Unknown: retry within budget rather than give up early
        return AdapterTransient(full, status_code=status_code, code=code_str)

    def classify_exception(self, operation: str, exc: Exception) -> AdapterError:
        if isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError)):
            return AdapterTransient(f"{operation} failed: {type(exc).__name__}: {exc}")
        return AdapterTransient(f"{operation} failed: {exc}")


class GHLClient(CRMProvisioningAdapter):
    """LeadConnector API v2 client (agency-level token)."""

    LOCATIONS_PATH = "/locations/"
    APPLY_SNAPSHOT_PATH = "/locations/{location_id}/snapshots"

    def __init__(
        self,
        base_url: str,
        api_key: str,
        company_id: str,
        api_version: str = "2021-07-28",
        timeout: float = 30.0,
        classifier: Optional[ErrorClassifier] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.company_id = company_id
        self.api_version = api_version
        self.timeout = timeout
        self.classifier = classifier or ErrorClassifier()
        self._transport = transport

    @classmethod
    def from_settings(cls, settings) -> "GHLClient":
        return cls(
            base_url=settings.ghl_api_base,
            api_key=settings.ghl_api_key,
            company_id=settings.ghl_company_id,
            api_version=settings.ghl_api_version,
            timeout=settings.ghl_timeout_seconds,
            classifier=ErrorClassifier.from_settings(settings),
        )

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Version": self.api_version,
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _post(self, operation: str, path: str, payload: Dict[str, Any], idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(path, json=payload, headers=self._headers(idempotency_key))
        except httpx.HTTPError as e:
            error = self.classifier.classify_exception(operation, e)
            logger.warning("GHL %s transport error: %s", operation, error)
            raise error from e

        if response.status_code in (200, 201):
            try:
                return response.json()
            except ValueError:
                return {}

        try:
            body = response.json()
        except ValueError:
            body = None
        error = self.classifier.classify_response(operation, response.status_code, body, response.text[:500])
        logger.error("GHL %s error (%s): %s", operation, error.kind, error)
        raise error

    async def create_sub_account(self, customer: CustomerProfile, idempotency_key: Optional[str] = None) -> str:
        payload = {
            "companyId": self.company_id,
            "name": customer.name or customer.email or customer.customer_id,
        }
        if customer.email:
            payload["email"] = customer.email
        data = await self._post("create_sub_account", self.LOCATIONS_PATH, payload, idempotency_key)
        location = data.get("location") if isinstance(data.get("location"), dict) else data
        location_id = (location or {}).get("id") or (location or {}).get("_id")
        if not location_id:
            # 2xx without an id cannot be resumed from; retry within budget
            raise AdapterTransient("create_sub_account failed: response missing location id")
        logger.info("GHL: sub-account created - %s (customer: %s)", location_id, customer.customer_id)
        return location_id

    async def apply_template(self, sub_account_id: str, template_id: str) -> None:
        path = self.APPLY_SNAPSHOT_PATH.format(location_id=sub_account_id)
        await self._post("apply_template", path, {"snapshotId": template_id, "override": False})
        logger.info("GHL: snapshot %s applied to %s", template_id, sub_account_id)
