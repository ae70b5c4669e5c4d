"""
Verification / settlement provider adapter.

Thin async wrapper around the provider's linked-account API (accounts,
stakeholders, products, documents). This module is the only place that looks
at provider error text: every non-2xx response is classified here into a
ProviderError / TransientProviderError with a structured kind, so nothing
downstream ever string-matches provider messages.
"""

import asyncio
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

import httpx

from config import settings
from kyc_constants import ProviderErrorKind
from kyc_errors import ProviderError, TransientProviderError

log = logging.getLogger(__name__)

IDEMPOTENCY_HEADER = "X-Razorpay-Idempotency"
SETTLEMENT_PRODUCT = "route"

_EXISTING_ACCOUNT_RE = re.compile(r"account\s*-\s*([A-Za-z0-9_]+)")
_DUPLICATE_EMAIL_MARKERS = ("email already exists",)
_ACCESS_DENIED_MARKERS = ("access denied",)
_NOT_REQUIRED_MARKERS = ("is/are not required", "not required")
_FORM_LOCKED_MARKERS = ("activation form", "under review", "locked")
_TRANSIENT_MARKERS = (
    "timeout",
    "timed out",
    "connection reset",
    "connection refused",
    "econnreset",
    "network error",
    "temporarily unavailable",
    "service unavailable",
    "bad gateway",
)


def idempotency_token(community_id: str, generation: int, operation: str) -> str:
    """Deterministic per attempt generation, so a retried call replays instead of duplicating"""
    return f"{settings.PROVIDER_IDEMPOTENCY_PREFIX}_{community_id}_g{generation}_{operation}"


def _parse_error_body(body: str) -> Tuple[str, Optional[str]]:
    """Pull (description, field) out of the provider's {"error": {...}} envelope"""
    try:
        payload = json.loads(body)
    except (TypeError, ValueError):
        return body or "", None
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return error.get("description") or body, error.get("field") or None
    if isinstance(error, str):
        return error, payload.get("field") or None
    return body, None


def classify_error(status_code: int, body: str) -> Exception:
    """
    Map a failed provider response to a structured error.

    Order matters: a duplicate-email conflict is also a 400 carrying text, and
    access denied is sometimes a 400 with the marker in the description.
    """
    description, field = _parse_error_body(body)
    text = f"{description} {body}".lower()
    detail = f"HTTP {status_code}: {description}"

    if status_code >= 500 or any(marker in text for marker in _TRANSIENT_MARKERS):
        return TransientProviderError(detail=detail)

    if any(marker in text for marker in _DUPLICATE_EMAIL_MARKERS):
        match = _EXISTING_ACCOUNT_RE.search(description) or _EXISTING_ACCOUNT_RE.search(body)
        return ProviderError(
            ProviderErrorKind.CONFLICT,
            http_status=status_code,
            detail=detail,
            existing_account_id=match.group(1) if match else None,
        )

    if status_code in (401, 403) or any(marker in text for marker in _ACCESS_DENIED_MARKERS):
        return ProviderError(ProviderErrorKind.ACCESS_DENIED, http_status=status_code, detail=detail)

    if any(marker in text for marker in _NOT_REQUIRED_MARKERS):
        return ProviderError(ProviderErrorKind.NOT_REQUIRED, http_status=status_code, field=field, detail=detail)

    if any(marker in text for marker in _FORM_LOCKED_MARKERS):
        return ProviderError(ProviderErrorKind.FORM_LOCKED, http_status=status_code, detail=detail)

    if status_code == 404:
        return ProviderError(ProviderErrorKind.NOT_FOUND, http_status=status_code, detail=detail)

    if field:
        return ProviderError(ProviderErrorKind.FIELD, http_status=status_code, field=field, detail=detail)

    return ProviderError(ProviderErrorKind.UNKNOWN, http_status=status_code, detail=detail)


# -----------------------
#  PAYLOAD READERS
# -----------------------
def currently_due(product: Dict[str, Any]) -> List[str]:
    """Outstanding field references; the provider sends either strings or {field_reference: ...}"""
    requirements = product.get("requirements") or {}
    fields = []
    for item in requirements.get("currently_due") or []:
        if isinstance(item, dict):
            ref = item.get("field_reference")
        else:
            ref = item
        if ref:
            fields.append(str(ref))
    return fields


def requirement_errors(product: Dict[str, Any]) -> Dict[str, Any]:
    requirements = product.get("requirements") or {}
    errors = requirements.get("errors") or {}
    return errors if isinstance(errors, dict) else {"errors": errors}


def required_documents(product: Dict[str, Any]) -> List[str]:
    requirements = product.get("requirements") or {}
    return list(requirements.get("documents") or [])


def bank_configured(product: Dict[str, Any]) -> bool:
    settlements = (product.get("config") or {}).get("settlements") or {}
    return bool(settlements.get("bank_account") or settlements.get("account_number"))


def settlement_fields_due(product: Dict[str, Any]) -> bool:
    return any(ref.startswith("settlements.") for ref in currently_due(product))


def hosted_onboarding_url(account: Dict[str, Any]) -> Optional[str]:
    return account.get("activation_url") or account.get("onboarding_url")


def dashboard_onboarding_url(account_id: str) -> str:
    return f"{settings.PROVIDER_DASHBOARD_URL.rstrip('/')}/{account_id}/onboarding"


class ProviderClient:
    """
    Async client for the provider's v2 linked-account endpoints.

    One instance per request; close it with `aclose()` or use it as an
    async context manager.
    """

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        *,
        base_url: Optional[str] = None,
        environment: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_delay: float = 0.8,
    ):
        key_id = key_id or settings.PROVIDER_ACTIVE_KEY_ID
        key_secret = key_secret or settings.PROVIDER_ACTIVE_KEY_SECRET
        self.environment = environment or settings.PROVIDER_ENVIRONMENT
        self.retry_delay = retry_delay
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.PROVIDER_BASE_URL,
            auth=(key_id, key_secret) if key_id and key_secret else None,
            timeout=timeout or settings.PROVIDER_TIMEOUT_SECONDS,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    async def __aenter__(self) -> "ProviderClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, path: str, idempotency_key: Optional[str] = None, **kwargs) -> httpx.Response:
        headers = {IDEMPOTENCY_HEADER: idempotency_key} if idempotency_key else None
        try:
            return await self._client.request(method, path, headers=headers, **kwargs)
        except httpx.TransportError as e:
            log.warning(f"Provider {method} {path} transport failure: {type(e).__name__}")
            raise TransientProviderError(detail=f"{method} {path}: {type(e).__name__}: {e}") from e

    @staticmethod
    def _parse(method: str, path: str, response: httpx.Response) -> Dict[str, Any]:
        if response.is_error:
            error = classify_error(response.status_code, response.text)
            log.warning(f"Provider {method} {path} failed: {error}")
            raise error
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError:
            return {}

    async def _request(self, method: str, path: str, idempotency_key: Optional[str] = None, **kwargs) -> Dict[str, Any]:
        response = await self._send(method, path, idempotency_key, **kwargs)
        return self._parse(method, path, response)

    # Accounts
    async def create_account(self, payload: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        return await self._request("POST", "/v2/accounts", idempotency_key, json=payload)

    async def get_account(self, account_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/v2/accounts/{account_id}")

    async def update_account(self, account_id: str, payload: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        return await self._request("PATCH", f"/v2/accounts/{account_id}", idempotency_key, json=payload)

    # Stakeholders
    async def list_stakeholders(self, account_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/v2/accounts/{account_id}/stakeholders")
        return data.get("items") or []

    async def create_stakeholder(self, account_id: str, payload: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        return await self._request("POST", f"/v2/accounts/{account_id}/stakeholders", idempotency_key, json=payload)

    async def update_stakeholder(
        self, account_id: str, stakeholder_id: str, payload: Dict[str, Any], idempotency_key: str
    ) -> Dict[str, Any]:
        return await self._request(
            "PATCH", f"/v2/accounts/{account_id}/stakeholders/{stakeholder_id}", idempotency_key, json=payload
        )

    # Products
    async def list_products(self, account_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/v2/accounts/{account_id}/products")
        return data.get("items") or []

    async def request_product(self, account_id: str, payload: Dict[str, Any], idempotency_key: str) -> Dict[str, Any]:
        return await self._request("POST", f"/v2/accounts/{account_id}/products", idempotency_key, json=payload)

    async def get_product(self, account_id: str, product_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/v2/accounts/{account_id}/products/{product_id}")

    async def update_product(
        self, account_id: str, product_id: str, payload: Dict[str, Any], idempotency_key: str
    ) -> Dict[str, Any]:
        return await self._request(
            "PATCH", f"/v2/accounts/{account_id}/products/{product_id}", idempotency_key, json=payload
        )

    # Documents
    async def upload_document(
        self,
        account_id: str,
        stakeholder_id: str,
        document_type: str,
        sub_type: str,
        filename: str,
        content_type: str,
        content: bytes,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Multipart upload; a 5xx answer is retried once"""
        path = f"/v2/accounts/{account_id}/stakeholders/{stakeholder_id}/documents"

        async def send() -> httpx.Response:
            return await self._send(
                "POST",
                path,
                idempotency_key,
                data={"document_type": document_type, sub_type: "true"},
                files={"file": (filename, content, content_type)},
            )

        response = await send()
        if response.status_code >= 500:
            log.warning(f"Document upload {document_type} got HTTP {response.status_code}, retrying once")
            await asyncio.sleep(self.retry_delay)
            response = await send()
        return self._parse("POST", path, response)
