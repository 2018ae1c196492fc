"""Async HTTP client for the HubSpot CRM v3 batch endpoints.

Provides HubSpotClient with the two batch operations the sync engine uses:
- batch_read_contacts: POST /crm/v3/objects/contacts/batch/read, looked up
  by the custom ``contact_id`` property
- batch_create_deals: POST /crm/v3/objects/deals/batch/create

Retries (tenacity) cover only connection failures, where the request never
reached HubSpot. Timeouts and error statuses are not retried: a create that
timed out may still have been applied, and the engine counts it as failed.
"""

from __future__ import annotations

import json
from collections.abc import Sequence
from typing import Any

import httpx
import structlog
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.dealsync.core.errors import CRMRequestError
from src.dealsync.crm.adapter import CRMClient

logger = structlog.get_logger(__name__)

_connect_retry = retry(
    stop=stop_after_attempt(2),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
    retry=retry_if_exception_type(httpx.ConnectError),
    reraise=True,
)


def _error_messages(body: str) -> list[str]:
    """Extract messages from HubSpot's error envelope, if the body is one."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return []
    if not isinstance(data, dict):
        return []
    messages = [err.get("message", "") for err in data.get("errors", []) if isinstance(err, dict)]
    if not messages and data.get("message"):
        messages = [data["message"]]
    return [m for m in messages if m]


class HubSpotClient(CRMClient):
    """HubSpot implementation of CRMClient.

    Args:
        api_key: Private app access token.
        base_url: API root (default: https://api.hubapi.com).
        timeout_seconds: Per-request timeout, kept well below the
            invocation budget so one hung call cannot consume it.
        contact_id_property: Contact property holding the external key.
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.hubapi.com",
        timeout_seconds: float = 20.0,
        contact_id_property: str = "contact_id",
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_seconds
        self._contact_id_property = contact_id_property
        self._headers = {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        """Create a new httpx client with the configured timeout."""
        return httpx.AsyncClient(headers=self._headers, timeout=self._timeout)

    @staticmethod
    def _raise_for_status(response: httpx.Response, operation: str) -> None:
        if response.is_success:
            return
        body = response.text
        messages = _error_messages(body)
        logger.error(
            "hubspot.request_failed",
            operation=operation,
            status_code=response.status_code,
            errors=messages or None,
            body=None if messages else body[:500],
        )
        raise CRMRequestError(response.status_code, messages, body)

    @staticmethod
    def _json_body(response: httpx.Response, operation: str) -> dict[str, Any]:
        """Decode a success body; a non-JSON page (gateway, proxy) is a failed call."""
        try:
            data = response.json()
        except ValueError as exc:
            logger.error(
                "hubspot.invalid_body",
                operation=operation,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise CRMRequestError(response.status_code, ["invalid JSON body"], response.text) from exc
        if not isinstance(data, dict):
            raise CRMRequestError(response.status_code, ["unexpected JSON body"], response.text)
        return data

    @_connect_retry
    async def batch_read_contacts(self, contact_keys: Sequence[str]) -> dict[str, str]:
        """Resolve contact keys to HubSpot contact ids.

        Keys unknown to HubSpot are simply absent from the result (HubSpot
        answers 207 with per-key errors in that case, which is a success).
        """
        if not contact_keys:
            return {}

        payload = {
            "idProperty": self._contact_id_property,
            "properties": [self._contact_id_property],
            "inputs": [{"id": key} for key in contact_keys],
        }
        async with self._client() as client:
            response = await client.post(
                f"{self._base_url}/crm/v3/objects/contacts/batch/read",
                json=payload,
            )
        self._raise_for_status(response, "contacts.batch_read")

        data = self._json_body(response, "contacts.batch_read")
        requested = set(contact_keys)
        found: dict[str, str] = {}
        for contact in data.get("results", []):
            key = (contact.get("properties") or {}).get(self._contact_id_property)
            if key in requested and contact.get("id"):
                found[key] = str(contact["id"])

        logger.debug(
            "hubspot.contacts_read",
            requested=len(contact_keys),
            found=len(found),
        )
        return found

    @_connect_retry
    async def batch_create_deals(self, inputs: Sequence[dict[str, Any]]) -> int:
        """Create deals, returning the number HubSpot reports as created."""
        if not inputs:
            return 0

        async with self._client() as client:
            response = await client.post(
                f"{self._base_url}/crm/v3/objects/deals/batch/create",
                json={"inputs": list(inputs)},
            )
        self._raise_for_status(response, "deals.batch_create")

        data = self._json_body(response, "deals.batch_create")
        created = len(data.get("results", []))
        logger.debug("hubspot.deals_created", submitted=len(inputs), created=created)
        return created

    async def ping(self) -> bool:
        """Cheap authenticated call used by the CLI connectivity check."""
        try:
            async with self._client() as client:
                response = await client.get(
                    f"{self._base_url}/crm/v3/objects/deals",
                    params={"limit": 1},
                )
        except httpx.HTTPError as exc:
            logger.error("hubspot.ping_failed", error=str(exc))
            return False
        if not response.is_success:
            logger.error("hubspot.ping_failed", status_code=response.status_code)
            return False
        return True
