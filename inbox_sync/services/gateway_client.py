from __future__ import annotations

from typing import Any

import httpx
import structlog

from inbox_sync.core.errors import TransientFetchError
from inbox_sync.core.sync_config import SyncConfig

logger = structlog.get_logger(__name__)

_TRANSIENT_STATUS = {408, 425, 429}


class GatewayClientError(Exception):
    pass


def _extract_records(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        messages = payload.get("messages")
        if isinstance(messages, dict):
            items = messages.get("records")
        elif isinstance(messages, list):
            items = messages
        else:
            items = payload.get("records")
    else:
        return []
    if not isinstance(items, list):
        return []
    return [item for item in items if isinstance(item, dict)]


class EvolutionGatewayClient:
    """Thin REST client for the Evolution WhatsApp gateway."""

    def __init__(
        self,
        config: SyncConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = config.gateway_base_url.rstrip("/")
        self.api_key = config.gateway_api_key
        self.timeout = config.fetch_timeout_sec
        self.headers = {"apikey": self.api_key, "Content-Type": "application/json"}
        self._transport = transport

    def _validate(self) -> None:
        if not self.base_url:
            raise GatewayClientError("EVOLUTION_BASE_URL is not configured")
        if not self.api_key:
            raise GatewayClientError("EVOLUTION_API_KEY is not configured")

    async def _request(
        self,
        method: str,
        path: str,
        json_body: dict | None = None,
        page_offset: int | None = None,
    ) -> Any:
        self._validate()
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    method, url, headers=self.headers, json=json_body
                )
        except httpx.TimeoutException as exc:
            raise TransientFetchError(
                f"gateway timeout on {path}", page_offset=page_offset
            ) from exc
        except httpx.HTTPError as exc:
            raise TransientFetchError(
                f"gateway request failed on {path}: {exc}", page_offset=page_offset
            ) from exc

        if response.status_code >= 500 or response.status_code in _TRANSIENT_STATUS:
            raise TransientFetchError(
                f"gateway returned {response.status_code} on {path}",
                page_offset=page_offset,
            )
        if response.status_code >= 400:
            logger.warning(
                "gateway_request_rejected",
                path=path,
                status_code=response.status_code,
                body=response.text[:500],
            )
            raise GatewayClientError(
                f"gateway returned {response.status_code} on {path}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise GatewayClientError(f"gateway returned non-JSON body on {path}") from exc

    async def fetch_messages(
        self,
        instance_name: str,
        page_limit: int,
        page_offset: int,
    ) -> list[dict[str, Any]]:
        body = {"where": {}, "limit": page_limit, "offset": page_offset}
        payload = await self._request(
            "POST",
            f"/chat/findMessages/{instance_name}",
            json_body=body,
            page_offset=page_offset,
        )
        return _extract_records(payload)

    async def fetch_instances(self) -> list[dict[str, Any]]:
        payload = await self._request("GET", "/instance/fetchInstances")
        if isinstance(payload, dict):
            payload = payload.get("instances") or payload.get("data") or []
        if not isinstance(payload, list):
            return []
        instances: list[dict[str, Any]] = []
        for item in payload:
            if not isinstance(item, dict):
                continue
            # older gateway versions nest the descriptor under "instance"
            inner = item.get("instance")
            instances.append(inner if isinstance(inner, dict) else item)
        return instances
