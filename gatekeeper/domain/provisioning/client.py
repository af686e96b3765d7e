from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Literal, Optional, Sequence

import aiohttp

from gatekeeper.config import ProvisioningConfig
from gatekeeper.core.errors import UpstreamError
from gatekeeper.domain.plans import Limits

logger = logging.getLogger(__name__)

RemoteStatus = Literal["ACTIVE", "DISABLED"]


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class ProvisioningClient:
    """Single-attempt calls against the access panel; any failure is an UpstreamError."""

    def __init__(self, cfg: ProvisioningConfig) -> None:
        self.cfg = cfg

    async def create(self, account_id: int, limits: Limits, *, expire_at: datetime) -> str:
        payload = {
            "username": f"acc_{account_id}",
            "telegramId": account_id,
            "status": "DISABLED",
            "hwidDeviceLimit": limits.device_limit,
            "trafficLimitBytes": limits.traffic_limit_bytes,
            "expireAt": _iso(expire_at),
        }
        data = await self._request("POST", "/api/users", payload)
        body = data.get("response") if isinstance(data.get("response"), dict) else data
        external_key = body.get("uuid") if isinstance(body, dict) else None
        if not external_key:
            raise UpstreamError(f"panel create for account {account_id} returned no uuid")
        return str(external_key)

    async def update(
        self,
        external_key: str,
        *,
        status: RemoteStatus,
        limits: Limits,
        expire_at: datetime,
        tag: str,
        squads: Sequence[str],
    ) -> None:
        payload = {
            "uuid": external_key,
            "status": status,
            "hwidDeviceLimit": limits.device_limit,
            "trafficLimitBytes": limits.traffic_limit_bytes,
            "expireAt": _iso(expire_at),
            "tag": tag,
            "activeInternalSquads": list(squads),
        }
        await self._request("PATCH", "/api/users", payload)

    async def revoke(self, external_key: str) -> None:
        await self._request("POST", f"/api/users/{external_key}/actions/disable", None)

    async def _request(self, method: str, path: str, payload: Optional[dict[str, Any]]) -> dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self.cfg.request_timeout_sec)
        headers = {
            "Authorization": f"Bearer {self.cfg.token}",
            "Accept": "application/json",
        }
        url = f"{self.cfg.base_url.rstrip('/')}{path}"
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.request(method, url, json=payload, headers=headers) as resp:
                    text = await resp.text()
                    if not 200 <= resp.status < 300:
                        logger.warning("panel %s %s failed with status %s", method, path, resp.status)
                        raise UpstreamError(
                            f"panel {method} {path} failed: {resp.status} {text[:200]}",
                            status=resp.status,
                        )
        except asyncio.TimeoutError as exc:
            logger.warning("panel %s %s timed out", method, path)
            raise UpstreamError(f"panel {method} {path} timed out") from exc
        except aiohttp.ClientError as exc:
            logger.warning("panel %s %s transport error: %s", method, path, exc)
            raise UpstreamError(f"panel {method} {path} transport error: {exc}") from exc

        if not text.strip():
            return {}
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise UpstreamError(f"panel {method} {path} returned invalid JSON") from exc
        return data if isinstance(data, dict) else {}


__all__ = ["ProvisioningClient", "RemoteStatus"]
