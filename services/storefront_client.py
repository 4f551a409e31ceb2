from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import httpx

from services.errors import StorefrontNetworkError

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:5000/api"
DEFAULT_TIMEOUT_SECONDS = 20.0


def new_request_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}"


@dataclass
class StorefrontResponse:
    status_code: int
    data: Any = None
    json_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def field(self, name: str) -> Any:
        return self.data.get(name) if isinstance(self.data, dict) else None

    def error_message(self, default: str) -> str:
        """Server-provided `message`/`error` text, else `default`."""
        message = self.field("message") or self.field("error")
        if isinstance(message, dict):
            message = message.get("message")
        return str(message) if message else default


class StorefrontClient:
    """
    Thin async wrapper around the storefront gateway.

    - One httpx.AsyncClient reused for every call
    - Every request is tagged with an X-Request-ID
    - Bodies are decoded leniently; callers decide what a bad body means
    - Transport failures surface as StorefrontNetworkError
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url or os.getenv("STOREFRONT_API_BASE_URL", DEFAULT_BASE_URL)
        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http

    async def close(self) -> None:
        await self._http.aclose()

    async def request(
        self,
        method: str,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        headers: Optional[Mapping[str, str]] = None,
        request_prefix: str = "api",
    ) -> StorefrontResponse:
        merged = {"X-Request-ID": new_request_id(request_prefix)}
        merged.update(headers or {})

        logger.debug("[api] %s %s params=%s body=%s", method, path, params, json)
        try:
            resp = await self._http.request(method, path, params=params, json=json, headers=merged)
        except httpx.TransportError as exc:
            logger.error("[api] %s %s failed: %r", method, path, exc)
            raise StorefrontNetworkError(f"Network error: {exc}") from exc

        data: Any = None
        json_error: Optional[str] = None
        if resp.content:
            try:
                data = resp.json()
            except ValueError as exc:
                json_error = str(exc)
        logger.debug("[api] %s %s -> %s %s", method, path, resp.status_code, data)
        return StorefrontResponse(status_code=resp.status_code, data=data, json_error=json_error)

    async def get(self, path: str, params: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> StorefrontResponse:
        return await self.request("GET", path, params=params, **kwargs)

    async def post(self, path: str, payload: Any = None, **kwargs: Any) -> StorefrontResponse:
        return await self.request("POST", path, json=payload, **kwargs)

    async def check_health(self) -> Dict[str, Any]:
        """
        Probe the gateway's /health. Never raises: an unreachable gateway is
        reported as status "unreachable".
        """
        try:
            resp = await self.get("/health", request_prefix="health")
        except StorefrontNetworkError as exc:
            return {"status": "unreachable", "detail": str(exc)}
        return {
            "status": "ok" if resp.ok else "error",
            "status_code": resp.status_code,
            "body": resp.data,
        }
