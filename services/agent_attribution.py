from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from services.session_store import AgentHeaderStore

logger = logging.getLogger(__name__)

AGENT_HEADER_KEYS = ("x-agent-mode", "x-agent-email", "x-agent-id", "x-agent-name")

AGENT_IDENTITY_PATH = "/auth/agent/me"
USER_IDENTITY_PATH = "/auth/me"


def normalize_agent_headers(headers: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Keep only the agent headers, lower-cased, dropping empty values."""
    if not headers:
        return {}
    out: Dict[str, str] = {}
    for key, value in headers.items():
        if value is None or str(value) == "":
            continue
        k = str(key).lower()
        if k in AGENT_HEADER_KEYS:
            out[k] = str(value)
    return out


class AgentAttribution:
    """
    Stamps outgoing gateway requests with the acting agent's identity.

    Installed as an httpx request event hook. When agent mode is active but
    the identity is not known yet, the first request triggers one identity
    lookup; concurrent requests wait on that same lookup.
    """

    def __init__(
        self,
        store: AgentHeaderStore,
        agent_identity_path: str = AGENT_IDENTITY_PATH,
        user_identity_path: str = USER_IDENTITY_PATH,
    ) -> None:
        self.store = store
        self.agent_identity_path = agent_identity_path
        self.user_identity_path = user_identity_path

        self._client: Optional[httpx.AsyncClient] = None
        self._bootstrap_task: Optional[asyncio.Task] = None

        self._headers = normalize_agent_headers(store.load_headers())
        self._active = self._headers.get("x-agent-mode") == "true" or store.session_started()
        if self._active:
            store.mark_started(True)

    # -----------------------------------------------------------------------
    # State
    # -----------------------------------------------------------------------

    @property
    def active(self) -> bool:
        return self._active

    def session_started(self) -> bool:
        return self._active or self.store.session_started()

    def set_active(self, active: bool) -> None:
        self._active = bool(active)
        self.store.mark_started(self._active)
        if not self._active:
            # stale identity must never leak into customer requests
            self._headers = {}
            self.store.clear_headers()

    def set_headers(self, headers: Optional[Mapping[str, Any]]) -> None:
        self._headers = normalize_agent_headers(headers)
        if self._headers.get("x-agent-mode") == "true":
            self.store.save_headers(self._headers)
        else:
            self.store.clear_headers()

    def headers(self) -> Dict[str, str]:
        return dict(self._headers) if self._active else {}

    def metadata(self) -> Dict[str, str]:
        """Body/query fallback for gateways that strip custom headers."""
        if not self._active or self._headers.get("x-agent-mode") != "true":
            return {}
        meta = {"agentMode": "true"}
        for field, key in (("agentEmail", "x-agent-email"), ("agentId", "x-agent-id"), ("agentName", "x-agent-name")):
            if self._headers.get(key):
                meta[field] = self._headers[key]
        return meta

    def _has_identity(self) -> bool:
        h = self._headers
        return h.get("x-agent-mode") == "true" and bool(
            h.get("x-agent-email") or h.get("x-agent-id") or h.get("x-agent-name")
        )

    # -----------------------------------------------------------------------
    # Transport hook
    # -----------------------------------------------------------------------

    def install(self, client: httpx.AsyncClient) -> None:
        """Register the request hook on `client`. Safe to call repeatedly."""
        self._client = client
        hooks = client.event_hooks
        request_hooks = list(hooks.get("request", []))
        if self.on_request in request_hooks:
            return
        request_hooks.append(self.on_request)
        hooks["request"] = request_hooks
        client.event_hooks = hooks

    def is_identity_url(self, url: str) -> bool:
        return url.rstrip("/").endswith((self.agent_identity_path, self.user_identity_path))

    async def on_request(self, request: httpx.Request) -> None:
        if self.is_identity_url(request.url.path):
            return
        if not self.session_started():
            return
        await self.ensure_bootstrapped()
        for key, value in self.headers().items():
            request.headers[key] = value

    async def ensure_bootstrapped(self) -> None:
        if not self.session_started() or self._has_identity():
            return
        if self._bootstrap_task is None:
            self._bootstrap_task = asyncio.ensure_future(self._bootstrap())
        task = self._bootstrap_task
        try:
            await asyncio.shield(task)
        finally:
            if task.done() and self._bootstrap_task is task:
                self._bootstrap_task = None

    async def _bootstrap(self) -> None:
        if self._client is None:
            logger.warning("[agent] identity bootstrap requested before install()")
            return
        path = self.agent_identity_path if self.session_started() else self.user_identity_path
        try:
            resp = await self._client.get(path)
        except httpx.HTTPError as exc:
            logger.warning("[agent] identity lookup failed: %r", exc)
            return
        if not resp.is_success:
            logger.info("[agent] identity lookup returned %s", resp.status_code)
            return
        try:
            user = resp.json()
        except ValueError:
            return
        if not isinstance(user, dict) or str(user.get("role") or "").lower() != "agent":
            return

        first = user.get("firstName") or user.get("first_name") or ""
        last = user.get("lastName") or user.get("last_name") or ""
        name = user.get("name") or user.get("displayName") or " ".join(p for p in (first, last) if p)

        headers = {"x-agent-mode": "true"}
        if isinstance(user.get("email"), str) and user["email"]:
            headers["x-agent-email"] = user["email"]
        if user.get("id") not in (None, ""):
            headers["x-agent-id"] = str(user["id"])
        if name:
            headers["x-agent-name"] = name

        # mode may have been switched off while the lookup was in flight
        if self._active:
            self.set_headers(headers)
            logger.info("[agent] attribution bootstrapped for %s", headers.get("x-agent-email", "agent"))
