from __future__ import annotations

import logging
from typing import Any, Mapping
from urllib.parse import quote

from models.booking import NotificationResult
from services.errors import InvalidResponseError, StorefrontNetworkError, UpstreamHTTPError
from services.storefront_client import StorefrontClient, StorefrontResponse

logger = logging.getLogger(__name__)


def _checked(resp: StorefrontResponse) -> Any:
    if resp.json_error is not None:
        raise InvalidResponseError(f"Invalid JSON response: {resp.json_error}")
    if not resp.ok:
        raise UpstreamHTTPError(resp.error_message(f"HTTP error! status: {resp.status_code}"), resp.status_code)
    return resp.data


class TicketService:
    """Ticket lookups for a cart, and the hold-ticket email once a booking is held in-store."""

    def __init__(self, client: StorefrontClient) -> None:
        self.client = client

    async def get_ticket(self, cart_id: str, ticket_id: str) -> Any:
        path = f"/ticket/cart/{quote(cart_id, safe='')}/{quote(ticket_id, safe='')}"
        resp = await self.client.get(path, request_prefix="ticket")
        return _checked(resp)

    async def get_tickets_by_cart(self, cart_id: str) -> Any:
        resp = await self.client.get(f"/ticket/cart/{quote(cart_id, safe='')}", request_prefix="tickets")
        return _checked(resp)

    async def get_hold_tickets_by_pnr(self, pnr: str) -> Any:
        # hold tickets are filed under the PNR as their cart id
        resp = await self.client.get(f"/ticket/cart/{quote(pnr, safe='')}", request_prefix="hold_tickets")
        return _checked(resp)

    async def send_email_notification(self, pnr: str) -> NotificationResult:
        try:
            resp = await self.client.post("/ticket/hold", {"pnr": pnr}, request_prefix="email_notification")
        except StorefrontNetworkError as exc:
            logger.error("[tickets] email notification for %s failed: %s", pnr, exc)
            return NotificationResult(success=False, message=str(exc))

        data: Mapping[str, Any] = resp.data if isinstance(resp.data, Mapping) else {}
        if not resp.ok:
            message = str(data.get("message") or f"Email notification failed: {resp.status_code}")
            logger.error("[tickets] email notification for %s rejected: %s", pnr, message)
            return NotificationResult(success=False, message=message)

        logger.info("[tickets] email notification sent for %s", pnr)
        return NotificationResult(success=True, message=str(data.get("message") or "Email notification sent successfully"))
