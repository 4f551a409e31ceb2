from __future__ import annotations

import logging
from typing import Any, List, Mapping, Optional, Tuple

from models.booking import BookingResult, ConfirmationResult, FareConflict, PriceDrift, PurchaseStatus
from models.session import CartSessionData, PurchaseSessionData
from models.trips import DEFAULT_CURRENCY, BusRoute
from services.errors import StorefrontNetworkError
from services.session_store import CartSessionStore, PurchaseSessionStore
from services.storefront_client import StorefrontClient
from services.trip_mapper import dig, to_number
from tools.pricing import (
    FARE_CHANGED_FALLBACK_MESSAGE,
    build_price_change_message,
    check_price_drift,
    compute_quoted_total,
    rescale_booking_prices,
)

logger = logging.getLogger(__name__)

NO_REFERENCE_MESSAGE = "No booking reference found. Please restart the booking process."


def _ticket_numbers(data: Mapping[str, Any]) -> List[str]:
    numbers = data.get("ticketNumbers")
    if not isinstance(numbers, list):
        logger.warning("[purchase] no ticket numbers in confirmation response")
        return []
    return [str(n) for n in numbers if n is not None]


class PurchaseConfirmer:
    """
    Confirms the purchase for the current cart. Identifiers come from the
    flow's sessions, so the call looks the same from any stage that reaches it.

    A 409 means the fare moved after the quote; it is never retried here.
    """

    def __init__(
        self,
        client: StorefrontClient,
        cart_store: CartSessionStore,
        purchase_store: PurchaseSessionStore,
    ) -> None:
        self.client = client
        self.cart_store = cart_store
        self.purchase_store = purchase_store

    async def confirm(
        self,
        cart: Optional[CartSessionData] = None,
        purchase: Optional[PurchaseSessionData] = None,
    ) -> Tuple[ConfirmationResult, Optional[PurchaseSessionData]]:
        cart = cart if cart is not None else self.cart_store.load()
        purchase = purchase if purchase is not None else self.purchase_store.load()
        if cart is None or not (cart.cart_id or cart.trip_id):
            logger.error("[purchase] no cart or booking reference")
            return ConfirmationResult(success=False, message=NO_REFERENCE_MESSAGE), purchase

        ids = purchase or PurchaseSessionData()
        if not ids.has_identifiers():
            logger.error("[purchase] purchase identifiers missing; confirming anyway")

        try:
            resp = await self.client.post(
                "/purchase",
                {"purchaseId": ids.purchase_id, "purchaseUuid": ids.purchase_uuid},
                headers={"X-Cart-ID": cart.cart_id or "", "X-Booking-ID": cart.trip_id or ""},
                request_prefix="purchase_confirm",
            )
        except StorefrontNetworkError as exc:
            return ConfirmationResult(success=False, message=str(exc)), purchase

        if resp.json_error is not None or not isinstance(resp.data, Mapping):
            detail = resp.json_error or "Response parsing failed"
            return ConfirmationResult(success=False, message=f"Invalid JSON response: {detail}"), purchase
        data = resp.data

        if not resp.ok:
            message = resp.error_message(f"Purchase confirmation failed: {resp.status_code}")
            logger.error("[purchase] confirmation failed (%s): %s", resp.status_code, message)
            return ConfirmationResult(success=False, status_code=resp.status_code, message=message), purchase

        if not data.get("success"):
            message = str(data.get("message") or "Purchase confirmation failed")
            return ConfirmationResult(success=False, status_code=resp.status_code, message=message), purchase

        refreshed_id = data.get("purchase_id")
        if refreshed_id and str(refreshed_id) != ids.purchase_id:
            changes = {"purchase_id": str(refreshed_id)}
            if data.get("purchase_uuid"):
                changes["purchase_uuid"] = str(data["purchase_uuid"])
            if data.get("user_id") is not None:
                changes["user_id"] = str(data["user_id"])
            logger.info("[purchase] provider refreshed purchase id %s -> %s", ids.purchase_id, refreshed_id)
            purchase = self.purchase_store.merge(**changes)
            ids = purchase

        result = ConfirmationResult(
            success=True,
            status_code=resp.status_code,
            purchase_id=ids.purchase_id,
            purchase_uuid=ids.purchase_uuid,
            ticket_numbers=_ticket_numbers(data),
            message=str(data.get("message") or "Purchase confirmed successfully"),
        )
        logger.info("[purchase] confirmed %s with %d ticket(s)", result.purchase_id, len(result.ticket_numbers))
        return result, purchase

    async def get_purchase_status(self, purchase_id: str, purchase_uuid: Optional[str] = None) -> PurchaseStatus:
        params = {"purchaseUuid": purchase_uuid} if purchase_uuid else None
        try:
            resp = await self.client.get(f"/purchase/{purchase_id}/status", params=params, request_prefix="purchase_status")
        except StorefrontNetworkError as exc:
            return PurchaseStatus(success=False, message=str(exc))

        data = resp.data if isinstance(resp.data, Mapping) else {}
        if not resp.ok:
            return PurchaseStatus(
                success=False,
                status_code=resp.status_code,
                message=resp.error_message(f"Failed to fetch purchase status: {resp.status_code}"),
            )

        total = to_number(dig(data, "purchase", "total"))
        if total is None:
            cents = to_number(dig(data, "purchase", "totalPrice"))
            total = cents / 100 if cents is not None else None
        currency = dig(data, "purchase", "currency")
        return PurchaseStatus(
            success=True,
            status_code=resp.status_code,
            total=total,
            currency=currency if isinstance(currency, str) else None,
        )

    async def describe_fare_conflict(
        self,
        cart: Optional[CartSessionData],
        purchase: Optional[PurchaseSessionData],
        fallback_currency: Optional[str] = None,
    ) -> FareConflict:
        """
        Build the restart notice for a 409: the authoritative total if the
        provider will tell us, a generic notice otherwise.
        """
        quoted = cart.quoted_total if cart else None
        status: Optional[PurchaseStatus] = None
        if purchase is not None and purchase.purchase_id:
            status = await self.get_purchase_status(purchase.purchase_id, purchase.purchase_uuid)

        updated = status.total if status is not None and status.success else None
        currency = (
            (status.currency if status is not None else None)
            or (cart.quoted_currency if cart else None)
            or fallback_currency
            or DEFAULT_CURRENCY
        )
        if quoted is not None and updated is not None:
            message = build_price_change_message(quoted, updated, currency)
        else:
            message = FARE_CHANGED_FALLBACK_MESSAGE
        logger.warning("[purchase] fare conflict: quoted=%s updated=%s %s", quoted, updated, currency)
        return FareConflict(quoted=quoted, updated_total=updated, currency=currency, message=message)


class PriceDriftGate:
    """
    Sits between booking submission and purchase confirmation. A final total
    that differs from the quote by a cent or more blocks the flow until the
    traveller acknowledges it.
    """

    def __init__(self, cart_store: CartSessionStore) -> None:
        self.cart_store = cart_store

    @staticmethod
    def quoted_total(
        cart: Optional[CartSessionData],
        outbound: Optional[BusRoute],
        inbound: Optional[BusRoute] = None,
    ) -> Optional[float]:
        if cart is not None and cart.quoted_total is not None:
            return cart.quoted_total
        if outbound is None:
            return None
        return compute_quoted_total(outbound, inbound)

    def evaluate(
        self,
        booking: BookingResult,
        cart: Optional[CartSessionData],
        outbound: Optional[BusRoute],
        inbound: Optional[BusRoute] = None,
    ) -> Optional[PriceDrift]:
        quoted = self.quoted_total(cart, outbound, inbound)
        currency = (
            booking.currency
            or (cart.quoted_currency if cart else None)
            or (outbound.currency if outbound else None)
            or DEFAULT_CURRENCY
        )
        drift = check_price_drift(quoted, booking.final_total, currency)
        if drift is None:
            logger.info("[drift] no change: quoted=%s final=%s", quoted, booking.final_total)
        else:
            logger.info("[drift] fare %s by %.2f %s, awaiting acknowledgement", drift.direction, abs(drift.delta), currency)
        return drift

    def acknowledge(
        self,
        drift: PriceDrift,
        outbound: Optional[BusRoute],
        inbound: Optional[BusRoute],
        cart: Optional[CartSessionData],
    ) -> Tuple[Optional[BusRoute], Optional[BusRoute], Optional[CartSessionData]]:
        """Rescale the held trips to the final total and re-quote the cart."""
        if outbound is not None:
            outbound, inbound = rescale_booking_prices(outbound, inbound, drift.final_total, drift.currency)
        if cart is not None:
            cart = self.cart_store.save(
                cart.model_copy(update={"quoted_total": drift.final_total, "quoted_currency": drift.currency})
            )
        else:
            logger.warning("[drift] acknowledged without a cart session; nothing re-quoted")
        return outbound, inbound, cart
