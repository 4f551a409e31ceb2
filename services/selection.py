from __future__ import annotations

import logging
import re
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from pydantic import ValidationError

from models.booking import TripSelectionResult
from models.session import CartSessionData, PassengerQuestions
from models.trips import DEFAULT_CURRENCY, UNKNOWN_DESTINATION, UNKNOWN_ORIGIN, BusRoute, SearchQuery, SegmentInfo
from services.agent_attribution import AgentAttribution
from services.errors import InvalidTripDataError, StorefrontNetworkError
from services.segments import extract_segment_info
from services.session_store import CartSessionStore
from services.storefront_client import StorefrontClient
from services.trip_mapper import as_identifier, dig
from tools.pricing import compute_quoted_total, quoted_currency

logger = logging.getLogger(__name__)

# 3-4-4-4-(5..7) alphanumeric groups, dashes optional
CART_ID_PATTERN = re.compile(r"^[A-Za-z0-9]{3}-?[A-Za-z0-9]{4}-?[A-Za-z0-9]{4}-?[A-Za-z0-9]{4}-?[A-Za-z0-9]{5,7}$")

INVALID_TRIP_MESSAGE = "Invalid trip data. Please select a different trip."
MISSING_SEARCH_MESSAGE = "Missing search information. Please search for trips again."
MISSING_CART_MESSAGE = "Missing busbudCartId or tripId in response"

# (response, selected trip) -> candidate trip id
TripIdExtractor = Callable[[Mapping[str, Any], BusRoute], Any]

TRIP_ID_EXTRACTORS: Tuple[TripIdExtractor, ...] = (
    lambda data, trip: dig(data, "trip", "id"),
    lambda data, trip: data.get("tripId"),
    lambda data, trip: data.get("trip_id"),
    lambda data, trip: trip.trip_id if trip.trip_id != "unknown" else None,
    lambda data, trip: trip.id if trip.id != "unknown" else None,
)


def validate_cart_id(value: Any) -> Optional[str]:
    """The trimmed provider cart id, or None if it does not look like one."""
    if value is None:
        return None
    cleaned = str(value).strip()
    return cleaned if CART_ID_PATTERN.match(cleaned) else None


def extract_trip_id(data: Mapping[str, Any], trip: BusRoute) -> Optional[str]:
    for extract in TRIP_ID_EXTRACTORS:
        found = as_identifier(extract(data, trip))
        if found:
            return found
    return None


def segment_payload(segments: List[SegmentInfo]) -> List[Dict[str, Any]]:
    return [{"id": s.id, "isLegacy": s.is_legacy} for s in segments]


def passengers_payload(query: SearchQuery) -> Dict[str, Any]:
    pax = query.passengers
    return {
        "adults": pax.adults,
        "children": pax.children,
        "childrenAges": pax.normalized_children_ages(),
        "seniors": pax.seniors,
        "students": pax.students,
    }


def _passenger_questions(data: Mapping[str, Any]) -> Optional[PassengerQuestions]:
    raw = data.get("passengerQuestions")
    if not isinstance(raw, Mapping):
        return None
    try:
        return PassengerQuestions.model_validate(raw)
    except ValidationError:
        logger.warning("[select] ignoring malformed passengerQuestions: %s", raw)
        return None


class TripSelectionService:
    """
    Reserves the chosen trip (and optional return trip) in the provider cart
    and opens the cart session that the rest of the flow books against.
    """

    def __init__(
        self,
        client: StorefrontClient,
        cart_store: CartSessionStore,
        agent: Optional[AgentAttribution] = None,
    ) -> None:
        self.client = client
        self.cart_store = cart_store
        self.agent = agent

    def build_payload(
        self,
        trip: BusRoute,
        query: SearchQuery,
        segments: List[SegmentInfo],
        return_trip_id: Optional[str],
        existing_cart_id: Optional[str],
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"tripId": trip.trip_id if trip.trip_id != "unknown" else trip.id}
        if return_trip_id:
            payload["returnTripId"] = return_trip_id
        if existing_cart_id:
            payload["busbudCartId"] = existing_cart_id
        payload.update(
            {
                "origin": trip.origin,
                "destination": trip.destination,
                "x-departure": query.departure_date,
                "operator": trip.bus_company or trip.operator,
                "price": trip.price,
                "currency": trip.currency or DEFAULT_CURRENCY,
                "departureTime": trip.departure_time,
                "arrivalTime": trip.arrival_time,
                "duration": trip.duration,
                "segments": segment_payload(segments),
            }
        )
        if query.search_id:
            payload["searchId"] = query.search_id
        payload.update(
            {
                "search_origin": query.origin,
                "search_destination": query.destination,
                "passengers": passengers_payload(query),
                "segment_ids": [s.id for s in segments],
                "segment_info": segment_payload(segments),
                "timestamp": int(time.time() * 1000),
            }
        )
        if self.agent:
            payload.update(self.agent.metadata())
        return payload

    async def select(
        self,
        trip: BusRoute,
        search_query: SearchQuery,
        return_trip_id: Optional[str] = None,
        return_trip: Optional[BusRoute] = None,
        force_new_cart: bool = False,
        cart: Optional[CartSessionData] = None,
    ) -> Tuple[TripSelectionResult, Optional[CartSessionData]]:
        """
        Returns the selection result and, on success, the new cart session
        (already persisted). `cart` is the flow's current cart; when omitted
        it is read from the cart store.
        """
        try:
            segments = extract_segment_info(trip)
            if return_trip is not None:
                segments = segments + extract_segment_info(return_trip)
        except InvalidTripDataError as exc:
            logger.error("[select] %s", exc)
            return TripSelectionResult(success=False, message=str(exc)), None

        if trip.origin in ("", UNKNOWN_ORIGIN) or trip.destination in ("", UNKNOWN_DESTINATION):
            return TripSelectionResult(success=False, message=INVALID_TRIP_MESSAGE), None
        if not (search_query.origin and search_query.destination and search_query.departure_date):
            return TripSelectionResult(success=False, message=MISSING_SEARCH_MESSAGE), None

        current = cart if cart is not None else self.cart_store.load()
        existing_cart_id = current.cart_id if current and not force_new_cart else None
        payload = self.build_payload(trip, search_query, segments, return_trip_id, existing_cart_id)
        logger.info("[select] reserving trip %s (cart reuse: %s)", payload["tripId"], bool(existing_cart_id))

        try:
            resp = await self.client.post("/trips/select", payload, request_prefix="select")
        except StorefrontNetworkError as exc:
            return TripSelectionResult(success=False, message=str(exc)), None

        data = resp.data if isinstance(resp.data, Mapping) else {}
        if not resp.ok:
            message = resp.error_message(f"HTTP error! status: {resp.status_code}")
            logger.error("[select] gateway rejected selection: %s", message)
            return TripSelectionResult(success=False, message=message), None

        cart_id = validate_cart_id(data.get("busbudCartId"))
        if data.get("busbudCartId") and not cart_id:
            logger.warning("[select] busbudCartId has an unexpected format: %r", data.get("busbudCartId"))
        trip_id = extract_trip_id(data, trip)
        if not cart_id or not trip_id:
            logger.error("[select] missing cart id (%s) or trip id (%s)", cart_id, trip_id)
            return TripSelectionResult(success=False, message=MISSING_CART_MESSAGE), None

        new_cart = self.cart_store.save(
            CartSessionData(
                cart_id=cart_id,
                trip_id=trip_id,
                return_trip_id=return_trip_id,
                segment_info=segments,
                passenger_questions=_passenger_questions(data),
                quoted_total=compute_quoted_total(trip, return_trip, bool(return_trip_id)),
                quoted_currency=quoted_currency(trip, return_trip),
            )
        )
        logger.info("[select] cart %s holds trip %s, quoted %.2f %s", cart_id, trip_id, new_cart.quoted_total, new_cart.quoted_currency)

        result = TripSelectionResult(
            success=True,
            cart_id=cart_id,
            trip_id=trip_id,
            segment_info=segments,
            message=str(data.get("message") or "Trip selected successfully"),
        )
        return result, new_cart
