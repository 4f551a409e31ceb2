from __future__ import annotations

import logging
import random
import re
import string
import time
from dataclasses import dataclass
from datetime import date
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from models.booking import BookingResult, ContactInfo, Passenger
from models.session import CartSessionData, PurchaseSessionData
from models.trips import SearchQuery, SegmentInfo
from services.agent_attribution import AgentAttribution
from services.errors import PassengerValidationError, StorefrontNetworkError
from services.segments import MISSING_SEGMENTS_MESSAGE
from services.session_store import CartSessionStore, PurchaseSessionStore
from services.storefront_client import StorefrontClient
from services.trip_mapper import dig, to_number

logger = logging.getLogger(__name__)

DEFAULT_AGE = 25
TICKET_TYPE = "eticket"
CART_MISSING_MESSAGE = "Cart data missing. Please select a trip first."

# ---------------------------------------------------------------------------
# Response extraction
# ---------------------------------------------------------------------------

PNR_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("firestoreCartId",),
    ("firestoreCartID",),
    ("firestorecartId",),
    ("firestorecartID",),
    ("firestore_cart_id",),
    ("invoice", "pnr"),
    ("pnr",),
    ("PNR",),
    ("booking", "pnr"),
)

PRICING_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("pricing",),
    ("data", "pricing"),
    ("invoice",),
    ("data", "invoice"),
    ("confirmation", "invoice"),
    ("data", "confirmation", "invoice"),
)


def extract_pnr(data: Mapping[str, Any]) -> Optional[str]:
    for path in PNR_PATHS:
        value = dig(data, *path)
        if isinstance(value, str) and value:
            return value
    return None


def normalize_likely_cents(amount: float) -> float:
    # integer totals of 1000+ come back in minor units
    if float(amount).is_integer() and abs(amount) >= 1000:
        return round(amount / 100, 2)
    return amount


def extract_final_pricing(data: Mapping[str, Any]) -> Optional[Tuple[float, Optional[str]]]:
    for path in PRICING_PATHS:
        block = dig(data, *path)
        if not isinstance(block, Mapping):
            continue
        total = to_number(block.get("total") if block.get("total") is not None else block.get("amount"))
        if total is None:
            continue
        currency = block.get("currency") if isinstance(block.get("currency"), str) and block.get("currency") else None
        return normalize_likely_cents(total), currency
    return None


# ---------------------------------------------------------------------------
# Passenger shaping
# ---------------------------------------------------------------------------

_ID_TYPE_ALIASES: Dict[str, str] = {
    "passport": "passport",
    "national_id": "national_id",
    "nationalid": "national_id",
    "nat_id": "national_id",
    "id": "national_id",
    "id_card": "id_card",
    "idcard": "id_card",
    "identity_card": "id_card",
    "identitycard": "id_card",
    "drivers_license": "drivers_license",
    "driver_license": "drivers_license",
    "driving_license": "drivers_license",
    "driverslicence": "drivers_license",
}


def normalize_question_key(value: Any) -> str:
    text = re.sub(r"[\s-]+", "_", str(value or "").strip().lower())
    return re.sub(r"[^a-z0-9_]", "", text)


def normalize_id_type(value: Optional[str]) -> str:
    slug = re.sub(r"[^a-z0-9]+", "_", str(value or "").strip().lower()).strip("_")
    return _ID_TYPE_ALIASES.get(slug, slug)


def _dob_date_part(dob: Optional[str]) -> str:
    raw = str(dob or "").strip()
    return raw[:10] if "T" in raw else raw


def age_from_dob(dob: Optional[str], today: date) -> Optional[int]:
    raw = _dob_date_part(dob)
    if not raw:
        return None
    try:
        born = date.fromisoformat(raw[:10])
    except ValueError:
        return None
    age = today.year - born.year
    if (today.month, today.day) < (born.month, born.day):
        age -= 1
    return age


def build_answers(passenger: Passenger, allowed_keys: set) -> List[Dict[str, str]]:
    """Answers the provider asked for; anything outside `allowed_keys` is dropped."""
    answers: Dict[str, str] = {}
    if _dob_date_part(passenger.dob):
        answers["dob"] = _dob_date_part(passenger.dob)
    if passenger.gender and passenger.gender.strip():
        answers["gender"] = passenger.gender.strip()
    id_type = normalize_id_type(passenger.id_type)
    if id_type:
        answers["id_type"] = id_type
    if passenger.id_number:
        answers["id_number"] = str(passenger.id_number)
    if passenger.nationality:
        answers["nationality"] = str(passenger.nationality)

    for raw_key, raw_value in passenger.question_answers.items():
        key = normalize_question_key(raw_key)
        value = str(raw_value if raw_value is not None else "").strip()
        if key and value:
            answers[key] = value

    return [{"question_key": k, "value": v} for k, v in answers.items() if k in allowed_keys]


def build_passenger_entries(
    passengers: Sequence[Passenger],
    segments: Sequence[SegmentInfo],
    allowed_keys: set,
    today: date,
) -> List[Dict[str, Any]]:
    """
    Provider-shaped passenger list. Raises PassengerValidationError when a
    child has no usable date of birth, before anything is sent.
    """
    entries = []
    for index, passenger in enumerate(passengers, start=1):
        age = age_from_dob(passenger.dob, today)
        if passenger.type == "child" and (age is None or age < 0):
            raise PassengerValidationError(
                f"Age is required for child passenger #{index}. Please provide a valid date of birth."
            )
        entries.append(
            {
                "id": index,
                "first_name": passenger.first_name,
                "last_name": passenger.last_name,
                "category": passenger.type or "adult",
                "age": age if age is not None else DEFAULT_AGE,
                "wheelchair": False,
                "discounts": [],
                "phone": "",
                "selected_seats": [{"segment_id": s.id, "seat_id": ""} for s in segments],
                "answers": build_answers(passenger, allowed_keys),
            }
        )
    return entries


def synthesize_purchase_uuid() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"purchase_{int(time.time() * 1000)}_{suffix}"


# ---------------------------------------------------------------------------
# Submitter
# ---------------------------------------------------------------------------


@dataclass
class BookingOutcome:
    result: BookingResult
    cart: Optional[CartSessionData] = None
    purchase: Optional[PurchaseSessionData] = None


class BookingSubmitter:
    """
    Turns traveller details into the provider's booking payload, submits it
    against the open cart and records the purchase identifiers it returns.
    """

    def __init__(
        self,
        client: StorefrontClient,
        cart_store: CartSessionStore,
        purchase_store: PurchaseSessionStore,
        agent: Optional[AgentAttribution] = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.client = client
        self.cart_store = cart_store
        self.purchase_store = purchase_store
        self.agent = agent
        self.today = today

    async def submit(
        self,
        contact_info: ContactInfo,
        passengers: Sequence[Passenger],
        payment_method: str,
        search_query: SearchQuery,
        trip_id: Optional[str] = None,
        cart: Optional[CartSessionData] = None,
        purchase: Optional[PurchaseSessionData] = None,
    ) -> BookingOutcome:
        cart = cart if cart is not None else self.cart_store.load()
        if cart is None or not cart.cart_id or not cart.trip_id:
            logger.error("[booking] no cart session, cannot submit")
            return BookingOutcome(BookingResult(success=False, message=CART_MISSING_MESSAGE))
        if trip_id and trip_id != cart.trip_id:
            logger.info("[booking] using cart trip %s instead of %s", cart.trip_id, trip_id)

        segments = list(cart.segment_info)
        if not segments:
            return BookingOutcome(BookingResult(success=False, message=MISSING_SEGMENTS_MESSAGE), cart)

        allowed = cart.passenger_questions.allowed_keys() if cart.passenger_questions else set()
        entries = build_passenger_entries(passengers, segments, allowed, self.today())

        in_store = (payment_method or "").strip().lower() == "in-store"
        payload: Dict[str, Any] = {"busbudCartId": cart.cart_id, "trip_id": cart.trip_id}
        if cart.return_trip_id:
            payload["returnTripId"] = cart.return_trip_id
        if in_store:
            payload["hold"] = True
        payload.update(
            {
                "origin": search_query.origin,
                "destination": search_query.destination,
                "departure_date": search_query.departure_date,
                "contact_info": contact_info.model_dump(by_alias=True),
                "passengers": entries,
                "ticket_types": {s.id: TICKET_TYPE for s in segments},
            }
        )
        if self.agent:
            payload.update(self.agent.metadata())

        logger.info("[booking] submitting %d passenger(s) on cart %s (hold=%s)", len(entries), cart.cart_id, in_store)
        try:
            resp = await self.client.post(
                "/trips/frontend",
                payload,
                headers={"X-Cart-ID": cart.cart_id, "X-Trip-ID": cart.trip_id},
                request_prefix="booking",
            )
        except StorefrontNetworkError as exc:
            return BookingOutcome(BookingResult(success=False, message=str(exc)), cart)

        if resp.json_error is not None:
            return BookingOutcome(BookingResult(success=False, message=f"Invalid JSON response: {resp.json_error}"), cart)
        data: Mapping[str, Any] = resp.data if isinstance(resp.data, Mapping) else {}

        pnr = extract_pnr(data)
        pricing = extract_final_pricing(data)

        response_cart_id = data.get("cartId") or data.get("cart_id")
        if response_cart_id and str(response_cart_id) != cart.cart_id:
            logger.info("[booking] provider moved cart %s -> %s", cart.cart_id, response_cart_id)
            cart = self.cart_store.save(cart.model_copy(update={"cart_id": str(response_cart_id)}))

        if not resp.ok:
            message = resp.error_message(f"Server error: {resp.status_code}")
            logger.error("[booking] submission failed: %s", message)
            return BookingOutcome(BookingResult(success=False, message=message), cart)

        purchase = self._record_purchase(data, pnr, purchase)

        booking_id = data.get("bookingId")
        result = BookingResult(
            success=True,
            booking_id=str(booking_id) if booking_id not in (None, "") else None,
            pnr=pnr,
            final_total=pricing[0] if pricing else None,
            currency=pricing[1] if pricing else None,
            message=str(data.get("message") or "Booking submitted successfully"),
        )
        logger.info("[booking] booked %s pnr=%s final=%s", result.booking_id, pnr, result.final_total)
        return BookingOutcome(result, cart, purchase)

    def _record_purchase(
        self,
        data: Mapping[str, Any],
        pnr: Optional[str],
        current: Optional[PurchaseSessionData],
    ) -> Optional[PurchaseSessionData]:
        purchase_id = data.get("purchase_id")
        purchase_uuid = data.get("purchase_uuid")
        user_id = data.get("user_id")
        changes: Dict[str, Any] = {"user_id": str(user_id) if user_id is not None else None}
        if pnr:
            changes["pnr"] = pnr

        if purchase_id and purchase_uuid:
            return self.purchase_store.merge(purchase_id=str(purchase_id), purchase_uuid=str(purchase_uuid), **changes)

        booking_id = data.get("bookingId")
        if booking_id:
            fallback_uuid = synthesize_purchase_uuid()
            logger.warning(
                "[booking] no purchase identifiers in response, falling back to booking %s / %s",
                booking_id,
                fallback_uuid,
            )
            return self.purchase_store.merge(purchase_id=str(booking_id), purchase_uuid=fallback_uuid, **changes)

        logger.error("[booking] response has neither purchase identifiers nor a bookingId; purchase session left untouched")
        return current if current is not None else self.purchase_store.load()
