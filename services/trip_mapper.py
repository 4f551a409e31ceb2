from __future__ import annotations

import base64
import binascii
import json
import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from models.trips import (
    DEFAULT_CURRENCY,
    DEFAULT_DEEPLINK,
    NOT_AVAILABLE,
    ROUTE_VERSION,
    UNKNOWN_DESTINATION,
    UNKNOWN_ID,
    UNKNOWN_OPERATOR,
    UNKNOWN_ORIGIN,
    BusRoute,
    MappedLeg,
)

logger = logging.getLogger(__name__)

Extractor = Callable[[Mapping[str, Any]], Any]

_TIME_ONLY = re.compile(r"^\s*(\d{1,2}):(\d{2})(?::\d{2})?\s*$")
_MS_THRESHOLD = 1e12


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------


def dig(data: Any, *path: Any) -> Any:
    """Walk nested dicts/lists; any missing step yields None."""
    for step in path:
        if isinstance(step, int):
            if not isinstance(data, list) or not -len(data) <= step < len(data):
                return None
            data = data[step]
        elif isinstance(data, Mapping):
            data = data.get(step)
        else:
            return None
    return data


def as_identifier(value: Any) -> Optional[str]:
    """Strings and ints count as ids; blanks, bools and containers do not."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (str, int)):
        text = str(value).strip()
        return text or None
    return None


def first_match(extractors: Sequence[Extractor], data: Mapping[str, Any]) -> Optional[str]:
    """Run extractors in priority order; first usable identifier wins."""
    for extract in extractors:
        found = as_identifier(extract(data))
        if found:
            return found
    return None


def to_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, str) and value.strip():
        try:
            number = float(value.strip())
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def decode_trip_id(trip_id: Any) -> Optional[Dict[str, Any]]:
    """
    Provider trip ids are often base64-encoded JSON. Returns the decoded
    object, or None when the id is anything else.
    """
    if not isinstance(trip_id, str) or not trip_id:
        return None
    padded = trip_id + "=" * (-len(trip_id) % 4)
    for decoder in (base64.b64decode, base64.urlsafe_b64decode):
        try:
            decoded = json.loads(decoder(padded).decode("utf-8"))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            continue
        if isinstance(decoded, dict):
            return decoded
    return None


def _search_id_from_encoded_id(trip: Mapping[str, Any]) -> Any:
    decoded = decode_trip_id(trip.get("id"))
    if not decoded:
        return None
    return decoded.get("searchId") or decoded.get("search_id") or decoded.get("id")


# ---------------------------------------------------------------------------
# Search id recovery
# ---------------------------------------------------------------------------

TRIP_SEARCH_ID_EXTRACTORS: Tuple[Extractor, ...] = (
    lambda t: t.get("search_id"),
    lambda t: t.get("searchId"),
    _search_id_from_encoded_id,
)

RESPONSE_SEARCH_ID_EXTRACTORS: Tuple[Extractor, ...] = (
    lambda r: r.get("searchId"),
    lambda r: r.get("search_id"),
    lambda r: r.get("id"),
    lambda r: r.get("searchContext"),
    lambda r: r.get("contextId"),
    lambda r: dig(r, "metadata", "searchId"),
    lambda r: dig(r, "metadata", "search_id"),
    lambda r: dig(r, "metadata", "id"),
)


def recover_trip_search_id(trip: Mapping[str, Any]) -> Optional[str]:
    return first_match(TRIP_SEARCH_ID_EXTRACTORS, trip)


def recover_response_search_id(body: Mapping[str, Any]) -> Optional[str]:
    """Root fields first, then whatever the first trip knows about itself."""
    found = first_match(RESPONSE_SEARCH_ID_EXTRACTORS, body)
    if found:
        return found
    trips = body.get("trips")
    if isinstance(trips, list) and trips and isinstance(trips[0], Mapping):
        return recover_trip_search_id(trips[0])
    return None


# ---------------------------------------------------------------------------
# Times
# ---------------------------------------------------------------------------


def _parse_instant(value: Any) -> Optional[datetime]:
    """
    Full datetimes only. ISO strings keep their wall-clock time; Unix
    seconds/milliseconds are read as UTC. Time-only strings return None.
    """
    number = to_number(value)
    if number is not None:
        seconds = number / 1000 if number > _MS_THRESHOLD else number
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str) or _TIME_ONLY.match(value):
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def format_timestamp(value: Any) -> str:
    if value is None or value == "":
        return NOT_AVAILABLE
    if isinstance(value, str):
        match = _TIME_ONLY.match(value)
        if match:
            return f"{int(match.group(1)):02d}:{int(match.group(2)):02d}"
    instant = _parse_instant(value)
    return instant.strftime("%H:%M") if instant else NOT_AVAILABLE


def format_duration(start: Any, end: Any) -> str:
    begin, finish = _parse_instant(start), _parse_instant(end)
    if begin is None or finish is None:
        return NOT_AVAILABLE
    # mixed aware/naive values compare as wall-clock times
    if (begin.tzinfo is None) != (finish.tzinfo is None):
        begin, finish = begin.replace(tzinfo=None), finish.replace(tzinfo=None)
    seconds = (finish - begin).total_seconds()
    if seconds < 0:
        return NOT_AVAILABLE
    minutes = int(seconds // 60)
    return f"{minutes // 60}h {minutes % 60}m"


def segment_time(segment: Any, kind: str) -> Any:
    """`kind` is "departure" or "arrival"."""
    if not isinstance(segment, Mapping):
        return None
    nested = dig(segment, f"{kind}_time", "timestamp")
    if nested:
        return nested
    if segment.get(f"{kind}_timestamp"):
        return segment[f"{kind}_timestamp"]
    raw = segment.get(f"{kind}_time")
    return raw if isinstance(raw, (str, int, float)) and not isinstance(raw, bool) else None


# ---------------------------------------------------------------------------
# Prices
# ---------------------------------------------------------------------------

# (path to amount, minor units?, path to currency)
TRIP_PRICE_SOURCES: Tuple[Tuple[Tuple[Any, ...], bool, Tuple[Any, ...]], ...] = (
    (("prices", 0, "prices", "total"), True, ("prices", 0, "prices", "currency")),
    (("prices", 0, "prices", "breakdown", "total"), True, ("prices", 0, "prices", "currency")),
    (("prices", 0, "breakdown", "total"), True, ("prices", 0, "currency")),
    (("price", "amount"), False, ("price", "currency")),
)

LEG_PRICE_SOURCES: Tuple[Tuple[Tuple[Any, ...], bool, Tuple[Any, ...]], ...] = TRIP_PRICE_SOURCES + (
    (("pricing", "amount"), False, ("pricing", "currency")),
    (("pricing", "total"), False, ("pricing", "currency")),
)


def extract_price(raw: Mapping[str, Any], sources=TRIP_PRICE_SOURCES) -> Tuple[float, Optional[str]]:
    """First positive amount wins; minor-unit sources are divided by 100."""
    for amount_path, minor_units, currency_path in sources:
        amount = to_number(dig(raw, *amount_path))
        if amount is None or amount <= 0:
            continue
        currency = dig(raw, *currency_path)
        return (amount / 100 if minor_units else amount), (currency if isinstance(currency, str) and currency else None)
    return 0.0, None


# ---------------------------------------------------------------------------
# Legs
# ---------------------------------------------------------------------------


def _place(node: Any, field: str) -> Optional[str]:
    name = dig(node, field, "name")
    return name if isinstance(name, str) and name else None


def _map_leg(leg: Mapping[str, Any], first: Any, last: Any, operator: str, price: float, currency: str) -> MappedLeg:
    dep = segment_time(first, "departure") or segment_time(leg, "departure")
    arr = segment_time(last, "arrival") or segment_time(leg, "arrival")
    return MappedLeg(
        id=as_identifier(leg.get("id")),
        segment_id=as_identifier(leg.get("segment_id")),
        origin=_place(first, "origin") or _place(leg, "origin") or UNKNOWN_ORIGIN,
        destination=_place(last, "destination") or _place(leg, "destination") or UNKNOWN_DESTINATION,
        departure_time=format_timestamp(dep),
        arrival_time=format_timestamp(arr),
        duration=format_duration(dep, arr),
        operator=_place(first, "operator") or _place(leg, "operator") or operator,
        price=price,
        currency=currency,
    )


def _legs_from_legs(raw: Mapping[str, Any], operator: str, currency: str) -> List[MappedLeg]:
    legs = []
    for leg in raw.get("legs") or []:
        if not isinstance(leg, Mapping):
            continue
        segments = leg.get("segments") if isinstance(leg.get("segments"), list) else []
        first = segments[0] if segments else leg
        last = segments[-1] if segments else leg
        price, leg_currency = extract_price(leg, LEG_PRICE_SOURCES)
        legs.append(_map_leg(leg, first, last, operator, price, leg_currency or currency))
    return legs


def _legs_from_trip_legs(raw: Mapping[str, Any], operator: str, currency: str) -> List[MappedLeg]:
    segments = [s for s in raw.get("segments") or [] if isinstance(s, Mapping)]
    by_id = {s.get("id"): s for s in segments}
    legs = []
    for leg in raw.get("trip_legs") or []:
        if not isinstance(leg, Mapping):
            continue
        leg_segments = [by_id[i] for i in leg.get("segment_ids") or [] if i in by_id]
        first = leg_segments[0] if leg_segments else segments[0]
        last = leg_segments[-1] if leg_segments else segments[-1]
        price = to_number(dig(leg, "pricing", "amount"))
        if price is None:
            price = to_number(dig(leg, "pricing", "total"))
        legs.append(_map_leg(leg, first, last, operator, price if price and price > 0 else 0.0, currency))
    return legs


def scale_leg_prices(legs: List[MappedLeg], total: float, currency: str) -> List[MappedLeg]:
    """Distribute `total` over the legs proportionally, rounded to cents."""
    leg_sum = sum(leg.price for leg in legs)
    if leg_sum > 0 and total > 0:
        ratio = total / leg_sum
        return [leg.model_copy(update={"price": round(leg.price * ratio, 2), "currency": currency}) for leg in legs]
    return [leg.model_copy(update={"currency": currency}) for leg in legs]


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------


def map_trip_response(raw: Mapping[str, Any]) -> BusRoute:
    """Field-level normalization of one provider trip."""
    segments = raw.get("segments") if isinstance(raw, Mapping) else None
    if not isinstance(segments, list) or not segments:
        return BusRoute()

    first, last = segments[0], segments[-1]
    departure = segment_time(first, "departure")
    arrival = segment_time(last, "arrival")

    operator = (
        _place(raw, "operator")
        or _place(raw, "carrier")
        or _place(first, "operator")
        or UNKNOWN_OPERATOR
    )
    price, currency = extract_price(raw)
    currency = currency or DEFAULT_CURRENCY
    amenities = dig(first, "vehicle", "amenities")
    trip_id = as_identifier(raw.get("id")) or UNKNOWN_ID

    route = BusRoute(
        id=trip_id,
        trip_id=trip_id,
        journey_id=as_identifier(raw.get("journey_id")) or UNKNOWN_ID,
        segment_id=as_identifier(raw.get("segment_id")),
        origin=_place(first, "origin") or UNKNOWN_ORIGIN,
        destination=_place(last, "destination") or UNKNOWN_DESTINATION,
        departure_time=format_timestamp(departure),
        arrival_time=format_timestamp(arrival),
        duration=format_duration(departure, arrival),
        operator=operator,
        bus_company=operator,
        amenities=[str(a) for a in amenities] if isinstance(amenities, list) else [],
        class_name=_place(first, "class") or NOT_AVAILABLE,
        price=price,
        currency=currency,
        deeplink=dig(raw, "deeplinks", 0, "deeplink", "url") or DEFAULT_DEEPLINK,
        segments=[s for s in segments if isinstance(s, dict)],
        prices=raw.get("prices") if isinstance(raw.get("prices"), list) else [],
    )

    if isinstance(raw.get("legs"), list) and len(raw["legs"]) >= 2:
        legs = _legs_from_legs(raw, operator, currency)
    elif isinstance(raw.get("trip_legs"), list) and len(raw["trip_legs"]) >= 2:
        legs = _legs_from_trip_legs(raw, operator, currency)
    else:
        legs = []

    if len(legs) >= 2:
        legs = scale_leg_prices(legs, route.price, currency)
        lead = legs[0]
        route = route.model_copy(
            update={
                "origin": lead.origin,
                "destination": lead.destination,
                "departure_time": lead.departure_time,
                "arrival_time": lead.arrival_time,
                "duration": lead.duration,
                "legs": legs,
            }
        )
    elif legs:
        route = route.model_copy(update={"legs": legs})
    return route


def _fallback_route(raw: Any, search_id: Optional[str]) -> BusRoute:
    recovered = search_id
    if not recovered and isinstance(raw, Mapping):
        try:
            recovered = recover_trip_search_id(raw)
        except Exception:  # noqa: BLE001
            recovered = None
    return BusRoute(search_id=recovered or UNKNOWN_ID)


def map_trip(raw: Mapping[str, Any], search_id: Optional[str] = None) -> BusRoute:
    """
    Map one raw provider trip into a BusRoute. Never raises: a malformed
    record becomes a fully sentineled route so one bad trip cannot sink a
    whole result page.
    """
    try:
        route = map_trip_response(raw)
        final_search_id = as_identifier(search_id) or recover_trip_search_id(raw)
        if not final_search_id:
            logger.warning("[mapper] no search id for trip %s, using fallback", raw.get("id"))
            final_search_id = UNKNOWN_ID

        version = raw.get("version")
        return route.model_copy(
            update={
                "search_id": final_search_id,
                "leg_hashes": [str(h) for h in raw.get("leg_hashes") or []],
                "route_ids": [str(r) for r in raw.get("route_ids") or []],
                "version": version if isinstance(version, int) and version else ROUTE_VERSION,
                "journey_id": as_identifier(raw.get("journey_id")) or route.journey_id,
            }
        )
    except Exception as exc:  # noqa: BLE001
        logger.error("[mapper] failed to map trip, returning placeholder: %r", exc)
        return _fallback_route(raw, as_identifier(search_id))


def map_trips(raw_trips: Sequence[Any], search_id: Optional[str] = None) -> List[BusRoute]:
    return [map_trip(t if isinstance(t, Mapping) else {}, search_id) for t in raw_trips]
