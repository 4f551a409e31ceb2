from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Mapping, Tuple

from pydantic import BaseModel

from models.trips import UNKNOWN_ID, SegmentInfo
from services.errors import InvalidTripDataError
from services.trip_mapper import as_identifier

logger = logging.getLogger(__name__)

MISSING_SEGMENTS_MESSAGE = "Invalid trip data: Missing segment information"

Strategy = Callable[[Mapping[str, Any]], List[SegmentInfo]]


def _trip_like(trip: Any) -> Dict[str, Any]:
    if isinstance(trip, BaseModel):
        return trip.model_dump()
    return dict(trip) if isinstance(trip, Mapping) else {}


def _from_element(element: Any) -> List[SegmentInfo]:
    if not isinstance(element, Mapping):
        return []
    segment_id = as_identifier(element.get("segment_id"))
    if segment_id:
        return [SegmentInfo(id=segment_id, is_legacy=False)]
    element_id = as_identifier(element.get("id"))
    if element_id:
        return [SegmentInfo(id=element_id, is_legacy=not element_id.startswith("leg_"))]
    return []


def _from_list(field: str) -> Strategy:
    def strategy(trip: Mapping[str, Any]) -> List[SegmentInfo]:
        items = trip.get(field)
        if not isinstance(items, list):
            return []
        found: List[SegmentInfo] = []
        for element in items:
            found.extend(_from_element(element))
        return found

    return strategy


def _from_direct_segment_id(trip: Mapping[str, Any]) -> List[SegmentInfo]:
    segment_id = as_identifier(trip.get("segment_id"))
    return [SegmentInfo(id=segment_id, is_legacy=False)] if segment_id else []


def _from_trip_id(trip: Mapping[str, Any]) -> List[SegmentInfo]:
    trip_id = as_identifier(trip.get("tripId")) or as_identifier(trip.get("trip_id"))
    if not trip_id or trip_id == UNKNOWN_ID:
        return []
    return [SegmentInfo(id=trip_id, is_legacy=True)]


def _from_own_id(trip: Mapping[str, Any]) -> List[SegmentInfo]:
    own_id = as_identifier(trip.get("id"))
    if not own_id or own_id == UNKNOWN_ID:
        return []
    return [SegmentInfo(id=own_id, is_legacy=True)]


# Ordered; the first strategy that yields anything wins outright.
SEGMENT_STRATEGIES: Tuple[Tuple[str, Strategy], ...] = (
    ("segments", _from_list("segments")),
    ("segment_id", _from_direct_segment_id),
    ("tripId", _from_trip_id),
    ("id", _from_own_id),
    ("legs", _from_list("legs")),
)


def extract_segment_info(trip: Any) -> List[SegmentInfo]:
    """
    Bookable segment ids for a trip (raw dict or BusRoute), in source order.

    Raises InvalidTripDataError when no strategy yields anything: such a trip
    cannot be booked and must not reach selection.
    """
    data = _trip_like(trip)
    for name, strategy in SEGMENT_STRATEGIES:
        found = strategy(data)
        if found:
            logger.debug("[segments] resolved %d segment(s) via %s", len(found), name)
            return found

    logger.error("[segments] no segment information on trip %s", data.get("id"))
    raise InvalidTripDataError(MISSING_SEGMENTS_MESSAGE)
