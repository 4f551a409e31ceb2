from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

# ---------------------------------------------------------------------------
# Sentinels
# ---------------------------------------------------------------------------

UNKNOWN_ID = "unknown"
NOT_AVAILABLE = "N/A"
UNKNOWN_ORIGIN = "Unknown Origin"
UNKNOWN_DESTINATION = "Unknown Destination"
UNKNOWN_OPERATOR = "Unknown Operator"
DEFAULT_CURRENCY = "USD"
DEFAULT_DEEPLINK = "#"
ROUTE_VERSION = 2

DEFAULT_CHILD_AGE = 5

_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


# ---------------------------------------------------------------------------
# Search query
# ---------------------------------------------------------------------------


def _parse_age(value: Any) -> Optional[int]:
    # Mirrors parseInt(): leading digits win, anything else is rejected
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if value == value else None
    match = _LEADING_INT.match(str(value))
    return int(match.group(1)) if match else None


class PassengerCounts(BaseModel):
    model_config = ConfigDict(frozen=True)

    adults: int = 1
    children: int = 0
    children_ages: List[Any] = Field(default_factory=list)
    seniors: int = 0
    students: int = 0

    def normalized_children_ages(self) -> List[int]:
        """
        One age per child. Invalid or negative entries are dropped and the
        list is then padded with DEFAULT_CHILD_AGE up to the child count.
        """
        if self.children <= 0:
            return []
        cleaned = [a for a in (_parse_age(v) for v in self.children_ages) if a is not None and a >= 0]
        if len(cleaned) == self.children:
            return cleaned
        return [cleaned[i] if i < len(cleaned) else DEFAULT_CHILD_AGE for i in range(self.children)]


class SearchFilters(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_price: Optional[float] = None
    departure_time: Optional[str] = None


class SearchQuery(BaseModel):
    """
    What the traveller asked for. Frozen so the dedupe key computed when a
    search starts stays valid for the whole lifetime of that search.
    """
    model_config = ConfigDict(frozen=True)

    origin: str
    destination: str
    departure_date: str
    return_date: Optional[str] = None
    trip_type: Literal["one-way", "round-trip"] = "one-way"
    passengers: PassengerCounts = Field(default_factory=PassengerCounts)
    filters: SearchFilters = Field(default_factory=SearchFilters)
    provider: Optional[str] = None
    search_id: Optional[str] = None

    def dedupe_key(self) -> str:
        # provider and search_id are volatile and intentionally left out
        return json.dumps(
            {
                "origin": self.origin,
                "destination": self.destination,
                "departure_date": self.departure_date,
                "return_date": self.return_date or None,
                "passengers": self.passengers.model_dump(),
                "trip_type": self.trip_type,
                "filters": self.filters.model_dump(),
            },
            sort_keys=True,
            default=str,
        )


# ---------------------------------------------------------------------------
# Canonical route
# ---------------------------------------------------------------------------


class SegmentInfo(BaseModel):
    id: str
    is_legacy: bool = False


class MappedLeg(BaseModel):
    """One direction of an aggregated round trip, normalized like a route."""

    id: Optional[str] = None
    segment_id: Optional[str] = None
    origin: str = UNKNOWN_ORIGIN
    destination: str = UNKNOWN_DESTINATION
    departure_time: str = NOT_AVAILABLE
    arrival_time: str = NOT_AVAILABLE
    duration: str = NOT_AVAILABLE
    operator: str = UNKNOWN_OPERATOR
    price: float = 0.0
    currency: str = DEFAULT_CURRENCY


class BusRoute(BaseModel):
    """
    Canonical trip. Every field has a sentinel default so downstream code
    compares against sentinels instead of checking for None.
    """

    # Identity & provenance
    id: str = UNKNOWN_ID
    trip_id: str = UNKNOWN_ID
    journey_id: str = UNKNOWN_ID
    search_id: str = UNKNOWN_ID
    segment_id: Optional[str] = None
    leg_hashes: List[str] = Field(default_factory=list)
    route_ids: List[str] = Field(default_factory=list)
    version: int = ROUTE_VERSION

    # Itinerary
    origin: str = UNKNOWN_ORIGIN
    destination: str = UNKNOWN_DESTINATION
    departure_time: str = NOT_AVAILABLE
    arrival_time: str = NOT_AVAILABLE
    duration: str = NOT_AVAILABLE

    # Commercial / descriptive
    price: float = 0.0
    currency: str = DEFAULT_CURRENCY
    operator: str = UNKNOWN_OPERATOR
    bus_company: str = UNKNOWN_OPERATOR
    amenities: List[str] = Field(default_factory=list)
    class_name: str = NOT_AVAILABLE
    deeplink: str = DEFAULT_DEEPLINK

    # Raw provider data kept for segment resolution
    segments: List[Dict[str, Any]] = Field(default_factory=list)
    legs: List[MappedLeg] = Field(default_factory=list)
    prices: List[Any] = Field(default_factory=list)

    def is_enriched(self) -> bool:
        """True once the provider has filled in times and places."""
        return self.departure_time != NOT_AVAILABLE and self.origin != UNKNOWN_ORIGIN

    def is_aggregated_round_trip(self) -> bool:
        return len(self.legs) >= 2
