from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field

from models.trips import SegmentInfo

# ---------------------------------------------------------------------------
# Storage keys & lifetimes
# ---------------------------------------------------------------------------

CART_STORAGE_KEY = "natticks_cart"
PURCHASE_STORAGE_KEY = "natticks_purchase"
MY_BOOKINGS_STORAGE_KEY = "natticks_my_bookings"
AGENT_HEADERS_STORAGE_KEY = "nt_agent_headers"
AGENT_STARTED_STORAGE_KEY = "nt_agent_started"

CART_TTL_SECONDS = 24 * 60 * 60
PURCHASE_TTL_SECONDS = 7 * 24 * 60 * 60
MAX_BOOKING_HISTORY = 20


class PassengerQuestions(BaseModel):
    required: List[str] = Field(default_factory=list)
    optional: List[str] = Field(default_factory=list)
    all: List[str] = Field(default_factory=list)

    def allowed_keys(self) -> set:
        """`all` wins when present; otherwise required + optional."""
        source = self.all or [*self.required, *self.optional]
        return {str(k).strip().lower() for k in source if str(k or "").strip()}


class CartSessionData(BaseModel):
    """
    The single active provider cart. Written on trip selection, updated when
    the traveller acknowledges a fare change.
    """
    cart_id: str
    trip_id: str
    return_trip_id: Optional[str] = None
    segment_info: List[SegmentInfo] = Field(default_factory=list)
    passenger_questions: Optional[PassengerQuestions] = None
    quoted_total: Optional[float] = None
    quoted_currency: Optional[str] = None
    timestamp: float = 0.0  # epoch seconds of the last write


class PurchaseSessionData(BaseModel):
    purchase_id: Optional[str] = None
    purchase_uuid: Optional[str] = None
    user_id: Optional[str] = None
    pnr: Optional[str] = None
    timestamp: float = 0.0

    def has_identifiers(self) -> bool:
        return bool(self.purchase_id and self.purchase_uuid)
