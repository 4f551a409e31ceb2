from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field

from models.booking import (
    BookingResult,
    ConfirmationResult,
    ContactInfo,
    FareConflict,
    PriceDrift,
)
from models.session import CartSessionData, PurchaseSessionData
from models.trips import BusRoute, SearchQuery


class FlowStage(str, Enum):
    """
    Booking flow stages, in order. Each step may only run from the stages
    listed for it in graph/policies.py.
    """
    IDLE = "idle"
    SEARCHING = "searching"
    SELECTED = "selected"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"


class BookingFlowState(BaseModel):
    # One traveller's booking, threaded through every step
    session_id: str
    stage: FlowStage = FlowStage.IDLE

    # Search
    query: Optional[SearchQuery] = None
    routes: List[BusRoute] = Field(default_factory=list)

    # Selection
    outbound: Optional[BusRoute] = None
    inbound: Optional[BusRoute] = None
    return_trip_id: Optional[str] = None
    cart: Optional[CartSessionData] = None

    # Submission / purchase
    contact: Optional[ContactInfo] = None
    payment_method: Optional[str] = None
    booking: Optional[BookingResult] = None
    purchase: Optional[PurchaseSessionData] = None
    pending_price_update: Optional[PriceDrift] = None
    confirmation: Optional[ConfirmationResult] = None
    fare_conflict: Optional[FareConflict] = None

    # Errors
    errors: List[str] = Field(default_factory=list)

    @property
    def is_in_store(self) -> bool:
        return (self.payment_method or "").strip().lower() == "in-store"

    def reset(self) -> None:
        """Back to IDLE, keeping only the session id."""
        fresh = BookingFlowState(session_id=self.session_id)
        for name in type(self).model_fields:
            setattr(self, name, getattr(fresh, name))
