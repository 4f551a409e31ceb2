from __future__ import annotations

import time
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from models.trips import SegmentInfo


# ---------------------------------------------------------------------------
# Traveller input
# ---------------------------------------------------------------------------


class ContactInfo(BaseModel):
    """
    Purchaser contact details. Sent to the gateway with camelCase keys,
    which is how its booking controller reads them.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    first_name: str
    last_name: str
    email: str
    phone: str = ""
    country: str = ""
    opt_in_marketing: bool = False


PassengerType = Literal["adult", "child", "senior", "student"]


class Passenger(BaseModel):
    first_name: str
    last_name: str
    type: PassengerType = "adult"
    dob: Optional[str] = None  # ISO date, may carry a time part
    gender: Optional[str] = None
    id_type: Optional[str] = None
    id_number: Optional[str] = None
    nationality: Optional[str] = None
    emergency_contact_name: Optional[str] = None
    emergency_contact_number: Optional[str] = None
    question_answers: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Step results
# ---------------------------------------------------------------------------


class TripSelectionResult(BaseModel):
    success: bool
    cart_id: Optional[str] = None
    trip_id: Optional[str] = None
    segment_info: List[SegmentInfo] = Field(default_factory=list)
    message: str = ""


class BookingResult(BaseModel):
    success: bool
    booking_id: Optional[str] = None
    pnr: Optional[str] = None
    final_total: Optional[float] = None
    currency: Optional[str] = None
    message: str = ""


class ConfirmationResult(BaseModel):
    success: bool
    status_code: Optional[int] = None
    purchase_id: Optional[str] = None
    purchase_uuid: Optional[str] = None
    ticket_numbers: List[str] = Field(default_factory=list)
    message: str = ""

    @property
    def is_fare_conflict(self) -> bool:
        return self.status_code == 409


class PurchaseStatus(BaseModel):
    success: bool
    status_code: Optional[int] = None
    total: Optional[float] = None  # major units
    currency: Optional[str] = None
    message: str = ""


class PriceDrift(BaseModel):
    """Gap between the quoted and the final fare, in major currency units."""

    quoted: float
    final_total: float
    currency: str
    delta: float
    direction: Literal["increase", "decrease"]
    message: str


class FareConflict(BaseModel):
    """Returned when the provider rejected a purchase because the fare moved."""

    quoted: Optional[float] = None
    updated_total: Optional[float] = None
    currency: Optional[str] = None
    message: str
    restart_required: bool = True


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class MyBookingSummary(BaseModel):
    cart_id: str
    pnr: Optional[str] = None
    status: Optional[str] = None  # "booked" (held in-store) or "completed"
    origin: Optional[str] = None
    destination: Optional[str] = None
    depart_at: Optional[str] = None
    created_at: float = Field(default_factory=time.time)


class NotificationResult(BaseModel):
    success: bool
    message: str = ""
