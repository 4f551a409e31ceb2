from __future__ import annotations

import re
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel

ErrorContext = Literal["search", "trip-selection", "booking", "purchase", "ticket", "generic"]

DEFAULT_TITLES: Dict[str, str] = {
    "search": "Unable to load trips",
    "trip-selection": "Unable to reserve trip",
    "booking": "Booking not submitted",
    "purchase": "Purchase not completed",
    "ticket": "Unable to load ticket",
    "generic": "Something went wrong",
}

DEFAULT_MESSAGES: Dict[str, str] = {
    "search": "We ran into a problem while searching for trips. Please try again.",
    "trip-selection": "We could not reserve this trip. Please pick another option and try again.",
    "booking": "We could not submit your booking. Please try again.",
    "purchase": "We could not complete your purchase. Please try again.",
    "ticket": "We could not load your ticket details. Please try again.",
    "generic": "We ran into a problem. Please try again.",
}

_CONNECTION_MESSAGES = {
    "search": "We could not reach our trip search service. Please check your connection and try again.",
    "booking": "We could not reach our booking service. Please try again in a few minutes.",
    "purchase": "We could not reach our booking service. Please try again in a few minutes.",
    "ticket": "We could not reach our ticket service. Please try again in a few minutes.",
}

_MISSING_REFERENCE_MESSAGES = {
    "booking": "We could not find your selected trip. Please go back to the results and choose a trip again.",
    "purchase": "We could not find your booking reference. Please start a new booking.",
    "trip-selection": "We could not reserve this trip. Please choose another option and try again.",
}

_INVALID_TRIP_MESSAGES = {
    "trip-selection": "We could not process this trip option. Please pick a different trip and try again.",
    "booking": "We could not process this trip for booking. Please pick a different trip and try again.",
}

_SERVER_ERROR_MESSAGES = {
    "search": "Our trip search service is temporarily unavailable. Please try again in a few minutes.",
    "trip-selection": "We could not reserve this trip due to a server issue. Please choose another trip or try again later.",
    "booking": "We could not submit your booking due to a server issue. Please try again later.",
    "purchase": "We could not complete your purchase due to a server issue. Please try again later.",
    "ticket": "We could not load your ticket due to a server issue. Please try again later.",
}

_MISSING_REFERENCE_MARKERS = (
    "cart data missing",
    "no cart data found",
    "missing busbudcartid",
    "no booking reference found",
)

_STATUS_CODE = re.compile(r"(\d{3})")


class UserFacingError(BaseModel):
    title: str
    message: str
    details: Optional[str] = None


def _raw_message(error: Any, message: Optional[str]) -> Optional[str]:
    if isinstance(message, str) and message.strip():
        return message.strip()
    if isinstance(error, BaseException):
        text = str(error).strip()
        return text or None
    if isinstance(error, dict):
        for key in ("message", "error", "reason"):
            value = error.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    return None


def map_trip_error_to_user_message(
    context: ErrorContext = "generic",
    error: Any = None,
    message: Optional[str] = None,
    fallback_title: Optional[str] = None,
    fallback_message: Optional[str] = None,
) -> UserFacingError:
    """
    Translate a raw failure from any booking step into something a traveller
    can act on. The raw text is kept in `details`.
    """
    ctx = context if context in DEFAULT_TITLES else "generic"
    raw = _raw_message(error, message)
    title = fallback_title or DEFAULT_TITLES[ctx]
    base_message = fallback_message or DEFAULT_MESSAGES[ctx]

    if not raw:
        return UserFacingError(title=title, message=base_message)

    lower = raw.lower()

    if "network error" in lower or "failed to fetch" in lower:
        return UserFacingError(
            title="Connection issue",
            message=_CONNECTION_MESSAGES.get(ctx, "We could not connect. Please check your connection and try again."),
            details=raw,
        )

    if "timeout" in lower and "trips not ready" in lower:
        return UserFacingError(
            title="Search is taking too long",
            message=(
                "Your trip results are taking longer than expected to load. Please try again, "
                "or adjust your dates and search again."
            ),
            details=raw,
        )

    if "invalid api response" in lower or "missing search context" in lower:
        return UserFacingError(
            title="Trip results unavailable",
            message="We could not load trips from our partners right now. Please try again in a few minutes.",
            details=raw,
        )

    if any(marker in lower for marker in _MISSING_REFERENCE_MARKERS):
        return UserFacingError(title=title, message=_MISSING_REFERENCE_MESSAGES.get(ctx, base_message), details=raw)

    if "invalid trip data" in lower:
        return UserFacingError(title=title, message=_INVALID_TRIP_MESSAGES.get(ctx, base_message), details=raw)

    if "age is required for child passenger" in lower:
        return UserFacingError(
            title="Missing child passenger details",
            message=(
                "Age is required for all child passengers. Please add a valid date of birth "
                "for each child and try again."
            ),
            details=raw,
        )

    if "server error:" in lower or "http error" in lower:
        text = _SERVER_ERROR_MESSAGES.get(ctx, base_message)
        status = _STATUS_CODE.search(raw)
        if status:
            text += f" (Error {status.group(1)})"
        return UserFacingError(title=title, message=text, details=raw)

    if "invalid json response" in lower or "response parsing failed" in lower:
        text = (
            "We could not confirm your purchase due to an unexpected response. Please try again."
            if ctx == "purchase"
            else base_message
        )
        return UserFacingError(title=title, message=text, details=raw)

    return UserFacingError(title=title, message=base_message, details=raw)
