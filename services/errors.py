from __future__ import annotations

from typing import Optional


class BookingFlowError(Exception):
    """
    Base class for every failure raised by the booking orchestration.

    Step services mostly report failures as structured results; the
    exceptions below are the ones that must halt the pipeline.
    """


class InvalidTripDataError(BookingFlowError):
    """A trip carries no resolvable segment identifiers and cannot be booked."""


class PassengerValidationError(BookingFlowError):
    """Passenger input is unusable (e.g. a child without a valid date of birth)."""


class StorefrontNetworkError(BookingFlowError):
    """The gateway could not be reached or the connection broke mid-request."""


class UpstreamHTTPError(BookingFlowError):
    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class InvalidResponseError(BookingFlowError):
    """The gateway answered 2xx but the body has neither trips nor a search context."""


class PollTimeoutError(BookingFlowError):
    pass


class PollCancelledError(BookingFlowError):
    pass


class FlowStateError(BookingFlowError):
    """An action was requested that the current flow stage does not allow."""

    def __init__(self, message: str, stage: Optional[str] = None, action: Optional[str] = None) -> None:
        super().__init__(message)
        self.stage = stage
        self.action = action
