from typing import Callable, Dict, Optional

from models.state import BookingFlowState, FlowStage


def can_search(st: BookingFlowState) -> Optional[str]:
    if st.stage not in (FlowStage.IDLE, FlowStage.SEARCHING, FlowStage.SELECTED):
        return "A booking is already in progress. Restart to search again."
    return None


def can_select(st: BookingFlowState) -> Optional[str]:
    if st.stage not in (FlowStage.SEARCHING, FlowStage.SELECTED):
        return "Search for trips before selecting one."
    if st.query is None:
        return "Missing search information. Please search for trips again."
    return None


def can_submit(st: BookingFlowState) -> Optional[str]:
    if st.stage != FlowStage.SELECTED:
        return "Select a trip before entering passenger details."
    if st.cart is None:
        return "Cart data missing. Please select a trip first."
    if st.query is None:
        return "Missing search information. Please search for trips again."
    return None


def can_acknowledge_price(st: BookingFlowState) -> Optional[str]:
    if st.pending_price_update is None:
        return "There is no fare change to acknowledge."
    return None


def can_confirm(st: BookingFlowState) -> Optional[str]:
    """
    Confirmation needs a submitted booking with no open fare question:
    neither an unacknowledged drift nor a provider-side fare conflict.
    """
    if st.stage != FlowStage.SUBMITTED:
        return "Submit the booking before confirming it."
    if st.pending_price_update is not None:
        return "Please review the updated fare before confirming."
    if st.fare_conflict is not None:
        return "The fare changed. Please restart the booking process."
    return None


def can_restart(st: BookingFlowState) -> Optional[str]:
    return None


GUARDS: Dict[str, Callable[[BookingFlowState], Optional[str]]] = {
    "search": can_search,
    "select": can_select,
    "submit": can_submit,
    "acknowledge_price": can_acknowledge_price,
    "confirm": can_confirm,
    "restart": can_restart,
}


def guard_violation(action: str, st: BookingFlowState) -> Optional[str]:
    """Why `action` may not run from the current state, or None if it may."""
    guard = GUARDS.get(action)
    if guard is None:
        return f"Unknown action: {action}"
    return guard(st)
