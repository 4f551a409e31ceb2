from __future__ import annotations

from typing import Optional, Tuple

from models.booking import PriceDrift
from models.trips import DEFAULT_CURRENCY, BusRoute

# Fare changes smaller than one cent are rounding noise.
PRICE_DRIFT_THRESHOLD = 0.01

FARE_CHANGED_FALLBACK_MESSAGE = (
    "The fare changed while we were confirming your purchase. To protect you from "
    "paying an unexpected amount, please restart the booking so we can show you the "
    "latest total before you pay."
)


def currency_prefix(currency: Optional[str]) -> str:
    code = currency or DEFAULT_CURRENCY
    return "$" if code == "USD" else f"{code} "


def _legs_total(route: BusRoute) -> float:
    return sum(leg.price for leg in route.legs[:2])


def compute_quoted_total(
    outbound: BusRoute,
    inbound: Optional[BusRoute] = None,
    has_return_trip_id: bool = False,
) -> float:
    """
    What the traveller was shown at selection time.

    An aggregated round trip (both directions packed into one route as legs,
    no separate return trip) is quoted as the sum of its first two legs.
    """
    if inbound is None and not has_return_trip_id and outbound.is_aggregated_round_trip():
        legs_total = _legs_total(outbound)
        return legs_total if legs_total > 0 else outbound.price
    return outbound.price + (inbound.price if inbound is not None else 0.0)


def quoted_currency(outbound: BusRoute, inbound: Optional[BusRoute] = None) -> str:
    return outbound.currency or (inbound.currency if inbound else None) or DEFAULT_CURRENCY


def build_price_change_message(quoted: float, updated: float, currency: Optional[str]) -> str:
    prefix = currency_prefix(currency)
    delta = updated - quoted
    totals = f"Your new total is {prefix}{updated:.2f} (previously {prefix}{quoted:.2f})."
    if delta < 0:
        return f"Good news — the fare dropped. {totals}"
    delta_text = f" (+{prefix}{abs(delta):.2f})" if abs(delta) >= PRICE_DRIFT_THRESHOLD else ""
    return f"Quick update — the operator updated the fare{delta_text}. {totals}"


def check_price_drift(quoted: Optional[float], final_total: Optional[float], currency: Optional[str]) -> Optional[PriceDrift]:
    """
    None when there is nothing to reconcile: a total is unknown or the gap is
    below one cent. The gap is rounded first so 100.00 -> 100.01 counts.
    """
    if quoted is None or final_total is None:
        return None
    delta = round(final_total - quoted, 6)
    if abs(delta) < PRICE_DRIFT_THRESHOLD:
        return None
    code = currency or DEFAULT_CURRENCY
    return PriceDrift(
        quoted=quoted,
        final_total=final_total,
        currency=code,
        delta=delta,
        direction="increase" if delta > 0 else "decrease",
        message=build_price_change_message(quoted, final_total, code),
    )


def rescale_booking_prices(
    outbound: BusRoute,
    inbound: Optional[BusRoute],
    final_total: float,
    currency: str,
) -> Tuple[BusRoute, Optional[BusRoute]]:
    """
    Spread an acknowledged final total over the held trips so every price
    shown afterwards adds up to what will be charged.
    """
    if inbound is not None:
        old_total = outbound.price + inbound.price
        if old_total > 0:
            ratio = final_total / old_total
            return (
                outbound.model_copy(update={"price": outbound.price * ratio, "currency": currency}),
                inbound.model_copy(update={"price": inbound.price * ratio, "currency": currency}),
            )

    update = {"price": final_total, "currency": currency}
    if inbound is None and outbound.is_aggregated_round_trip():
        legs_total = _legs_total(outbound)
        if legs_total > 0 and final_total > 0:
            ratio = final_total / legs_total
            update["legs"] = [
                leg.model_copy(update={"price": round(leg.price * ratio, 2), "currency": currency})
                for leg in outbound.legs
            ]
    return outbound.model_copy(update=update), inbound
