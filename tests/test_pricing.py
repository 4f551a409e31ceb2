import pytest

from models.trips import BusRoute, MappedLeg
from tools.pricing import (
    build_price_change_message,
    check_price_drift,
    compute_quoted_total,
    rescale_booking_prices,
)


def _aggregated(price=50.0):
    return BusRoute(id="rt", price=price, legs=[MappedLeg(price=20.0), MappedLeg(price=30.0)])


def test_sub_cent_difference_is_not_drift():
    assert check_price_drift(100.0, 100.004, "USD") is None
    assert check_price_drift(None, 100.0, "USD") is None
    assert check_price_drift(100.0, None, "USD") is None


def test_one_cent_difference_is_drift():
    drift = check_price_drift(100.0, 100.01, "USD")

    assert drift is not None
    assert drift.direction == "increase"
    assert drift.delta == pytest.approx(0.01)
    assert drift.message.startswith("Quick update")
    assert "(+$0.01)" in drift.message


def test_fare_drop_message():
    drift = check_price_drift(80.0, 72.5, "EUR")

    assert drift.direction == "decrease"
    assert drift.message == "Good news — the fare dropped. Your new total is EUR 72.50 (previously EUR 80.00)."


def test_increase_message_uses_dollar_prefix():
    message = build_price_change_message(40.0, 45.0, "USD")
    assert message == "Quick update — the operator updated the fare (+$5.00). Your new total is $45.00 (previously $40.00)."


def test_quoted_total_variants():
    outbound = BusRoute(id="o", price=30.0)
    inbound = BusRoute(id="i", price=20.0)

    assert compute_quoted_total(outbound) == 30.0
    assert compute_quoted_total(outbound, inbound, True) == 50.0
    assert compute_quoted_total(_aggregated(price=99.0)) == 50.0
    # an explicit return trip id means the legs are not both directions
    assert compute_quoted_total(_aggregated(price=99.0), None, True) == 99.0


def test_rescale_with_return_trip_is_proportional():
    outbound, inbound = rescale_booking_prices(BusRoute(price=30.0), BusRoute(price=20.0), 60.0, "USD")

    assert outbound.price == pytest.approx(36.0)
    assert inbound.price == pytest.approx(24.0)


def test_rescale_aggregated_round_trip_scales_legs():
    outbound, inbound = rescale_booking_prices(_aggregated(), None, 60.0, "CAD")

    assert inbound is None
    assert outbound.price == 60.0
    assert outbound.currency == "CAD"
    assert [leg.price for leg in outbound.legs] == [24.0, 36.0]


def test_rescale_single_trip_takes_final_total():
    outbound, _ = rescale_booking_prices(BusRoute(price=10.0), None, 12.34, "USD")
    assert outbound.price == 12.34
