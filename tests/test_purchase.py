import pytest

from models.booking import BookingResult
from models.session import CartSessionData, PurchaseSessionData
from models.trips import BusRoute
from services.purchase import NO_REFERENCE_MESSAGE, PriceDriftGate, PurchaseConfirmer
from tools.pricing import FARE_CHANGED_FALLBACK_MESSAGE

CART_ID = "abc-defg-hijk-lmno-pqrst"


@pytest.fixture
def cart(cart_store):
    return cart_store.save(CartSessionData(cart_id=CART_ID, trip_id="trip-1", quoted_total=40.0, quoted_currency="USD"))


@pytest.fixture
def purchase(purchase_store):
    return purchase_store.save(PurchaseSessionData(purchase_id="p-1", purchase_uuid="u-1", pnr="PNR1"))


@pytest.fixture
def confirmer(client, cart_store, purchase_store):
    return PurchaseConfirmer(client, cart_store, purchase_store)


async def test_confirm_sends_identifiers(confirmer, gateway, cart, purchase):
    gateway.on("POST", "/purchase", {"success": True, "ticketNumbers": ["T1", "T2"]})

    result, _ = await confirmer.confirm()

    assert result.success
    assert result.ticket_numbers == ["T1", "T2"]
    assert result.purchase_id == "p-1"
    request = gateway.calls("POST", "/purchase")[0]
    assert request.headers["X-Cart-ID"] == CART_ID
    assert request.headers["X-Booking-ID"] == "trip-1"
    assert gateway.last_json("POST", "/purchase") == {"purchaseId": "p-1", "purchaseUuid": "u-1"}


async def test_refreshed_purchase_id_is_persisted(confirmer, gateway, purchase_store, cart, purchase):
    gateway.on("POST", "/purchase", {"success": True, "purchase_id": "p-2", "purchase_uuid": "u-2"})

    result, updated = await confirmer.confirm()

    assert result.purchase_id == "p-2"
    assert updated.purchase_uuid == "u-2"
    stored = purchase_store.load()
    assert stored.purchase_id == "p-2"
    assert stored.pnr == "PNR1"


async def test_conflict_reports_status_code(confirmer, gateway, cart, purchase):
    gateway.on("POST", "/purchase", {"error": {"message": "Price changed"}}, status=409)

    result, _ = await confirmer.confirm()

    assert not result.success
    assert result.is_fare_conflict
    assert result.message == "Price changed"


async def test_unsuccessful_body_is_a_failure(confirmer, gateway, cart, purchase):
    gateway.on("POST", "/purchase", {"success": False})

    result, _ = await confirmer.confirm()
    assert result.message == "Purchase confirmation failed"


async def test_no_reference_skips_the_gateway(confirmer, gateway):
    result, _ = await confirmer.confirm()

    assert result.message == NO_REFERENCE_MESSAGE
    assert gateway.requests == []


async def test_purchase_status_reads_cents_fallback(confirmer, gateway):
    gateway.on("GET", "/purchase/p-1/status", {"purchase": {"totalPrice": 4550, "currency": "CAD"}})

    status = await confirmer.get_purchase_status("p-1", "u-1")

    assert status.success
    assert status.total == 45.5
    assert status.currency == "CAD"
    assert gateway.calls("GET", "/purchase/p-1/status")[0].url.params["purchaseUuid"] == "u-1"


async def test_fare_conflict_message_uses_authoritative_total(confirmer, gateway, cart, purchase):
    gateway.on("GET", "/purchase/p-1/status", {"purchase": {"total": 44.0}})

    conflict = await confirmer.describe_fare_conflict(cart, purchase)

    assert conflict.restart_required
    assert conflict.updated_total == 44.0
    assert conflict.message == (
        "Quick update — the operator updated the fare (+$4.00). Your new total is $44.00 (previously $40.00)."
    )


async def test_fare_conflict_without_status_uses_generic_notice(confirmer, gateway, cart, purchase):
    gateway.on("GET", "/purchase/p-1/status", {"message": "not found"}, status=404)

    conflict = await confirmer.describe_fare_conflict(cart, purchase, "EUR")

    assert conflict.message == FARE_CHANGED_FALLBACK_MESSAGE
    assert conflict.currency == "USD"


def test_drift_gate_uses_cart_quote(cart_store, cart):
    gate = PriceDriftGate(cart_store)

    assert gate.evaluate(BookingResult(success=True, final_total=40.004), cart, None) is None
    drift = gate.evaluate(BookingResult(success=True, final_total=38.0), cart, None)
    assert drift.direction == "decrease"
    assert drift.currency == "USD"


def test_drift_gate_falls_back_to_trip_prices(cart_store):
    gate = PriceDriftGate(cart_store)
    outbound = BusRoute(price=20.0, currency="EUR")
    inbound = BusRoute(price=15.0, currency="EUR")

    drift = gate.evaluate(BookingResult(success=True, final_total=36.0), None, outbound, inbound)

    assert drift.quoted == 35.0
    assert drift.currency == "EUR"


def test_acknowledge_requotes_cart_and_trips(cart_store, cart):
    gate = PriceDriftGate(cart_store)
    drift = gate.evaluate(BookingResult(success=True, final_total=50.0), cart, None)

    outbound, inbound, updated = gate.acknowledge(drift, BusRoute(price=40.0), None, cart)

    assert outbound.price == 50.0
    assert inbound is None
    assert updated.quoted_total == 50.0
    assert cart_store.load().quoted_total == 50.0
