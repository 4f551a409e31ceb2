import asyncio

import httpx
import pytest

from app.settings import Settings
from graph.booking_flow import BookingFlow, build_flow_services
from models.booking import ContactInfo, Passenger
from models.state import FlowStage
from models.trips import SearchQuery
from services.errors import FlowStateError, InvalidTripDataError

QUERY = SearchQuery(origin="Boston", destination="New York", departure_date="2025-03-01")
CONTACT = ContactInfo(first_name="Ada", last_name="Lovelace", email="ada@example.com")
PASSENGERS = [Passenger(first_name="Ada", last_name="Lovelace", dob="1990-05-01")]
CART_ID = "abc-defg-hijk-lmno-pqrst"
CFG = Settings(poll_delay_ms=1, search_cooldown_seconds=0)


def _booking_body(total=25.0):
    return {
        "bookingId": "b-1",
        "purchase_id": "p-1",
        "purchase_uuid": "u-1",
        "pnr": "PNR1",
        "pricing": {"total": total, "currency": "USD"},
    }


@pytest.fixture
def services(client, storage):
    return build_flow_services("s1", storage, CFG, client=client)


@pytest.fixture
def flow(services):
    return BookingFlow.start("s1", services)


@pytest.fixture
def storefront(gateway, make_trip):
    gateway.on("GET", "/search", {"trips": [make_trip()]})
    gateway.on("POST", "/trips/select", {"busbudCartId": CART_ID, "tripId": "trip-1"})
    gateway.on("POST", "/trips/frontend", _booking_body())
    gateway.on("POST", "/purchase", {"success": True, "ticketNumbers": ["T1"]})
    gateway.on("POST", "/ticket/hold", {"message": "sent"})
    return gateway


async def _book(flow, payment_method="card"):
    await flow.run("search", query=QUERY)
    await flow.run("select", trip="trip-1")
    return await flow.run("submit", contact=CONTACT, passengers=PASSENGERS, payment_method=payment_method)


async def test_happy_path_reaches_confirmed(flow, storefront, services):
    routes = await flow.run("search", query=QUERY)
    assert flow.state.stage == FlowStage.SEARCHING
    assert routes[0].trip_id == "trip-1"

    selection = await flow.run("select", trip="trip-1")
    assert selection.success
    assert flow.state.stage == FlowStage.SELECTED
    assert flow.state.cart.quoted_total == 25.0

    booking = await flow.run("submit", contact=CONTACT, passengers=PASSENGERS, payment_method="card")
    assert booking.success
    assert flow.state.stage == FlowStage.SUBMITTED
    assert flow.state.pending_price_update is None

    confirmation = await flow.run("confirm")
    assert confirmation.success
    assert confirmation.ticket_numbers == ["T1"]
    assert flow.state.stage == FlowStage.CONFIRMED

    history = services.history.list()
    assert [(h.cart_id, h.status, h.pnr) for h in history] == [(CART_ID, "completed", "PNR1")]
    assert history[0].depart_at == "2025-03-01 08:15"


async def test_out_of_order_actions_are_rejected(flow, storefront):
    with pytest.raises(FlowStateError) as excinfo:
        await flow.run("submit", contact=CONTACT, passengers=PASSENGERS)
    assert excinfo.value.stage == "idle"
    assert excinfo.value.action == "submit"

    with pytest.raises(FlowStateError):
        await flow.run("confirm")
    with pytest.raises(FlowStateError):
        await flow.run("acknowledge_price")
    with pytest.raises(FlowStateError, match="Unknown action"):
        await flow.run("teleport")
    assert storefront.requests == []


async def test_price_drift_blocks_confirmation_until_acknowledged(flow, storefront):
    storefront.on("POST", "/trips/frontend", _booking_body(total=27.5))

    await _book(flow)
    drift = flow.state.pending_price_update
    assert drift is not None
    assert drift.direction == "increase"

    with pytest.raises(FlowStateError):
        await flow.run("confirm")
    assert storefront.calls("POST", "/purchase") == []

    await flow.run("acknowledge_price")
    assert flow.state.pending_price_update is None
    assert flow.state.outbound.price == 27.5
    assert flow.state.cart.quoted_total == 27.5

    confirmation = await flow.run("confirm")
    assert confirmation.success
    assert flow.state.stage == FlowStage.CONFIRMED


async def test_sub_cent_difference_does_not_block(flow, storefront):
    storefront.on("POST", "/trips/frontend", _booking_body(total=25.004))

    await _book(flow)

    assert flow.state.pending_price_update is None


async def test_in_store_hold_skips_purchase_and_sends_email(flow, storefront, services):
    await _book(flow, payment_method="in-store")
    assert storefront.last_json("POST", "/trips/frontend")["hold"] is True

    result = await flow.run("confirm")
    await flow.drain()

    assert result.success
    assert flow.state.stage == FlowStage.CONFIRMED
    assert storefront.calls("POST", "/purchase") == []
    assert storefront.last_json("POST", "/ticket/hold") == {"pnr": "PNR1"}
    assert services.history.list()[0].status == "booked"


async def test_fare_conflict_requires_restart(flow, storefront, services):
    storefront.on("POST", "/purchase", {"message": "Fare changed"}, status=409)
    storefront.on("GET", "/purchase/p-1/status", {"purchase": {"total": 24.0}})

    await _book(flow)
    result = await flow.run("confirm")

    assert not result.success
    conflict = flow.state.fare_conflict
    assert conflict.updated_total == 24.0
    assert conflict.message.startswith("Good news")
    assert flow.state.stage == FlowStage.SUBMITTED

    with pytest.raises(FlowStateError):
        await flow.run("confirm")

    await flow.run("restart")
    assert flow.state.stage == FlowStage.IDLE
    assert flow.state.fare_conflict is None
    assert flow.state.session_id == "s1"
    assert services.cart_store.load() is None
    assert services.purchase_store.load() is None
    assert services.history.list() == []


async def test_failed_selection_stays_searching(flow, storefront):
    storefront.on("POST", "/trips/select", {"message": "Trip sold out"}, status=400)

    await flow.run("search", query=QUERY)
    result = await flow.run("select", trip="trip-1")

    assert not result.success
    assert flow.state.stage == FlowStage.SEARCHING
    assert flow.state.errors[-1] == "Trip sold out"


async def test_selecting_unknown_trip_raises(flow, storefront):
    await flow.run("search", query=QUERY)

    with pytest.raises(InvalidTripDataError):
        await flow.run("select", trip="nope")


async def test_resume_picks_up_from_persisted_sessions(flow, storefront, client, storage):
    await _book(flow)

    resumed = BookingFlow.resume("s1", build_flow_services("s1", storage, CFG, client=client))
    assert resumed.state.stage == FlowStage.SUBMITTED
    assert resumed.state.cart.cart_id == CART_ID
    assert resumed.state.purchase.purchase_id == "p-1"

    result = await resumed.run("confirm")
    assert result.success

    elsewhere = BookingFlow.resume("other", build_flow_services("other", storage, CFG, client=client))
    assert elsewhere.state.stage == FlowStage.IDLE


async def test_overlapping_submits_book_once(flow, storefront):
    async def slow_booking(request):
        await asyncio.sleep(0.02)
        return httpx.Response(200, json=_booking_body())

    storefront.on("POST", "/trips/frontend", handler=slow_booking)
    await flow.run("search", query=QUERY)
    await flow.run("select", trip="trip-1")

    first, second = await asyncio.gather(
        flow.run("submit", contact=CONTACT, passengers=PASSENGERS),
        flow.run("submit", contact=CONTACT, passengers=PASSENGERS),
        return_exceptions=True,
    )

    assert first.success
    assert isinstance(second, FlowStateError)
    assert second.stage == "submitted"
    assert len(storefront.calls("POST", "/trips/frontend")) == 1
    assert flow.state.stage == FlowStage.SUBMITTED


async def test_repeated_search_within_cooldown_keeps_results(storefront, client, storage):
    cfg = Settings(poll_delay_ms=1, search_cooldown_seconds=60)
    flow = BookingFlow.start("s1", build_flow_services("s1", storage, cfg, client=client))

    first = await flow.run("search", query=QUERY)
    again = await flow.run("search", query=QUERY)

    assert len(storefront.calls("GET", "/search")) == 1
    assert [r.trip_id for r in again] == [r.trip_id for r in first] == ["trip-1"]
    assert [r.trip_id for r in flow.state.routes] == ["trip-1"]

    selection = await flow.run("select", trip="trip-1")
    assert selection.success

    await flow.run("search", query=QUERY)
    assert flow.state.stage == FlowStage.SELECTED
    assert flow.state.cart.cart_id == CART_ID
