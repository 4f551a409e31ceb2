import pytest

from models.trips import BusRoute, SearchQuery
from services.segments import MISSING_SEGMENTS_MESSAGE
from services.selection import (
    INVALID_TRIP_MESSAGE,
    MISSING_CART_MESSAGE,
    MISSING_SEARCH_MESSAGE,
    TripSelectionService,
    validate_cart_id,
)
from services.trip_mapper import map_trip

QUERY = SearchQuery(origin="Boston", destination="New York", departure_date="2025-03-01", search_id="search-1")
CART_ID = "abc-defg-hijk-lmno-pqrst"


@pytest.mark.parametrize(
    "raw, expected",
    [
        (CART_ID, CART_ID),
        ("abcdefghijklmnopqrst", "abcdefghijklmnopqrst"),
        ("  abc-defg-hijk-lmno-pqrstuv  ", "abc-defg-hijk-lmno-pqrstuv"),
        ("abc-defg-hijk-lmno-pqrstuvw", None),
        ("abc123", None),
        ("", None),
        (None, None),
    ],
)
def test_validate_cart_id(raw, expected):
    assert validate_cart_id(raw) == expected


@pytest.fixture
def service(client, cart_store):
    return TripSelectionService(client, cart_store)


@pytest.fixture
def trip(make_trip):
    return map_trip(make_trip())


async def test_select_opens_cart_session(service, gateway, cart_store, trip):
    gateway.on(
        "POST",
        "/trips/select",
        {"busbudCartId": CART_ID, "tripId": "trip-1", "passengerQuestions": {"required": ["dob"]}},
    )

    result, cart = await service.select(trip, QUERY)

    assert result.success
    assert result.cart_id == CART_ID
    assert cart.quoted_total == 25.0
    assert cart.quoted_currency == "USD"
    assert cart.passenger_questions.allowed_keys() == {"dob"}
    assert cart_store.load().cart_id == CART_ID

    payload = gateway.last_json("POST", "/trips/select")
    assert payload["tripId"] == "trip-1"
    assert payload["x-departure"] == "2025-03-01"
    assert payload["searchId"] == "search-1"
    assert payload["segments"] == [{"id": "trip-1-seg", "isLegacy": False}]
    assert payload["passengers"]["childrenAges"] == []
    assert "busbudCartId" not in payload


async def test_existing_cart_is_reused_unless_forced(service, gateway, trip):
    gateway.on("POST", "/trips/select", {"busbudCartId": CART_ID, "tripId": "trip-1"})

    await service.select(trip, QUERY)
    await service.select(trip, QUERY)
    assert gateway.last_json("POST", "/trips/select")["busbudCartId"] == CART_ID

    await service.select(trip, QUERY, force_new_cart=True)
    assert "busbudCartId" not in gateway.last_json("POST", "/trips/select")


async def test_malformed_cart_id_fails_without_saving(service, gateway, cart_store, trip):
    gateway.on("POST", "/trips/select", {"busbudCartId": "abc123", "tripId": "trip-1"})

    result, cart = await service.select(trip, QUERY)

    assert not result.success
    assert result.message == MISSING_CART_MESSAGE
    assert cart is None
    assert cart_store.load() is None


async def test_gateway_error_message_is_surfaced(service, gateway, trip):
    gateway.on("POST", "/trips/select", {"message": "Trip sold out"}, status=400)
    result, _ = await service.select(trip, QUERY)
    assert result.message == "Trip sold out"

    gateway.on("POST", "/trips/select", None, status=500)
    result, _ = await service.select(trip, QUERY)
    assert result.message == "HTTP error! status: 500"


async def test_trip_without_segments_never_reaches_gateway(service, gateway):
    result, _ = await service.select(BusRoute(), QUERY)

    assert result.message == MISSING_SEGMENTS_MESSAGE
    assert gateway.requests == []


async def test_sentinel_places_are_rejected(service, gateway):
    result, _ = await service.select(BusRoute(id="t1", trip_id="t1"), QUERY)

    assert result.message == INVALID_TRIP_MESSAGE
    assert gateway.requests == []


async def test_incomplete_query_is_rejected(service, gateway, trip):
    result, _ = await service.select(trip, QUERY.model_copy(update={"departure_date": ""}))

    assert result.message == MISSING_SEARCH_MESSAGE
    assert gateway.requests == []
