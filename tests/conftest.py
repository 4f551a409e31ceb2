import inspect
import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from services.session_store import CartSessionStore, InMemoryStorage, PurchaseSessionStore
from services.storefront_client import StorefrontClient

BASE_URL = "http://gateway.test/api"


class FakeGateway:
    """Path-routed stand-in for the storefront gateway, recording every request."""

    def __init__(self) -> None:
        self.routes: Dict[Tuple[str, str], Callable[[httpx.Request], Any]] = {}
        self.requests: List[httpx.Request] = []

    def on(self, method: str, path: str, body: Any = None, status: int = 200, handler: Optional[Callable] = None) -> None:
        self.routes[(method, path)] = handler or (lambda request: httpx.Response(status, json=body))

    def sequence(self, method: str, path: str, bodies: List[Any]) -> None:
        """Serve `bodies` in order, repeating the last one."""
        remaining = list(bodies)

        def handler(request: httpx.Request) -> httpx.Response:
            body = remaining.pop(0) if len(remaining) > 1 else remaining[0]
            return httpx.Response(200, json=body)

        self.routes[(method, path)] = handler

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and _local_path(r) == path]

    def last_json(self, method: str, path: str) -> Any:
        return json.loads(self.calls(method, path)[-1].content)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.routes.get((request.method, _local_path(request)))
        if handler is None:
            return httpx.Response(404, json={"message": f"no route for {request.method} {request.url.path}"})
        response = handler(request)
        if inspect.isawaitable(response):
            response = await response
        return response


def _local_path(request: httpx.Request) -> str:
    path = request.url.path
    return path[len("/api"):] if path.startswith("/api") else path


def raw_trip(
    trip_id: str = "trip-1",
    price_cents: int = 2500,
    departure: str = "2025-03-01T08:15:00",
    arrival: str = "2025-03-01T11:45:00",
    search_id: Optional[str] = "search-1",
) -> Dict[str, Any]:
    trip: Dict[str, Any] = {
        "id": trip_id,
        "segments": [
            {
                "id": f"{trip_id}-seg",
                "segment_id": f"{trip_id}-seg",
                "origin": {"name": "Boston"},
                "destination": {"name": "New York"},
                "departure_time": {"timestamp": departure},
                "arrival_time": {"timestamp": arrival},
                "operator": {"name": "Greyhound"},
            }
        ],
        "prices": [{"prices": {"total": price_cents, "currency": "USD"}}],
    }
    if search_id:
        trip["search_id"] = search_id
    return trip


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
async def client(gateway):
    c = StorefrontClient(BASE_URL, transport=httpx.MockTransport(gateway))
    yield c
    await c.close()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def cart_store(storage) -> CartSessionStore:
    return CartSessionStore(storage, namespace="s1")


@pytest.fixture
def purchase_store(storage) -> PurchaseSessionStore:
    return PurchaseSessionStore(storage, namespace="s1")


@pytest.fixture
def make_trip():
    return raw_trip
