from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from collections import OrderedDict
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import time

import httpx

from app.settings import Settings, configure_logging, settings
from graph.booking_flow import BookingFlow, build_flow_services, default_storage
from models.booking import ContactInfo, Passenger
from models.session import CART_TTL_SECONDS
from models.trips import BusRoute, SearchQuery
from services.agent_attribution import AgentAttribution
from services.errors import (
    BookingFlowError,
    FlowStateError,
    InvalidTripDataError,
    PassengerValidationError,
    PollCancelledError,
    PollTimeoutError,
)
from services.session_store import AgentHeaderStore, BookingHistoryStore, KeyValueStorage
from services.storefront_client import StorefrontClient
from tools.error_messages import map_trip_error_to_user_message

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Bus Storefront Booking API", version="0.1.0")


class FlowRegistry:
    """
    Live booking flows by session id. The gateway client and agent identity
    are shared; each session gets its own stores and search context.

    Flows idle for longer than a cart lives are dropped, and past
    `max_live_sessions` the least recently used idle flow goes first. A
    dropped session is rebuilt from its stores on the next request.
    """

    def __init__(
        self,
        cfg: Settings = settings,
        storage: Optional[KeyValueStorage] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        idle_ttl_seconds: float = CART_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.cfg = cfg
        self.storage = storage or default_storage(cfg)
        self.client = StorefrontClient(cfg.api_base_url, cfg.request_timeout_seconds, transport=transport)
        self.agent = AgentAttribution(
            AgentHeaderStore(self.storage),
            agent_identity_path=cfg.agent_identity_path,
            user_identity_path=cfg.user_identity_path,
        )
        self.agent.install(self.client.http)
        self.history = BookingHistoryStore(self.storage)
        self.idle_ttl_seconds = idle_ttl_seconds
        self.clock = clock
        # session id -> (flow, last used); least recently used first
        self._flows: "OrderedDict[str, Tuple[BookingFlow, float]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._flows)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._flows

    def get(self, session_id: str) -> BookingFlow:
        now = self.clock()
        self._evict_idle(now)
        entry = self._flows.pop(session_id, None)
        if entry is None:
            services = build_flow_services(session_id, self.storage, self.cfg, client=self.client, agent=self.agent)
            flow = BookingFlow.resume(session_id, services)
        else:
            flow = entry[0]
        self._flows[session_id] = (flow, now)
        self._evict_overflow()
        return flow

    def discard(self, session_id: str) -> None:
        entry = self._flows.get(session_id)
        if entry is not None and not entry[0].busy:
            del self._flows[session_id]
            logger.info("[api] dropped flow for session %s", session_id)

    def _evict_idle(self, now: float) -> None:
        expired = [
            sid for sid, (flow, used) in self._flows.items()
            if now - used >= self.idle_ttl_seconds and not flow.busy
        ]
        for sid in expired:
            del self._flows[sid]
        if expired:
            logger.info("[api] evicted %d idle flow(s)", len(expired))

    def _evict_overflow(self) -> None:
        # the most recent entry is the caller's own flow and is never a candidate
        for sid in list(self._flows)[:-1]:
            if len(self._flows) <= self.cfg.max_live_sessions:
                break
            if not self._flows[sid][0].busy:
                del self._flows[sid]
                logger.info("[api] evicted least recently used flow %s", sid)


REGISTRY = FlowRegistry()


def get_registry() -> FlowRegistry:
    return REGISTRY


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

_CONTEXT_BY_ACTION = {
    "search": "search",
    "select": "trip-selection",
    "submit": "booking",
    "acknowledge-price": "booking",
    "confirm": "purchase",
}


def _context_for(path: str) -> str:
    return _CONTEXT_BY_ACTION.get(path.rstrip("/").rsplit("/", 1)[-1], "generic")


def _status_for(exc: BookingFlowError) -> int:
    if isinstance(exc, FlowStateError):
        return 409
    if isinstance(exc, (PassengerValidationError, InvalidTripDataError)):
        return 422
    if isinstance(exc, PollTimeoutError):
        return 504
    if isinstance(exc, PollCancelledError):
        return 409
    return 502


@app.exception_handler(BookingFlowError)
async def booking_flow_error_handler(request: Request, exc: BookingFlowError):
    mapped = map_trip_error_to_user_message(_context_for(request.url.path), error=exc)
    return JSONResponse(status_code=_status_for(exc), content={"error": mapped.model_dump()})


def _response(flow: BookingFlow, result: Any, context: str) -> Dict[str, Any]:
    body: Dict[str, Any] = {"stage": flow.state.stage.value}
    if isinstance(result, BaseModel):
        body["result"] = result.model_dump(mode="json")
        if getattr(result, "success", True) is False:
            body["error"] = map_trip_error_to_user_message(context, message=getattr(result, "message", None)).model_dump()
    elif isinstance(result, list):
        body["result"] = [r.model_dump(mode="json") for r in result]
    else:
        body["result"] = result
    if flow.state.pending_price_update is not None:
        body["price_update"] = flow.state.pending_price_update.model_dump(mode="json")
    if flow.state.fare_conflict is not None:
        body["fare_conflict"] = flow.state.fare_conflict.model_dump(mode="json")
    return body


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class SelectRequest(BaseModel):
    trip_id: Optional[str] = None
    trip: Optional[BusRoute] = None
    return_trip_id: Optional[str] = None
    return_trip: Optional[BusRoute] = None
    force_new_cart: bool = False


class SubmitRequest(BaseModel):
    contact_info: ContactInfo
    passengers: List[Passenger] = Field(default_factory=list)
    payment_method: str = "card"


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------


@app.get("/health")
async def health(registry: FlowRegistry = Depends(get_registry)):
    return {"status": "ok", "gateway": await registry.client.check_health()}


@app.post("/sessions/{session_id}/search")
async def search(session_id: str, query: SearchQuery, registry: FlowRegistry = Depends(get_registry)):
    flow = registry.get(session_id)
    routes = await flow.run("search", query=query)
    return _response(flow, routes, "search")


@app.post("/sessions/{session_id}/select")
async def select(session_id: str, req: SelectRequest, registry: FlowRegistry = Depends(get_registry)):
    flow = registry.get(session_id)
    result = await flow.run(
        "select",
        trip=req.trip or req.trip_id,
        return_trip=req.return_trip,
        return_trip_id=req.return_trip_id,
        force_new_cart=req.force_new_cart,
    )
    return _response(flow, result, "trip-selection")


@app.post("/sessions/{session_id}/submit")
async def submit(session_id: str, req: SubmitRequest, registry: FlowRegistry = Depends(get_registry)):
    flow = registry.get(session_id)
    result = await flow.run(
        "submit",
        contact=req.contact_info,
        passengers=req.passengers,
        payment_method=req.payment_method,
    )
    return _response(flow, result, "booking")


@app.post("/sessions/{session_id}/acknowledge-price")
async def acknowledge_price(session_id: str, registry: FlowRegistry = Depends(get_registry)):
    flow = registry.get(session_id)
    result = await flow.run("acknowledge_price")
    return _response(flow, result, "booking")


@app.post("/sessions/{session_id}/confirm")
async def confirm(session_id: str, registry: FlowRegistry = Depends(get_registry)):
    flow = registry.get(session_id)
    result = await flow.run("confirm")
    return _response(flow, result, "purchase")


@app.post("/sessions/{session_id}/restart")
async def restart(session_id: str, registry: FlowRegistry = Depends(get_registry)):
    flow = registry.get(session_id)
    await flow.run("restart")
    body = _response(flow, None, "generic")
    registry.discard(session_id)
    return body


@app.get("/sessions/{session_id}")
def get_session(session_id: str, registry: FlowRegistry = Depends(get_registry)):
    flow = registry.get(session_id)
    return {"session_id": session_id, "state": flow.state.model_dump(mode="json")}


@app.get("/bookings")
def list_bookings(registry: FlowRegistry = Depends(get_registry)):
    return {"bookings": [b.model_dump(mode="json") for b in registry.history.list()]}
