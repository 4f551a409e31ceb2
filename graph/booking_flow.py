from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set, TypedDict

import httpx
from langgraph.graph import END, START, StateGraph

from app.settings import Settings, settings as default_settings
from graph.policies import guard_violation
from models.booking import ConfirmationResult, MyBookingSummary
from models.state import BookingFlowState, FlowStage
from models.trips import NOT_AVAILABLE, BusRoute
from services.agent_attribution import AgentAttribution
from services.booking import BookingSubmitter
from services.errors import BookingFlowError, FlowStateError, InvalidTripDataError
from services.purchase import PriceDriftGate, PurchaseConfirmer
from services.search import PollEngine, SearchCoordinator
from services.selection import TripSelectionService
from services.session_store import (
    AgentHeaderStore,
    BookingHistoryStore,
    CartSessionStore,
    InMemoryStorage,
    JsonFileStorage,
    KeyValueStorage,
    PurchaseSessionStore,
)
from services.storefront_client import StorefrontClient
from services.tickets import TicketService

logger = logging.getLogger(__name__)

HOLD_CONFIRMED_MESSAGE = "Booking held. Complete payment in store to receive your tickets."


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


@dataclass
class FlowServices:
    """Everything one booking session talks to. Stores are namespaced per session."""

    client: StorefrontClient
    agent: AgentAttribution
    search: SearchCoordinator
    selection: TripSelectionService
    booking: BookingSubmitter
    purchase: PurchaseConfirmer
    drift_gate: PriceDriftGate
    tickets: TicketService
    cart_store: CartSessionStore
    purchase_store: PurchaseSessionStore
    history: BookingHistoryStore
    background: Set["asyncio.Task[Any]"] = field(default_factory=set)

    def spawn(self, coro: Any) -> "asyncio.Task[Any]":
        """Fire-and-forget, keeping a reference until the task finishes."""
        task = asyncio.ensure_future(coro)
        self.background.add(task)
        task.add_done_callback(self.background.discard)
        return task


def default_storage(cfg: Settings = default_settings) -> KeyValueStorage:
    if cfg.session_storage_path:
        return JsonFileStorage(cfg.session_storage_path)
    return InMemoryStorage()


def build_flow_services(
    session_id: str,
    storage: KeyValueStorage,
    cfg: Settings = default_settings,
    client: Optional[StorefrontClient] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    agent: Optional[AgentAttribution] = None,
) -> FlowServices:
    """`client` and `agent` may be shared across sessions; stores never are."""
    client = client or StorefrontClient(cfg.api_base_url, cfg.request_timeout_seconds, transport=transport)
    agent = agent or AgentAttribution(
        AgentHeaderStore(storage),
        agent_identity_path=cfg.agent_identity_path,
        user_identity_path=cfg.user_identity_path,
    )
    agent.install(client.http)

    cart_store = CartSessionStore(storage, namespace=session_id)
    purchase_store = PurchaseSessionStore(storage, namespace=session_id)
    poll_engine = PollEngine(client, max_attempts=cfg.poll_max_attempts, delay_ms=cfg.poll_delay_ms)
    return FlowServices(
        client=client,
        agent=agent,
        search=SearchCoordinator(client, poll_engine, agent, cooldown_seconds=cfg.search_cooldown_seconds),
        selection=TripSelectionService(client, cart_store, agent),
        booking=BookingSubmitter(client, cart_store, purchase_store, agent),
        purchase=PurchaseConfirmer(client, cart_store, purchase_store),
        drift_gate=PriceDriftGate(cart_store),
        tickets=TicketService(client),
        cart_store=cart_store,
        purchase_store=purchase_store,
        history=BookingHistoryStore(storage),
    )


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------


class GraphState(TypedDict, total=False):
    flow: BookingFlowState
    action: str
    params: Dict[str, Any]
    result: Any
    error: str
    next_action: str


def _ensure_defaults(state: Dict[str, Any]) -> Dict[str, Any]:
    state.setdefault("params", {})
    state.setdefault("action", "")
    return state


def _resolve_route(flow: BookingFlowState, ref: Any) -> Optional[BusRoute]:
    if ref is None or isinstance(ref, BusRoute):
        return ref
    if isinstance(ref, dict):
        return BusRoute.model_validate(ref)
    for route in flow.routes:
        if ref in (route.id, route.trip_id):
            return route
    raise InvalidTripDataError(f"Invalid trip data: trip {ref} is not in the current search results.")


def _summary(flow: BookingFlowState, status: str) -> Optional[MyBookingSummary]:
    if flow.cart is None or not flow.cart.cart_id:
        return None
    pnr = (flow.booking.pnr if flow.booking else None) or (flow.purchase.pnr if flow.purchase else None)
    depart_at = flow.query.departure_date if flow.query else None
    if flow.outbound is not None and flow.outbound.departure_time != NOT_AVAILABLE:
        depart_at = f"{depart_at} {flow.outbound.departure_time}" if depart_at else flow.outbound.departure_time
    return MyBookingSummary(
        cart_id=flow.cart.cart_id,
        pnr=pnr,
        status=status,
        origin=flow.query.origin if flow.query else (flow.outbound.origin if flow.outbound else None),
        destination=flow.query.destination if flow.query else (flow.outbound.destination if flow.outbound else None),
        depart_at=depart_at,
    )


def build_booking_graph(deps: FlowServices):
    """One invocation runs one action: route, then exactly one step (two for submit)."""

    def route(state: GraphState) -> Dict[str, Any]:
        s = _ensure_defaults(dict(state))
        flow: BookingFlowState = s["flow"]
        action = s["action"]
        violation = guard_violation(action, flow)
        if violation:
            logger.info("[flow] %s rejected in stage %s: %s", action, flow.stage.value, violation)
            return {"next_action": "reject", "error": violation}
        if action == "confirm":
            return {"next_action": "finalize_hold" if flow.is_in_store else "confirm_purchase"}
        return {"next_action": action}

    async def search(state: GraphState) -> Dict[str, Any]:
        flow: BookingFlowState = state["flow"]
        params = state.get("params", {})
        query = params["query"]
        if flow.query is not None and flow.query.dedupe_key() == query.dedupe_key() and deps.search.in_cooldown(query):
            # repeated submit of the same search: keep what is on screen
            logger.info("[flow] repeated search within cooldown, keeping %d route(s)", len(flow.routes))
            return {"flow": flow, "result": flow.routes}

        flow.stage = FlowStage.SEARCHING
        flow.query = query
        try:
            routes = await deps.search.search(query, cancel_event=params.get("cancel_event"))
        except BookingFlowError as exc:
            flow.routes = []
            flow.errors.append(str(exc))
            raise
        flow.routes = routes
        return {"flow": flow, "result": routes}

    async def select(state: GraphState) -> Dict[str, Any]:
        flow: BookingFlowState = state["flow"]
        params = state.get("params", {})
        trip = _resolve_route(flow, params.get("trip"))
        if trip is None:
            raise InvalidTripDataError("Invalid trip data. Please select a different trip.")
        return_trip = _resolve_route(flow, params.get("return_trip"))
        return_trip_id = params.get("return_trip_id")
        if return_trip is not None and not return_trip_id:
            return_trip_id = return_trip.trip_id if return_trip.trip_id != "unknown" else return_trip.id

        result, cart = await deps.selection.select(
            trip,
            flow.query,
            return_trip_id=return_trip_id,
            return_trip=return_trip,
            force_new_cart=bool(params.get("force_new_cart")),
            cart=flow.cart,
        )
        if not result.success:
            flow.errors.append(result.message)
            return {"flow": flow, "result": result}

        # a new cart invalidates anything booked against the previous one
        deps.purchase_store.clear()
        flow.outbound = trip
        flow.inbound = return_trip
        flow.return_trip_id = return_trip_id
        flow.cart = cart
        flow.booking = None
        flow.purchase = None
        flow.pending_price_update = None
        flow.confirmation = None
        flow.fare_conflict = None
        flow.stage = FlowStage.SELECTED
        return {"flow": flow, "result": result}

    async def submit(state: GraphState) -> Dict[str, Any]:
        flow: BookingFlowState = state["flow"]
        params = state.get("params", {})
        flow.contact = params["contact"]
        flow.payment_method = params.get("payment_method") or "card"
        try:
            outcome = await deps.booking.submit(
                flow.contact,
                params.get("passengers") or [],
                flow.payment_method,
                flow.query,
                trip_id=flow.cart.trip_id if flow.cart else None,
                cart=flow.cart,
                purchase=flow.purchase,
            )
        except BookingFlowError as exc:
            flow.errors.append(str(exc))
            raise

        flow.cart = outcome.cart or flow.cart
        flow.booking = outcome.result
        if not outcome.result.success:
            flow.errors.append(outcome.result.message)
            return {"flow": flow, "result": outcome.result, "next_action": "done"}

        flow.purchase = outcome.purchase
        flow.stage = FlowStage.SUBMITTED
        return {"flow": flow, "result": outcome.result, "next_action": "price_gate"}

    def price_gate(state: GraphState) -> Dict[str, Any]:
        flow: BookingFlowState = state["flow"]
        flow.pending_price_update = deps.drift_gate.evaluate(flow.booking, flow.cart, flow.outbound, flow.inbound)
        return {"flow": flow}

    def acknowledge_price(state: GraphState) -> Dict[str, Any]:
        flow: BookingFlowState = state["flow"]
        drift = flow.pending_price_update
        flow.outbound, flow.inbound, flow.cart = deps.drift_gate.acknowledge(drift, flow.outbound, flow.inbound, flow.cart)
        flow.pending_price_update = None
        logger.info("[flow] fare change acknowledged, new total %.2f %s", drift.final_total, drift.currency)
        return {"flow": flow, "result": drift}

    async def finalize_hold(state: GraphState) -> Dict[str, Any]:
        flow: BookingFlowState = state["flow"]
        entry = _summary(flow, "booked")
        if entry is not None:
            deps.history.add(entry)
        pnr = entry.pnr if entry else None
        if pnr:
            deps.spawn(deps.tickets.send_email_notification(pnr))
        else:
            logger.warning("[flow] in-store hold has no PNR, skipping email notification")

        flow.confirmation = ConfirmationResult(
            success=True,
            purchase_id=flow.purchase.purchase_id if flow.purchase else None,
            purchase_uuid=flow.purchase.purchase_uuid if flow.purchase else None,
            message=HOLD_CONFIRMED_MESSAGE,
        )
        flow.stage = FlowStage.CONFIRMED
        return {"flow": flow, "result": flow.confirmation}

    async def confirm_purchase(state: GraphState) -> Dict[str, Any]:
        flow: BookingFlowState = state["flow"]
        result, purchase = await deps.purchase.confirm(flow.cart, flow.purchase)
        flow.purchase = purchase or flow.purchase
        flow.confirmation = result

        if result.success:
            entry = _summary(flow, "completed")
            if entry is not None:
                deps.history.add(entry)
            flow.stage = FlowStage.CONFIRMED
        elif result.is_fare_conflict:
            flow.fare_conflict = await deps.purchase.describe_fare_conflict(
                flow.cart,
                flow.purchase,
                flow.outbound.currency if flow.outbound else None,
            )
            flow.errors.append(flow.fare_conflict.message)
        else:
            health = await deps.client.check_health()
            logger.error("[flow] purchase not confirmed (%s); gateway health: %s", result.message, health.get("status"))
            flow.errors.append(result.message)
        return {"flow": flow, "result": result}

    def restart(state: GraphState) -> Dict[str, Any]:
        flow: BookingFlowState = state["flow"]
        deps.purchase_store.clear()
        deps.cart_store.clear()
        flow.reset()
        logger.info("[flow] session %s restarted", flow.session_id)
        return {"flow": flow, "result": None}

    def reject(state: GraphState) -> Dict[str, Any]:
        flow: BookingFlowState = state["flow"]
        raise FlowStateError(state.get("error") or "Action not allowed", stage=flow.stage.value, action=state.get("action"))

    graph = StateGraph(GraphState)
    graph.add_node("route", route)
    graph.add_node("search", search)
    graph.add_node("select", select)
    graph.add_node("submit", submit)
    graph.add_node("price_gate", price_gate)
    graph.add_node("acknowledge_price", acknowledge_price)
    graph.add_node("finalize_hold", finalize_hold)
    graph.add_node("confirm_purchase", confirm_purchase)
    graph.add_node("restart", restart)
    graph.add_node("reject", reject)

    graph.add_edge(START, "route")
    graph.add_conditional_edges(
        "route",
        lambda state: state.get("next_action"),
        {
            "search": "search",
            "select": "select",
            "submit": "submit",
            "acknowledge_price": "acknowledge_price",
            "finalize_hold": "finalize_hold",
            "confirm_purchase": "confirm_purchase",
            "restart": "restart",
            "reject": "reject",
        },
    )
    graph.add_conditional_edges(
        "submit",
        lambda state: state.get("next_action"),
        {"price_gate": "price_gate", "done": END},
    )
    for node in ("search", "select", "price_gate", "acknowledge_price", "finalize_hold", "confirm_purchase", "restart", "reject"):
        graph.add_edge(node, END)

    return graph.compile()


# ---------------------------------------------------------------------------
# Facade
# ---------------------------------------------------------------------------


class BookingFlow:
    """
    One traveller's booking. `run` executes a single action against the
    current state; the session stores are written through as steps succeed
    so a flow can be picked up again with `resume`.

    Actions on one flow run one at a time: a second `run` waits for the
    first, then sees the stage it left behind.
    """

    def __init__(self, services: FlowServices, state: BookingFlowState) -> None:
        self.services = services
        self.state = state
        self._graph = build_booking_graph(services)
        self._lock = asyncio.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @classmethod
    def start(cls, session_id: str, services: FlowServices) -> "BookingFlow":
        return cls(services, BookingFlowState(session_id=session_id))

    @classmethod
    def resume(cls, session_id: str, services: FlowServices) -> "BookingFlow":
        """Rebuild a flow from whatever the session stores still hold."""
        state = BookingFlowState(session_id=session_id)
        state.cart = services.cart_store.load()
        state.purchase = services.purchase_store.load() if state.cart is not None else None
        if state.purchase is not None:
            state.stage = FlowStage.SUBMITTED
        elif state.cart is not None:
            state.stage = FlowStage.SELECTED
        logger.info("[flow] resumed %s at stage %s", session_id, state.stage.value)
        return cls(services, state)

    async def run(self, action: str, **params: Any) -> Any:
        async with self._lock:
            out = await self._graph.ainvoke({"flow": self.state, "action": action, "params": params})
            self.state = out["flow"]
        return out.get("result")

    async def drain(self) -> None:
        """Wait for fire-and-forget work (email notifications) to finish."""
        if self.services.background:
            await asyncio.gather(*list(self.services.background), return_exceptions=True)
