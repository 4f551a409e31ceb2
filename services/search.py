from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional

from models.trips import UNKNOWN_ID, BusRoute, SearchQuery
from services.agent_attribution import AgentAttribution
from services.errors import (
    InvalidResponseError,
    PollCancelledError,
    PollTimeoutError,
    StorefrontNetworkError,
    UpstreamHTTPError,
)
from services.storefront_client import StorefrontClient, StorefrontResponse
from services.trip_mapper import as_identifier, dig, first_match, map_trips, recover_response_search_id

logger = logging.getLogger(__name__)

SEARCH_COOLDOWN_SECONDS = 2.0
DEFAULT_POLL_ATTEMPTS = 20
DEFAULT_POLL_DELAY_MS = 1500

POLL_TIMEOUT_MESSAGE = "Timeout — trips not ready."
POLL_CANCELLED_MESSAGE = "Search cancelled."
SEARCH_NETWORK_ERROR_MESSAGE = (
    "Network error: Unable to connect to the trip search service. "
    "Please check your internet connection and try again."
)
MISSING_CONTEXT_MESSAGE = "Invalid API response: missing search context and trip data"

Clock = Callable[[], float]

POLL_SEARCH_ID_EXTRACTORS = (
    lambda r: r.get("searchId"),
    lambda r: r.get("search_id"),
    lambda r: r.get("id"),
    lambda r: r.get("contextId"),
)

SEARCH_CONTEXT_EXTRACTORS = (
    lambda r: r.get("searchId"),
    lambda r: r.get("search_id"),
    lambda r: r.get("id"),
    lambda r: dig(r, "metadata", "searchId"),
)


# ---------------------------------------------------------------------------
# Poll Engine
# ---------------------------------------------------------------------------


class PollEngine:
    """
    Polls an asynchronous search job until every returned trip is enriched
    (no placeholder times or places), or the attempt budget runs out.
    """

    def __init__(
        self,
        client: StorefrontClient,
        max_attempts: int = DEFAULT_POLL_ATTEMPTS,
        delay_ms: int = DEFAULT_POLL_DELAY_MS,
    ) -> None:
        self.client = client
        self.max_attempts = max_attempts
        self.delay_ms = delay_ms

    async def poll(
        self,
        search_id: str,
        max_attempts: Optional[int] = None,
        delay_ms: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> List[BusRoute]:
        attempts = max_attempts if max_attempts is not None else self.max_attempts
        delay = (delay_ms if delay_ms is not None else self.delay_ms) / 1000

        for attempt in range(1, attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                raise PollCancelledError(POLL_CANCELLED_MESSAGE)

            routes: List[BusRoute] = []
            try:
                resp = await self.client.get("/poll", params={"searchId": search_id}, request_prefix="poll")
                routes = self._routes_from(resp, search_id)
            except StorefrontNetworkError as exc:
                logger.warning("[poll] attempt %d/%d failed: %s", attempt, attempts, exc)

            if routes and all(r.is_enriched() for r in routes):
                logger.info("[poll] %d trip(s) ready after %d attempt(s)", len(routes), attempt)
                return routes
            logger.debug("[poll] attempt %d/%d: trips not ready", attempt, attempts)

            if attempt < attempts:
                await self._wait(delay, cancel_event)

        logger.error("[poll] giving up on %s after %d attempts", search_id, attempts)
        raise PollTimeoutError(POLL_TIMEOUT_MESSAGE)

    @staticmethod
    def _routes_from(resp: StorefrontResponse, search_id: str) -> List[BusRoute]:
        data = resp.data
        if not isinstance(data, Mapping) or not data.get("success"):
            return []
        trips = data.get("trips")
        if not isinstance(trips, list) or not trips:
            return []
        poll_search_id = first_match(POLL_SEARCH_ID_EXTRACTORS, data) or search_id or UNKNOWN_ID
        return map_trips(trips, poll_search_id)

    @staticmethod
    async def _wait(delay: float, cancel_event: Optional[asyncio.Event]) -> None:
        if cancel_event is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise PollCancelledError(POLL_CANCELLED_MESSAGE)


# ---------------------------------------------------------------------------
# Search Coordinator
# ---------------------------------------------------------------------------


@dataclass
class InFlightSearch:
    key: str
    started_at: float
    task: "asyncio.Task[List[BusRoute]]"


@dataclass
class CompletedSearch:
    key: str
    completed_at: float


@dataclass
class SearchContext:
    """Dedupe bookkeeping for one coordinator: at most one search in flight."""

    in_flight: Optional[InFlightSearch] = None
    last_completed: Optional[CompletedSearch] = None


def build_search_params(query: SearchQuery, agent_meta: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    pax = query.passengers
    params: Dict[str, str] = {
        "origin": query.origin,
        "destination": query.destination,
        "date": query.departure_date,
        "adults": str(pax.adults),
        "children": str(max(pax.children, 0)),
    }
    if pax.children > 0:
        params["age"] = ",".join(str(a) for a in pax.normalized_children_ages())
    if pax.seniors:
        params["seniors"] = str(pax.seniors)
    if pax.students:
        params["students"] = str(pax.students)
    if query.filters.max_price:
        params["maxPrice"] = f"{query.filters.max_price:g}"
    if query.filters.departure_time:
        params["departureTime"] = query.filters.departure_time
    if query.return_date:
        params["returnDate"] = query.return_date
    if agent_meta:
        params.update(agent_meta)
    return params


class SearchCoordinator:
    """
    Runs trip searches against the gateway.

    Identical queries share one request while it is in flight, and an
    identical query repeated within the cooldown window after completion
    returns no results instead of hitting the gateway again.
    """

    def __init__(
        self,
        client: StorefrontClient,
        poll_engine: Optional[PollEngine] = None,
        agent: Optional[AgentAttribution] = None,
        context: Optional[SearchContext] = None,
        cooldown_seconds: float = SEARCH_COOLDOWN_SECONDS,
        clock: Clock = time.monotonic,
    ) -> None:
        self.client = client
        self.poll_engine = poll_engine or PollEngine(client)
        self.agent = agent
        self.context = context or SearchContext()
        self.cooldown_seconds = cooldown_seconds
        self.clock = clock

    def in_cooldown(self, query: SearchQuery) -> bool:
        """True when `search(query)` would return the cooldown's empty result."""
        last = self.context.last_completed
        return (
            last is not None
            and last.key == query.dedupe_key()
            and self.clock() - last.completed_at < self.cooldown_seconds
        )

    async def search(self, query: SearchQuery, cancel_event: Optional[asyncio.Event] = None) -> List[BusRoute]:
        key = query.dedupe_key()
        ctx = self.context

        if ctx.in_flight is not None and ctx.in_flight.key == key:
            logger.info(
                "[search] identical search in flight for %.2fs, joining it",
                self.clock() - ctx.in_flight.started_at,
            )
            return await asyncio.shield(ctx.in_flight.task)

        if self.in_cooldown(query):
            logger.info("[search] identical search completed %.2fs ago, skipping", self.clock() - ctx.last_completed.completed_at)
            return []

        task = asyncio.ensure_future(self._run(query, key, cancel_event))
        ctx.in_flight = InFlightSearch(key=key, started_at=self.clock(), task=task)
        return await asyncio.shield(task)

    async def _run(self, query: SearchQuery, key: str, cancel_event: Optional[asyncio.Event]) -> List[BusRoute]:
        try:
            return await self._execute(query, cancel_event)
        finally:
            ctx = self.context
            if ctx.in_flight is not None and ctx.in_flight.key == key:
                ctx.in_flight = None
            ctx.last_completed = CompletedSearch(key=key, completed_at=self.clock())

    async def _execute(self, query: SearchQuery, cancel_event: Optional[asyncio.Event]) -> List[BusRoute]:
        meta = self.agent.metadata() if self.agent else {}
        params = build_search_params(query, meta)
        logger.info("[search] %s -> %s on %s", query.origin, query.destination, query.departure_date)

        try:
            resp = await self.client.get("/search", params=params, request_prefix="search")
        except StorefrontNetworkError as exc:
            raise StorefrontNetworkError(SEARCH_NETWORK_ERROR_MESSAGE) from exc

        if not resp.ok:
            logger.error("[search] server error %s", resp.status_code)
            raise UpstreamHTTPError(f"Server error: {resp.status_code}", resp.status_code)
        if resp.json_error is not None or not isinstance(resp.data, Mapping):
            raise InvalidResponseError(f"Invalid JSON response: {resp.json_error or 'unexpected body'}")

        data = resp.data
        job_id = as_identifier(data.get("searchId"))
        if job_id and data.get("trips") is None:
            logger.info("[search] got job %s, polling", job_id)
            return await self.poll_engine.poll(job_id, cancel_event=cancel_event)

        trips = data.get("trips")
        if not isinstance(trips, list):
            if first_match(SEARCH_CONTEXT_EXTRACTORS, data):
                logger.warning("[search] response has a search context but no trips")
                return []
            raise InvalidResponseError(MISSING_CONTEXT_MESSAGE)

        search_id = recover_response_search_id(data)
        if not search_id:
            logger.warning("[search] no search id in response, continuing without one")
            search_id = UNKNOWN_ID
        routes = map_trips(trips, search_id)
        logger.info("[search] mapped %d trip(s) for search %s", len(routes), search_id)
        return routes
