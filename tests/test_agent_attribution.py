import asyncio

import httpx

from services.agent_attribution import AgentAttribution, normalize_agent_headers
from services.session_store import AgentHeaderStore, InMemoryStorage

AGENT_HEADERS = {
    "x-agent-mode": "true",
    "x-agent-email": "agent@example.com",
    "x-agent-id": "42",
    "x-agent-name": "Sam Agent",
}


def _agent(storage=None):
    return AgentAttribution(AgentHeaderStore(storage or InMemoryStorage()))


def test_normalize_drops_foreign_and_empty_headers():
    assert normalize_agent_headers({"X-Agent-Mode": "true", "x-agent-id": "", "Authorization": "secret"}) == {
        "x-agent-mode": "true"
    }


def test_inactive_agent_adds_nothing():
    agent = _agent()

    assert not agent.active
    assert agent.headers() == {}
    assert agent.metadata() == {}


def test_stored_identity_reactivates_agent_mode():
    storage = InMemoryStorage()
    AgentHeaderStore(storage).save_headers(AGENT_HEADERS)

    agent = _agent(storage)

    assert agent.active
    assert agent.metadata() == {
        "agentMode": "true",
        "agentEmail": "agent@example.com",
        "agentId": "42",
        "agentName": "Sam Agent",
    }


def test_deactivating_clears_identity():
    storage = InMemoryStorage()
    AgentHeaderStore(storage).save_headers(AGENT_HEADERS)
    agent = _agent(storage)

    agent.set_active(False)

    assert agent.headers() == {}
    assert AgentHeaderStore(storage).load_headers() == {}


async def test_headers_injected_on_gateway_requests(client, gateway):
    gateway.on("GET", "/health", {"ok": True})
    agent = _agent()
    agent.set_active(True)
    agent.set_headers(AGENT_HEADERS)
    agent.install(client.http)
    agent.install(client.http)

    await client.get("/health")

    request = gateway.calls("GET", "/health")[0]
    assert request.headers["x-agent-email"] == "agent@example.com"
    assert client.http.event_hooks["request"].count(agent.on_request) == 1


async def test_identity_bootstrapped_once_for_concurrent_requests(client, gateway):
    async def identity(request):
        await asyncio.sleep(0.01)
        return httpx.Response(200, json={"role": "agent", "email": "agent@example.com", "id": 42, "firstName": "Sam", "lastName": "Agent"})

    gateway.on("GET", "/auth/agent/me", handler=identity)
    gateway.on("GET", "/health", {"ok": True})
    agent = _agent()
    agent.set_active(True)
    agent.install(client.http)

    await asyncio.gather(client.get("/health"), client.get("/health"), client.get("/health"))

    assert len(gateway.calls("GET", "/auth/agent/me")) == 1
    for request in gateway.calls("GET", "/health"):
        assert request.headers["x-agent-id"] == "42"
        assert request.headers["x-agent-name"] == "Sam Agent"


async def test_non_agent_identity_is_not_adopted(client, gateway):
    gateway.on("GET", "/auth/agent/me", {"role": "customer", "email": "c@example.com"})
    gateway.on("GET", "/health", {"ok": True})
    agent = _agent()
    agent.set_active(True)
    agent.install(client.http)

    await client.get("/health")

    assert "x-agent-email" not in gateway.calls("GET", "/health")[0].headers
    assert agent.metadata() == {}
