import pytest

httpx = pytest.importorskip("httpx")

from agent_x402.discovery import (
    AgentCard,
    AgentDiscovery,
    AgentDiscoverySync,
    agent_base_url,
    agent_card_url,
    build_agent_card,
    build_capability,
)

from conftest import PRICE


def _card_payload(policy):
    capability = build_capability("generate_prompt", "Prompt", policy, input_schema={"type": "object"})
    return build_agent_card("Prompt Agent", "desc", "http://prompt.test/", policy, [capability]).to_payload()


def test_agent_card_shape(policy):
    card = _card_payload(policy)
    assert card["@context"] == "https://a2a.plus/context.jsonld"
    assert card["@type"] == "Agent"
    assert card["endpoints"] == {
        "task": "http://prompt.test/task",
        "agentCard": "http://prompt.test/.well-known/agent.json",
    }
    assert card["payment"]["required"] is True
    assert card["payment"]["defaultPrice"] == "0.01"
    assert card["payment"]["pricingModel"] == "per_call"

    pricing = card["capabilities"][0]["pricing"]
    assert pricing["price"] == "0.01"
    assert pricing["priceMinor"] == str(PRICE)
    assert card["capabilities"][0]["inputSchema"] == {"type": "object"}


@pytest.mark.parametrize(
    "url",
    [
        "http://prompt.test",
        "http://prompt.test/",
        "http://prompt.test/task",
        "http://prompt.test/task/",
        "http://prompt.test/.well-known/agent.json",
    ],
)
def test_base_url_normalization(url):
    assert agent_base_url(url) == "http://prompt.test"
    assert agent_card_url(url) == "http://prompt.test/.well-known/agent.json"


def test_price_in_whole_units_without_minor_field(policy):
    payload = _card_payload(policy)
    del payload["capabilities"][0]["pricing"]["priceMinor"]
    card = AgentCard.model_validate(payload)
    assert card.capability("generate_prompt").pricing.amount_minor == PRICE


def test_sync_discovery_caches_cards(policy):
    calls = []

    def handler(request):
        calls.append(str(request.url))
        return httpx.Response(200, json=_card_payload(policy))

    discovery = AgentDiscoverySync(httpx.Client(transport=httpx.MockTransport(handler)))
    assert discovery.price_of("http://prompt.test/task", "generate_prompt") == PRICE
    assert discovery.price_of("http://prompt.test", "generate_prompt") == PRICE
    assert discovery.price_of("http://prompt.test", "unknown") is None
    assert calls == ["http://prompt.test/.well-known/agent.json"]


def test_sync_discovery_tolerates_missing_or_invalid_cards():
    def handler(request):
        if request.url.host == "missing.test":
            return httpx.Response(404)
        return httpx.Response(200, json={"capabilities": "nope"})

    discovery = AgentDiscoverySync(httpx.Client(transport=httpx.MockTransport(handler)))
    assert discovery.fetch("http://missing.test") is None
    assert discovery.fetch("http://broken.test") is None


@pytest.mark.asyncio
async def test_async_discovery(policy):
    def handler(request):
        return httpx.Response(200, json=_card_payload(policy))

    async_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    discovery = AgentDiscovery(async_client)
    try:
        assert await discovery.price_of("http://prompt.test/task", "generate_prompt") == PRICE
    finally:
        await async_client.aclose()


@pytest.mark.asyncio
async def test_async_discovery_unreachable():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    async_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    try:
        assert await AgentDiscovery(async_client).fetch("http://down.test") is None
    finally:
        await async_client.aclose()


@pytest.mark.parametrize(
    "pricing",
    [
        {"price": "NaN"},
        {"price": "sNaN"},
        {"price": "Infinity"},
        {"price": "-Infinity"},
        {"price": "free"},
        {"price": "-0.5"},
    ],
)
def test_unusable_price_is_unknown(pricing):
    card = AgentCard.model_validate({"name": "x", "capabilities": [{"name": "generate_prompt", "pricing": pricing}]})
    assert card.capability("generate_prompt").pricing.amount_minor is None


def test_non_ascii_minor_price_falls_back_to_whole_units():
    pricing = {"price": "0.01", "priceMinor": "\u00b2"}
    card = AgentCard.model_validate({"name": "x", "capabilities": [{"name": "generate_prompt", "pricing": pricing}]})
    assert card.capability("generate_prompt").pricing.amount_minor == PRICE


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_sync_discovery_cache_expires(policy):
    calls = []

    def handler(request):
        calls.append(str(request.url))
        return httpx.Response(200, json=_card_payload(policy))

    clock = Clock()
    discovery = AgentDiscoverySync(httpx.Client(transport=httpx.MockTransport(handler)), ttl_seconds=60, clock=clock)
    discovery.fetch("http://prompt.test")
    clock.now += 59
    discovery.fetch("http://prompt.test")
    assert len(calls) == 1
    clock.now += 1
    discovery.fetch("http://prompt.test")
    assert len(calls) == 2


def test_sync_discovery_cache_is_bounded(policy):
    calls = []

    def handler(request):
        calls.append(request.url.host)
        return httpx.Response(200, json=_card_payload(policy))

    discovery = AgentDiscoverySync(httpx.Client(transport=httpx.MockTransport(handler)), max_entries=2)
    for host in ("a.test", "b.test", "c.test"):
        discovery.fetch(f"http://{host}")
    discovery.fetch("http://b.test")
    discovery.fetch("http://c.test")
    assert calls == ["a.test", "b.test", "c.test"]
    discovery.fetch("http://a.test")
    assert calls == ["a.test", "b.test", "c.test", "a.test"]
