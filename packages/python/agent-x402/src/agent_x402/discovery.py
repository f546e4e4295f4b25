"""Agent Card documents served at ``/.well-known/agent.json``."""

from __future__ import annotations

import logging
import re
import threading
import time
from collections import OrderedDict
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config import PricingPolicy, format_amount

logger = logging.getLogger(__name__)

AGENT_CARD_PATH = "/.well-known/agent.json"
AGENT_CARD_CONTEXT = "https://a2a.plus/context.jsonld"

_SUFFIX_RE = re.compile(r"(/task/?|/\.well-known/agent\.json/?)$")
_DIGITS_RE = re.compile(r"[0-9]+")

CARD_CACHE_TTL_SECONDS = 300
CARD_CACHE_MAX_ENTRIES = 128

Clock = Callable[[], float]


class CapabilityPricing(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    price: str
    price_minor: Optional[str] = Field(default=None, alias="priceMinor")
    currency: str = ""
    network: str = ""
    address: str = ""
    note: Optional[str] = None

    @property
    def amount_minor(self) -> Optional[int]:
        """Price in minor units; ``price`` itself is in whole currency units."""
        if self.price_minor is not None and _DIGITS_RE.fullmatch(self.price_minor.strip()):
            return int(self.price_minor.strip())
        try:
            value = Decimal(self.price).scaleb(18)
        except (InvalidOperation, ValueError):
            return None
        if not value.is_finite() or value < 0 or value != value.to_integral_value():
            return None
        return int(value)


class Capability(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    description: str = ""
    pricing: Optional[CapabilityPricing] = None
    input_schema: Dict[str, Any] = Field(default_factory=dict, alias="inputSchema")
    output_schema: Dict[str, Any] = Field(default_factory=dict, alias="outputSchema")


class AgentEndpoints(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    task: str
    agent_card: str = Field(alias="agentCard")


class AgentPayment(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    required: bool = True
    default_price: str = Field(alias="defaultPrice")
    currency: str
    network: str
    address: str
    min_amount: str = Field(alias="minAmount")
    pricing_model: str = Field(default="per_call", alias="pricingModel")
    note: Optional[str] = None


class AgentCard(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    context: str = Field(default=AGENT_CARD_CONTEXT, alias="@context")
    type: str = Field(default="Agent", alias="@type")
    name: str
    description: str = ""
    version: str = "1.0.0"
    capabilities: List[Capability] = Field(default_factory=list)
    endpoints: Optional[AgentEndpoints] = None
    payment: Optional[AgentPayment] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def capability(self, name: str) -> Optional[Capability]:
        for capability in self.capabilities:
            if capability.name == name:
                return capability
        return None

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def build_capability(
    name: str,
    description: str,
    policy: PricingPolicy,
    *,
    input_schema: Optional[Dict[str, Any]] = None,
    output_schema: Optional[Dict[str, Any]] = None,
    price_minor: Optional[int] = None,
) -> Capability:
    amount = policy.unit_price_minor if price_minor is None else price_minor
    display = format_amount(amount)
    return Capability(
        name=name,
        description=description,
        pricing=CapabilityPricing(
            price=display,
            price_minor=str(amount),
            currency=policy.currency,
            network=policy.network,
            address=policy.pay_to_address,
            note=f"Calling this capability costs {display} {policy.currency}",
        ),
        input_schema=input_schema or {},
        output_schema=output_schema or {},
    )


def build_agent_card(
    name: str,
    description: str,
    base_url: str,
    policy: PricingPolicy,
    capabilities: List[Capability],
    *,
    version: str = "1.0.0",
    provider: str = "agent-x402",
) -> AgentCard:
    base = base_url.rstrip("/")
    return AgentCard(
        name=name,
        description=description,
        version=version,
        capabilities=capabilities,
        endpoints=AgentEndpoints(task=f"{base}/task", agent_card=f"{base}{AGENT_CARD_PATH}"),
        payment=AgentPayment(
            required=not policy.is_free,
            default_price=format_amount(policy.unit_price_minor),
            currency=policy.currency,
            network=policy.network,
            address=policy.pay_to_address,
            min_amount=format_amount(policy.min_amount_minor),
            note="See capabilities[].pricing for per-capability prices",
        ),
        metadata={"provider": provider, "version": version},
    )


def agent_base_url(url: str) -> str:
    """Strip a trailing ``/task`` or ``/.well-known/agent.json`` from ``url``."""
    return _SUFFIX_RE.sub("", url.rstrip("/")).rstrip("/")


def agent_card_url(url: str) -> str:
    return f"{agent_base_url(url)}{AGENT_CARD_PATH}"


def _parse_card(response: httpx.Response, url: str) -> Optional[AgentCard]:
    if not response.is_success:
        logger.info("agent card not available at %s (status %s)", url, response.status_code)
        return None
    try:
        return AgentCard.model_validate(response.json())
    except (ValueError, ValidationError) as exc:
        logger.warning("agent card at %s is invalid: %s", url, exc)
        return None


def _price_of(card: Optional[AgentCard], capability: str) -> Optional[int]:
    if card is None:
        return None
    found = card.capability(capability)
    if found is None or found.pricing is None:
        return None
    return found.pricing.amount_minor


class _CardCache:
    """Agent cards keyed by base URL, bounded in size and age."""

    def __init__(self, ttl_seconds: float, max_entries: int, clock: Clock) -> None:
        if ttl_seconds <= 0 or max_entries <= 0:
            raise ValueError("card cache ttl and size must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: "OrderedDict[str, Tuple[float, AgentCard]]" = OrderedDict()

    def get(self, key: str) -> Optional[AgentCard]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, card = entry
            if self._clock() >= expires_at:
                del self._entries[key]
                return None
            self._entries.move_to_end(key)
            return card

    def put(self, key: str, card: AgentCard) -> None:
        with self._lock:
            self._entries[key] = (self._clock() + self.ttl_seconds, card)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class AgentDiscovery:
    """Async Agent Card lookups with a per-agent cache."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        *,
        ttl_seconds: float = CARD_CACHE_TTL_SECONDS,
        max_entries: int = CARD_CACHE_MAX_ENTRIES,
        clock: Clock = time.monotonic,
    ) -> None:
        self._client = http_client
        self._cache = _CardCache(ttl_seconds, max_entries, clock)

    async def fetch(self, agent_url: str) -> Optional[AgentCard]:
        base = agent_base_url(agent_url)
        cached = self._cache.get(base)
        if cached is not None:
            return cached
        url = agent_card_url(base)
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            logger.warning("agent card fetch failed for %s: %s", url, exc)
            return None
        card = _parse_card(response, url)
        if card is not None:
            self._cache.put(base, card)
        return card

    async def price_of(self, agent_url: str, capability: str) -> Optional[int]:
        return _price_of(await self.fetch(agent_url), capability)


class AgentDiscoverySync:
    def __init__(
        self,
        http_client: httpx.Client,
        *,
        ttl_seconds: float = CARD_CACHE_TTL_SECONDS,
        max_entries: int = CARD_CACHE_MAX_ENTRIES,
        clock: Clock = time.monotonic,
    ) -> None:
        self._client = http_client
        self._cache = _CardCache(ttl_seconds, max_entries, clock)

    def fetch(self, agent_url: str) -> Optional[AgentCard]:
        base = agent_base_url(agent_url)
        cached = self._cache.get(base)
        if cached is not None:
            return cached
        url = agent_card_url(base)
        try:
            response = self._client.get(url)
        except httpx.HTTPError as exc:
            logger.warning("agent card fetch failed for %s: %s", url, exc)
            return None
        card = _parse_card(response, url)
        if card is not None:
            self._cache.put(base, card)
        return card

    def price_of(self, agent_url: str, capability: str) -> Optional[int]:
        return _price_of(self.fetch(agent_url), capability)
