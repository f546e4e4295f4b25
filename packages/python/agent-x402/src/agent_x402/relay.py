"""Paying relay between an end user and a second, payment-gated agent.

The relay calls the downstream agent without a proof, pays the challenge it
gets back from its own signer, then repeats the call with the proof attached
and the end user named as beneficiary. A second challenge means the
downstream agent rejected our payment; it is reported as an internal failure
and never handed back to the caller as something to pay for.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import httpx

from .challenge import PaymentRequirement, parse_challenge
from .chain import ChainClient
from .constants import PAYMENT_HEADER
from .discovery import AgentDiscovery, AgentDiscoverySync
from .errors import ErrorKind
from .responses import decode_downstream, downstream_message
from .rewards import RewardTier
from .settlement import SettlementExecutor, SettlementResult
from .verifier import encode_proof

logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]

DEFAULT_RELAY_DESCRIPTION = "Agent relay payment"


class RelayState(str, Enum):
    INIT = "Init"
    FIRST_CALL = "FirstCall"
    CHALLENGE_RECEIVED = "ChallengeReceived"
    SETTLING = "Settling"
    SECOND_CALL = "SecondCall"
    SUCCESS = "Success"
    FAILURE = "Failure"


@dataclass(frozen=True)
class RelayResult:
    success: bool
    state: RelayState
    data: Optional[JsonDict] = None
    reason: Optional[ErrorKind] = None
    message: Optional[str] = None
    tx_hash: Optional[str] = None
    failed_in: Optional[RelayState] = None
    details: JsonDict = field(default_factory=dict)

    def to_payload(self) -> JsonDict:
        payload: JsonDict = {"state": self.state.value}
        if self.reason is not None:
            payload["reason"] = self.reason.value
        if self.failed_in is not None:
            payload["failedIn"] = self.failed_in.value
        if self.message:
            payload["message"] = self.message
        if self.tx_hash:
            payload["txHash"] = self.tx_hash
        payload.update(self.details)
        return payload


def _succeeded(data: JsonDict, details: JsonDict, tx_hash: Optional[str] = None) -> RelayResult:
    return RelayResult(success=True, state=RelayState.SUCCESS, data=data, tx_hash=tx_hash, details=details)


def _failed(
    reason: ErrorKind,
    message: str,
    failed_in: RelayState,
    details: JsonDict,
    *,
    tx_hash: Optional[str] = None,
) -> RelayResult:
    logger.warning("relay failed in %s: %s (%s)", failed_in.value, reason.value, message)
    return RelayResult(
        success=False,
        state=RelayState.FAILURE,
        reason=reason,
        message=message,
        tx_hash=tx_hash,
        failed_in=failed_in,
        details=details,
    )


def with_referrer(task_url: str, referrer: Optional[str]) -> str:
    if not referrer:
        return task_url
    parts = urlsplit(task_url)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "referrer"]
    query.append(("referrer", referrer))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


@dataclass(frozen=True)
class _Reply:
    kind: str  # "success" | "challenge" | "error"
    status: int
    content: Optional[JsonDict] = None
    body: Any = None
    message: str = ""


def _classify(response: httpx.Response) -> _Reply:
    try:
        body = response.json()
    except ValueError:
        body = None

    if response.status_code == 402:
        return _Reply("challenge", 402, body=body)

    if response.is_success:
        decoded = decode_downstream(body)
        if decoded is not None:
            return _Reply("success", response.status_code, content=decoded.content())

    default = f"HTTP {response.status_code}" if body is not None else f"non-JSON response (HTTP {response.status_code})"
    return _Reply("error", response.status_code, body=body, message=downstream_message(body, default))


def _downstream_error(reply: _Reply, failed_in: RelayState, details: JsonDict) -> RelayResult:
    return _failed(
        ErrorKind.DOWNSTREAM_ERROR,
        reply.message,
        failed_in,
        {**details, "downstreamStatus": reply.status},
    )


def _second_call_outcome(reply: _Reply, tx_hash: str, details: JsonDict) -> RelayResult:
    if reply.kind == "success":
        logger.info("relay completed tx=%s", tx_hash)
        return _succeeded(reply.content or {}, details, tx_hash)
    if reply.kind == "challenge":
        # Only the hash and a reason string leave this function; the
        # downstream challenge document is dropped.
        requirement = parse_challenge(reply.body)
        downstream_reason = None
        if requirement is not None and requirement.ext is not None and requirement.ext.error:
            downstream_reason = str(requirement.ext.error)
        extra: JsonDict = {"txHash": tx_hash}
        if downstream_reason:
            extra["downstreamReason"] = downstream_reason
        return _failed(
            ErrorKind.DOWNSTREAM_INTERNAL_PAYMENT_FAILURE,
            "downstream agent did not accept the relay payment",
            RelayState.SECOND_CALL,
            {**details, **extra},
            tx_hash=tx_hash,
        )
    return _failed(
        ErrorKind.DOWNSTREAM_ERROR,
        reply.message,
        RelayState.SECOND_CALL,
        {**details, "downstreamStatus": reply.status, "txHash": tx_hash},
        tx_hash=tx_hash,
    )


def _settlement_failure(result: SettlementResult, details: JsonDict) -> RelayResult:
    settlement = result.to_payload()
    settlement.pop("success", None)
    cause = result.message or (result.reason.value if result.reason else "unknown error")
    return _failed(
        ErrorKind.RELAY_SETTLEMENT_FAILED,
        f"relay could not pay the downstream agent: {cause}",
        RelayState.SETTLING,
        {**details, "settlement": settlement},
        tx_hash=result.tx_hash,
    )


class _RelayBase:
    def __init__(self, executor: SettlementExecutor, description: str) -> None:
        self.executor = executor
        self.description = description

    def _prepare(
        self, reply: _Reply, beneficiary: Optional[str], details: JsonDict
    ) -> Tuple[Optional[PaymentRequirement], Optional[RelayResult]]:
        requirement = parse_challenge(reply.body)
        if requirement is None:
            return None, _failed(
                ErrorKind.UNPARSABLE_CHALLENGE,
                "downstream challenge is missing a payable address or amount",
                RelayState.CHALLENGE_RECEIVED,
                details,
            )
        logger.info(
            "relay challenged address=%s amount=%s", requirement.address, requirement.max_amount_required
        )
        if not beneficiary or not ChainClient.is_address(beneficiary):
            return None, _failed(
                ErrorKind.MISSING_BENEFICIARY,
                "a beneficiary address is required to pay for a relayed call",
                RelayState.CHALLENGE_RECEIVED,
                details,
            )
        return requirement, None

    def _settle(
        self,
        requirement: PaymentRequirement,
        beneficiary: str,
        referrer: Optional[str],
        description: Optional[str],
    ) -> SettlementResult:
        logger.info(
            "relay settling amount=%s to=%s beneficiary=%s",
            requirement.max_amount_required,
            requirement.address,
            beneficiary,
        )
        return self.executor.settle(
            requirement.amount_minor,
            beneficiary,
            description or self.description,
            requirement.address,
            requirement.referrer or referrer or "",
            RewardTier.COMMON,
        )

    @staticmethod
    def _second_call_args(body: JsonDict, beneficiary: str, tx_hash: str) -> Tuple[JsonDict, Dict[str, str]]:
        headers = {"Content-Type": "application/json", PAYMENT_HEADER: encode_proof(tx_hash)}
        return {**body, "userAddress": beneficiary}, headers


class AgentRelay(_RelayBase):
    """Async relay over :class:`httpx.AsyncClient`."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        executor: SettlementExecutor,
        discovery: Optional[AgentDiscovery] = None,
        *,
        description: str = DEFAULT_RELAY_DESCRIPTION,
    ) -> None:
        super().__init__(executor, description)
        self.http_client = http_client
        self.discovery = discovery or AgentDiscovery(http_client)

    async def is_free(self, agent_url: str, capability: str) -> bool:
        return await self.discovery.price_of(agent_url, capability) == 0

    async def invoke(
        self,
        task_url: str,
        body: JsonDict,
        beneficiary: Optional[str],
        referrer: Optional[str] = None,
        capability: Optional[str] = None,
        description: Optional[str] = None,
    ) -> RelayResult:
        details: JsonDict = {}
        if capability:
            price = await self.discovery.price_of(task_url, capability)
            if price is not None:
                details["discoveredPriceMinor"] = str(price)

        url = with_referrer(task_url, referrer)
        logger.info("relay first call %s", url)
        try:
            response = await self.http_client.post(url, json=body, headers={"Content-Type": "application/json"})
        except httpx.HTTPError as exc:
            return _failed(ErrorKind.UNREACHABLE, f"downstream agent unreachable: {exc}", RelayState.FIRST_CALL, details)

        reply = _classify(response)
        if reply.kind == "success":
            logger.info("relay first call succeeded without payment")
            return _succeeded(reply.content or {}, details)
        if reply.kind == "error":
            return _downstream_error(reply, RelayState.FIRST_CALL, details)

        requirement, failure = self._prepare(reply, beneficiary, details)
        if failure is not None:
            return failure
        assert requirement is not None and beneficiary is not None

        result = await asyncio.to_thread(self._settle, requirement, beneficiary, referrer, description)
        if not result.success or not result.tx_hash:
            return _settlement_failure(result, details)

        second_body, headers = self._second_call_args(body, beneficiary, result.tx_hash)
        logger.info("relay second call %s tx=%s", url, result.tx_hash)
        try:
            response = await self.http_client.post(url, json=second_body, headers=headers)
        except httpx.HTTPError as exc:
            return _failed(
                ErrorKind.UNREACHABLE,
                f"downstream agent unreachable after payment: {exc}",
                RelayState.SECOND_CALL,
                {**details, "txHash": result.tx_hash},
                tx_hash=result.tx_hash,
            )
        return _second_call_outcome(_classify(response), result.tx_hash, details)


class AgentRelaySync(_RelayBase):
    """Blocking relay over :class:`httpx.Client`."""

    def __init__(
        self,
        http_client: httpx.Client,
        executor: SettlementExecutor,
        discovery: Optional[AgentDiscoverySync] = None,
        *,
        description: str = DEFAULT_RELAY_DESCRIPTION,
    ) -> None:
        super().__init__(executor, description)
        self.http_client = http_client
        self.discovery = discovery or AgentDiscoverySync(http_client)

    def is_free(self, agent_url: str, capability: str) -> bool:
        return self.discovery.price_of(agent_url, capability) == 0

    def invoke(
        self,
        task_url: str,
        body: JsonDict,
        beneficiary: Optional[str],
        referrer: Optional[str] = None,
        capability: Optional[str] = None,
        description: Optional[str] = None,
    ) -> RelayResult:
        details: JsonDict = {}
        if capability:
            price = self.discovery.price_of(task_url, capability)
            if price is not None:
                details["discoveredPriceMinor"] = str(price)

        url = with_referrer(task_url, referrer)
        logger.info("relay first call %s", url)
        try:
            response = self.http_client.post(url, json=body, headers={"Content-Type": "application/json"})
        except httpx.HTTPError as exc:
            return _failed(ErrorKind.UNREACHABLE, f"downstream agent unreachable: {exc}", RelayState.FIRST_CALL, details)

        reply = _classify(response)
        if reply.kind == "success":
            logger.info("relay first call succeeded without payment")
            return _succeeded(reply.content or {}, details)
        if reply.kind == "error":
            return _downstream_error(reply, RelayState.FIRST_CALL, details)

        requirement, failure = self._prepare(reply, beneficiary, details)
        if failure is not None:
            return failure
        assert requirement is not None and beneficiary is not None

        result = self._settle(requirement, beneficiary, referrer, description)
        if not result.success or not result.tx_hash:
            return _settlement_failure(result, details)

        second_body, headers = self._second_call_args(body, beneficiary, result.tx_hash)
        logger.info("relay second call %s tx=%s", url, result.tx_hash)
        try:
            response = self.http_client.post(url, json=second_body, headers=headers)
        except httpx.HTTPError as exc:
            return _failed(
                ErrorKind.UNREACHABLE,
                f"downstream agent unreachable after payment: {exc}",
                RelayState.SECOND_CALL,
                {**details, "txHash": result.tx_hash},
                tx_hash=result.tx_hash,
            )
        return _second_call_outcome(_classify(response), result.tx_hash, details)
