"""Payment-gated agent services over x402-style challenges (Python)."""

from __future__ import annotations

from .chain import ChainClient, TransactionStatus
from .challenge import PaymentRequirement, build_challenge, parse_challenge
from .config import PricingPolicy, load_pricing_policy
from .constants import (
    DEFAULT_RPC_URLS,
    NATIVE_CURRENCIES,
    PAYMENT_HEADER,
    UnsupportedNetworkError,
    get_native_currency,
)
from .errors import ConfigurationError, ErrorKind, ProofDecodeError
from .replay import InMemoryReplayGuard, RedisReplayGuard, ReplayGuard, create_replay_guard
from .rewards import RewardTier, TierWeights, select_tier
from .settlement import SettlementExecutor, SettlementResult
from .verifier import PaymentVerifier, VerificationResult, decode_proof, encode_proof
from .relay import AgentRelay, AgentRelaySync, RelayResult, RelayState
from .http import PaymentGate, fastapi_payment_middleware, flask_payment_middleware

__all__ = [
    "ChainClient",
    "TransactionStatus",
    "PaymentRequirement",
    "build_challenge",
    "parse_challenge",
    "PricingPolicy",
    "load_pricing_policy",
    "DEFAULT_RPC_URLS",
    "NATIVE_CURRENCIES",
    "PAYMENT_HEADER",
    "UnsupportedNetworkError",
    "get_native_currency",
    "ConfigurationError",
    "ErrorKind",
    "ProofDecodeError",
    "ReplayGuard",
    "InMemoryReplayGuard",
    "RedisReplayGuard",
    "create_replay_guard",
    "RewardTier",
    "TierWeights",
    "select_tier",
    "SettlementExecutor",
    "SettlementResult",
    "PaymentVerifier",
    "VerificationResult",
    "encode_proof",
    "decode_proof",
    "AgentRelay",
    "AgentRelaySync",
    "RelayResult",
    "RelayState",
    "PaymentGate",
    "fastapi_payment_middleware",
    "flask_payment_middleware",
]
