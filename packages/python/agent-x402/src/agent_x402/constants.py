"""Shared constants for the agent x402 payment protocol."""

from __future__ import annotations

from typing import Dict, List, TypedDict


SUPPORTED_NETWORKS: List[str] = ["BSCTest", "BSC"]

DEFAULT_RPC_URLS: Dict[str, str] = {
    "BSCTest": "https://data-seed-prebsc-1-s1.binance.org:8545/",
    "BSC": "https://bsc-dataseed1.binance.org/",
}


class NativeCurrency(TypedDict):
    chain_id: int
    symbol: str
    decimals: int


NATIVE_CURRENCIES: Dict[str, NativeCurrency] = {
    "BSCTest": {
        "chain_id": 97,
        "symbol": "BNB",
        "decimals": 18,
    },
    "BSC": {
        "chain_id": 56,
        "symbol": "BNB",
        "decimals": 18,
    },
}

X402_VERSION = 1
PAYMENT_SCHEME = "exact"
PAYMENT_HEADER = "X-PAYMENT"
DEFAULT_MIME_TYPE = "application/json"

# Protocol windows, in seconds.
PROOF_FRESHNESS_SECONDS = 600
REPLAY_TTL_SECONDS = 24 * 60 * 60
RECEIPT_TIMEOUT_SECONDS = 120

# 0.001 ether kept back for gas on top of the settled amount.
GAS_RESERVE_MINOR = 10**15
GAS_MULTIPLIER_NUMERATOR = 130
GAS_MULTIPLIER_DENOMINATOR = 100
TRANSFER_GAS_LIMIT = 21_000


class UnsupportedNetworkError(ValueError):
    """Raised when a network has no built-in defaults."""


def get_native_currency(network: str) -> NativeCurrency:
    try:
        return NATIVE_CURRENCIES[network]
    except KeyError as exc:
        raise UnsupportedNetworkError(f"No native currency configured for network {network}") from exc


def get_default_rpc_url(network: str) -> str:
    try:
        return DEFAULT_RPC_URLS[network]
    except KeyError as exc:
        raise UnsupportedNetworkError(f"No default RPC URL configured for network {network}") from exc
