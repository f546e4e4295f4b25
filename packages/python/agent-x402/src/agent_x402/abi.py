"""ABI fragments for the pre-deployed payment/reward contract.

The contract's method signatures are fixed outside this project; only the
pieces the agents call or decode are listed here.
"""

from __future__ import annotations

from typing import Any, Dict, List

JsonAbi = List[Dict[str, Any]]


def _mint_entry(name: str) -> Dict[str, Any]:
    return {
        "inputs": [
            {"name": "recipient", "type": "address"},
            {"name": "description", "type": "string"},
            {"name": "referrer", "type": "string"},
        ],
        "name": name,
        "outputs": [{"name": "tokenId", "type": "uint256"}],
        "stateMutability": "payable",
        "type": "function",
    }


MINT_ABI: JsonAbi = [
    _mint_entry("mintNSBT"),
    _mint_entry("mintRSBT"),
    _mint_entry("mintSSBT"),
    {
        "inputs": [],
        "name": "authorizedMinter",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
]

EVENTS_ABI: JsonAbi = [
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "tokenId", "type": "uint256"},
            {"indexed": True, "name": "payer", "type": "address"},
            {"indexed": True, "name": "recipient", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
            {"indexed": False, "name": "timestamp", "type": "uint256"},
        ],
        "name": "PaymentReceived",
        "type": "event",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "tokenId", "type": "uint256"},
            {"indexed": True, "name": "owner", "type": "address"},
            {"indexed": True, "name": "recipient", "type": "address"},
            {"indexed": False, "name": "amount", "type": "uint256"},
            {"indexed": False, "name": "rarity", "type": "uint8"},
        ],
        "name": "SBTMinted",
        "type": "event",
    },
]

LEDGER_ABI: JsonAbi = [
    {
        "inputs": [{"name": "referrer", "type": "string"}],
        "name": "getReferrerCount",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "getReferrerStats",
        "outputs": [
            {"name": "referrers", "type": "string[]"},
            {"name": "counts", "type": "uint256[]"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "referrer", "type": "string"}],
        "name": "getTokensByReferrer",
        "outputs": [{"name": "", "type": "uint256[]"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "getRarityStatsByOwner",
        "outputs": [
            {"name": "commonCount", "type": "uint256"},
            {"name": "rareCount", "type": "uint256"},
            {"name": "superRareCount", "type": "uint256"},
            {"name": "totalCount", "type": "uint256"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]

PAYMENT_CONTRACT_ABI: JsonAbi = MINT_ABI + EVENTS_ABI + LEDGER_ABI
