"""Read-only queries against the payment contract's referral and reward ledger."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from web3.exceptions import Web3Exception

from .abi import LEDGER_ABI
from .chain import ChainClient

logger = logging.getLogger(__name__)


class LedgerQueryError(RuntimeError):
    """Raised when a contract view call fails or returns an unexpected shape."""


class RewardLedger:
    def __init__(self, chain: ChainClient, contract_address: str) -> None:
        if not ChainClient.is_address(contract_address):
            raise ValueError(f"contract address {contract_address!r} is not a valid address")
        self.chain = chain
        self.contract_address = ChainClient.to_checksum_address(contract_address)

    def _call(self, fn_name: str, *args: Any) -> Any:
        try:
            return self.chain.call_function(self.contract_address, LEDGER_ABI, fn_name, *args)
        except (Web3Exception, OSError, ValueError) as exc:
            logger.warning("ledger query %s failed: %s", fn_name, exc)
            raise LedgerQueryError(f"{fn_name} failed: {exc}") from exc

    def referrer_count(self, referrer: str) -> int:
        return int(self._call("getReferrerCount", referrer))

    def referrer_stats(self) -> List[Dict[str, Any]]:
        result = self._call("getReferrerStats")
        try:
            referrers, counts = result
        except (TypeError, ValueError) as exc:
            raise LedgerQueryError("getReferrerStats returned an unexpected shape") from exc
        if len(referrers) != len(counts):
            raise LedgerQueryError("getReferrerStats returned mismatched arrays")
        return [{"referrer": str(ref), "count": str(int(count))} for ref, count in zip(referrers, counts)]

    def tokens_by_referrer(self, referrer: str) -> List[str]:
        return [str(int(token_id)) for token_id in self._call("getTokensByReferrer", referrer)]

    def rarity_stats(self, owner: str) -> Dict[str, str]:
        if not ChainClient.is_address(owner):
            raise ValueError(f"owner {owner!r} is not a valid address")
        result = self._call("getRarityStatsByOwner", ChainClient.to_checksum_address(owner))
        try:
            common, rare, super_rare, total = result
        except (TypeError, ValueError) as exc:
            raise LedgerQueryError("getRarityStatsByOwner returned an unexpected shape") from exc
        return {
            "common": str(int(common)),
            "rare": str(int(rare)),
            "superRare": str(int(super_rare)),
            "total": str(int(total)),
        }
