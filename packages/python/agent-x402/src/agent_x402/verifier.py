"""Settlement proof verification against a pricing policy."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from web3.exceptions import Web3Exception

from .chain import ChainClient, TransactionStatus
from .config import PricingPolicy
from .constants import PROOF_FRESHNESS_SECONDS
from .errors import ErrorKind, ProofDecodeError
from .replay import ReplayGuard

logger = logging.getLogger(__name__)

_TX_HASH_RE = re.compile(r"^0x[0-9a-fA-F]{64}$")

# RPC transport failures surface as one of these depending on the provider.
_RPC_ERRORS = (Web3Exception, OSError, ValueError)


def encode_proof(tx_hash: str) -> str:
    """Encode a transaction hash as an ``X-PAYMENT`` header value."""
    return base64.b64encode(tx_hash.encode("utf-8")).decode("ascii")


def decode_proof(proof: str) -> str:
    """Decode an ``X-PAYMENT`` value back to a 0x-prefixed transaction hash."""
    try:
        raw = base64.b64decode(proof.strip(), validate=True)
        tx_hash = raw.decode("utf-8").strip()
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise ProofDecodeError("payment proof is not valid base64 text") from exc
    if not _TX_HASH_RE.match(tx_hash):
        raise ProofDecodeError("payment proof does not decode to a transaction hash")
    return tx_hash


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    payer: Optional[str] = None
    tx_hash: Optional[str] = None
    reason: Optional[ErrorKind] = None
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def accepted(cls, payer: str, tx_hash: str) -> "VerificationResult":
        return cls(valid=True, payer=payer, tx_hash=tx_hash)

    @classmethod
    def rejected(
        cls,
        reason: ErrorKind,
        message: str,
        *,
        tx_hash: Optional[str] = None,
        **details: Any,
    ) -> "VerificationResult":
        return cls(valid=False, tx_hash=tx_hash, reason=reason, message=message, details=details)


class PaymentVerifier:
    """Checks an ``X-PAYMENT`` proof against chain state.

    Amount and recipient are always read back from the chain; the proof only
    names a transaction. The replay guard is written on success and when a
    proof is found to be expired, so a stale hash stays closed afterwards.
    """

    def __init__(
        self,
        chain: ChainClient,
        replay_guard: ReplayGuard,
        policy: PricingPolicy,
        freshness_window: int = PROOF_FRESHNESS_SECONDS,
    ) -> None:
        self.chain = chain
        self.replay_guard = replay_guard
        self.policy = policy
        self.freshness_window = freshness_window

    def verify(self, proof: Optional[str]) -> VerificationResult:
        if proof is None or not proof.strip():
            logger.info("no payment proof supplied")
            return VerificationResult.rejected(ErrorKind.MISSING_PROOF, "X-PAYMENT header is required")

        try:
            tx_hash = decode_proof(proof)
        except ProofDecodeError as exc:
            logger.warning("rejecting malformed payment proof: %s", exc)
            return VerificationResult.rejected(ErrorKind.MALFORMED_PROOF, str(exc))

        if self.replay_guard.is_consumed(tx_hash):
            logger.warning("payment proof reused tx=%s", tx_hash)
            return VerificationResult.rejected(
                ErrorKind.PROOF_REUSED, "payment proof has already been used", tx_hash=tx_hash
            )

        try:
            tx = self.chain.get_transaction(tx_hash)
        except _RPC_ERRORS as exc:
            logger.warning("transaction lookup failed tx=%s: %s", tx_hash, exc)
            tx = None
        if tx is None:
            return VerificationResult.rejected(
                ErrorKind.TRANSACTION_NOT_FOUND, "transaction not found on chain", tx_hash=tx_hash
            )

        if tx.block_number is None:
            return VerificationResult.rejected(
                ErrorKind.NOT_CONFIRMED, "transaction is not yet included in a block", tx_hash=tx_hash
            )

        try:
            block = self.chain.get_block(tx.block_number)
            receipt = self.chain.get_receipt(tx_hash) if block is not None else None
            head = self.chain.head_block() if receipt is not None else None
        except _RPC_ERRORS as exc:
            logger.warning("confirmation lookup failed tx=%s: %s", tx_hash, exc)
            block = receipt = head = None
        if block is None or receipt is None or head is None:
            return VerificationResult.rejected(
                ErrorKind.NOT_CONFIRMED, "transaction receipt is not available yet", tx_hash=tx_hash
            )

        age = head.timestamp - block.timestamp
        if age > self.freshness_window:
            self.replay_guard.consume(tx_hash)
            logger.warning("payment proof expired tx=%s age=%ss window=%ss", tx_hash, age, self.freshness_window)
            return VerificationResult.rejected(
                ErrorKind.PROOF_EXPIRED,
                f"transaction is older than {self.freshness_window} seconds",
                tx_hash=tx_hash,
                age_seconds=age,
            )

        expected = self.policy.pay_to_address
        if tx.to is None or tx.to.lower() != expected.lower():
            logger.warning("recipient mismatch tx=%s to=%s expected=%s", tx_hash, tx.to, expected)
            return VerificationResult.rejected(
                ErrorKind.RECIPIENT_MISMATCH,
                "transaction was not sent to the expected address",
                tx_hash=tx_hash,
                expected_recipient=expected,
                actual_recipient=tx.to,
            )

        if tx.value_minor < self.policy.min_amount_minor:
            logger.warning(
                "amount insufficient tx=%s value=%s min=%s", tx_hash, tx.value_minor, self.policy.min_amount_minor
            )
            return VerificationResult.rejected(
                ErrorKind.AMOUNT_INSUFFICIENT,
                "transaction value is below the required amount",
                tx_hash=tx_hash,
                required=str(self.policy.min_amount_minor),
                paid=str(tx.value_minor),
            )

        if receipt.status != TransactionStatus.SUCCESS:
            logger.warning("transaction failed on chain tx=%s status=%s", tx_hash, receipt.status.value)
            return VerificationResult.rejected(
                ErrorKind.TRANSACTION_FAILED, "transaction did not succeed on chain", tx_hash=tx_hash
            )

        if not self.replay_guard.consume(tx_hash):
            logger.warning("payment proof consumed concurrently tx=%s", tx_hash)
            return VerificationResult.rejected(
                ErrorKind.PROOF_REUSED, "payment proof has already been used", tx_hash=tx_hash
            )

        logger.info("payment verified tx=%s payer=%s value=%s", tx_hash, tx.sender, tx.value_minor)
        return VerificationResult.accepted(payer=tx.sender, tx_hash=tx_hash)
