"""On-chain settlement: tier-selected mint calls and plain value transfers."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from web3.exceptions import Web3Exception

from .abi import EVENTS_ABI, MINT_ABI
from .chain import ChainClient, TransactionStatus
from .constants import (
    GAS_MULTIPLIER_DENOMINATOR,
    GAS_MULTIPLIER_NUMERATOR,
    GAS_RESERVE_MINOR,
    RECEIPT_TIMEOUT_SECONDS,
    TRANSFER_GAS_LIMIT,
)
from .custody import SigningError, TransactionSigner
from .errors import ErrorKind
from .rewards import RewardTier

logger = logging.getLogger(__name__)

_RPC_ERRORS = (Web3Exception, OSError, ValueError)

UNAUTHORIZED_MARKER = "authorized minter"


@dataclass(frozen=True)
class SettlementResult:
    success: bool
    tx_hash: Optional[str] = None
    reason: Optional[ErrorKind] = None
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    events: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def failed(
        cls,
        reason: ErrorKind,
        message: str,
        *,
        tx_hash: Optional[str] = None,
        **details: Any,
    ) -> "SettlementResult":
        return cls(success=False, tx_hash=tx_hash, reason=reason, message=message, details=details)

    def to_payload(self) -> Dict[str, Any]:
        """Operator-facing diagnostics for error envelopes."""
        payload: Dict[str, Any] = {"success": self.success}
        if self.reason is not None:
            payload["reason"] = self.reason.value
        if self.message:
            payload["message"] = self.message
        if self.tx_hash:
            payload["txHash"] = self.tx_hash
        payload.update(self.details)
        return payload


def _revert_reason(exc: BaseException) -> str:
    message = getattr(exc, "message", None)
    if isinstance(message, str) and message:
        return message
    if exc.args and isinstance(exc.args[0], dict):
        return str(exc.args[0].get("message") or exc.args[0])
    return str(exc)


class SettlementExecutor:
    """Signs, submits and confirms payments from an agent-held account.

    Every failure comes back as a :class:`SettlementResult` with a reason.
    Nothing is retried; a broadcast transaction is never withdrawn, and its
    hash is returned even when confirmation fails.
    """

    def __init__(
        self,
        chain: ChainClient,
        signer: TransactionSigner,
        gas_reserve_minor: int = GAS_RESERVE_MINOR,
        gas_multiplier: Tuple[int, int] = (GAS_MULTIPLIER_NUMERATOR, GAS_MULTIPLIER_DENOMINATOR),
        receipt_timeout: float = RECEIPT_TIMEOUT_SECONDS,
    ) -> None:
        numerator, denominator = gas_multiplier
        if numerator <= 0 or denominator <= 0:
            raise ValueError("gas_multiplier must be a pair of positive integers")
        self.chain = chain
        self.signer = signer
        self.gas_reserve_minor = gas_reserve_minor
        self.gas_multiplier = (numerator, denominator)
        self.receipt_timeout = receipt_timeout

    @property
    def signer_address(self) -> str:
        return self.signer.address

    def settle(
        self,
        amount_minor: int,
        recipient_address: str,
        description: str,
        contract_address: str,
        referrer: Optional[str] = None,
        tier: RewardTier = RewardTier.COMMON,
    ) -> SettlementResult:
        if amount_minor < 0:
            raise ValueError("amount_minor must be non-negative")
        if not ChainClient.is_address(recipient_address):
            logger.warning("settlement rejected: invalid recipient %r", recipient_address)
            return SettlementResult.failed(
                ErrorKind.INVALID_RECIPIENT,
                "recipient is not a valid address",
                recipient=recipient_address,
            )
        if not ChainClient.is_address(contract_address):
            logger.warning("settlement rejected: invalid contract address %r", contract_address)
            return SettlementResult.failed(
                ErrorKind.INVALID_RECIPIENT,
                "contract address is not a valid address",
                contract=contract_address,
            )

        recipient = ChainClient.to_checksum_address(recipient_address)
        contract = ChainClient.to_checksum_address(contract_address)
        data = self.chain.encode_call(MINT_ABI, tier.entry_point, [recipient, description, referrer or ""])
        logger.info(
            "settling tier=%s entry=%s recipient=%s contract=%s amount=%s referrer=%s",
            tier.value,
            tier.entry_point,
            recipient,
            contract,
            amount_minor,
            referrer or "",
        )
        return self._submit(
            to=contract,
            value=amount_minor,
            data=data,
            gas_limit=None,
            context={"tier": tier.value, "recipient": recipient, "contract": contract},
        )

    def transfer(self, amount_minor: int, recipient: str) -> SettlementResult:
        """Plain value transfer with a fixed gas limit."""
        if amount_minor < 0:
            raise ValueError("amount_minor must be non-negative")
        if not ChainClient.is_address(recipient):
            logger.warning("transfer rejected: invalid recipient %r", recipient)
            return SettlementResult.failed(
                ErrorKind.INVALID_RECIPIENT, "recipient is not a valid address", recipient=recipient
            )
        to = ChainClient.to_checksum_address(recipient)
        logger.info("transferring amount=%s to=%s", amount_minor, to)
        return self._submit(
            to=to,
            value=amount_minor,
            data="0x",
            gas_limit=TRANSFER_GAS_LIMIT,
            context={"recipient": to},
        )

    def _submit(
        self,
        *,
        to: str,
        value: int,
        data: str,
        gas_limit: Optional[int],
        context: Dict[str, Any],
    ) -> SettlementResult:
        signer = self.signer.address

        try:
            balance = self.chain.get_balance(signer)
        except _RPC_ERRORS as exc:
            logger.warning("balance lookup failed signer=%s: %s", signer, exc)
            return SettlementResult.failed(
                ErrorKind.BROADCAST_FAILED, f"could not read signer balance: {exc}", signer=signer, **context
            )
        required = value + self.gas_reserve_minor
        if balance < required:
            logger.warning("insufficient balance signer=%s balance=%s required=%s", signer, balance, required)
            return SettlementResult.failed(
                ErrorKind.INSUFFICIENT_BALANCE,
                "signer balance does not cover amount plus gas reserve",
                signer=signer,
                balance=str(balance),
                required=str(required),
                **context,
            )

        if gas_limit is None:
            try:
                estimate = self.chain.estimate_gas({"from": signer, "to": to, "value": value, "data": data})
            except _RPC_ERRORS as exc:
                return self._estimation_failure(exc, to=to, signer=signer, context=context)
            numerator, denominator = self.gas_multiplier
            gas_limit = estimate * numerator // denominator

        try:
            tx = {
                "chainId": self.chain.chain_id(),
                "nonce": self.chain.get_nonce(signer),
                "gasPrice": self.chain.gas_price(),
                "gas": gas_limit,
                "to": to,
                "value": value,
                "data": data,
            }
            raw = self.signer.sign_transaction(tx)
            tx_hash = self.signer.broadcast(raw, self.chain)
        except (SigningError, *_RPC_ERRORS) as exc:
            logger.warning("broadcast failed signer=%s to=%s: %s", signer, to, exc)
            return SettlementResult.failed(
                ErrorKind.BROADCAST_FAILED, f"transaction could not be submitted: {exc}", signer=signer, **context
            )

        logger.info("transaction submitted tx=%s gas=%s nonce=%s", tx_hash, gas_limit, tx["nonce"])

        try:
            receipt = self.chain.wait_for_receipt(tx_hash, timeout=self.receipt_timeout)
        except _RPC_ERRORS as exc:
            logger.warning("receipt wait failed tx=%s: %s", tx_hash, exc)
            receipt = None
        if receipt is None:
            return SettlementResult.failed(
                ErrorKind.CONFIRMATION_FAILED,
                "no receipt was observed for the submitted transaction",
                tx_hash=tx_hash,
                signer=signer,
                **context,
            )
        if receipt.status != TransactionStatus.SUCCESS:
            logger.warning("transaction reverted tx=%s", tx_hash)
            return SettlementResult.failed(
                ErrorKind.TRANSACTION_REVERTED,
                "transaction was mined but reverted",
                tx_hash=tx_hash,
                signer=signer,
                **context,
            )

        events: List[Dict[str, Any]] = []
        if data != "0x":
            events = self.chain.decode_events(receipt, EVENTS_ABI, address=to)
            for event in events:
                logger.debug("event %s %s", event["event"], event["args"])

        logger.info("settlement confirmed tx=%s block=%s", tx_hash, receipt.block_number)
        return SettlementResult(
            success=True,
            tx_hash=tx_hash,
            details={"blockNumber": receipt.block_number, "gasUsed": receipt.gas_used, **context},
            events=events,
        )

    def _estimation_failure(
        self, exc: BaseException, *, to: str, signer: str, context: Dict[str, Any]
    ) -> SettlementResult:
        reason = _revert_reason(exc)
        if UNAUTHORIZED_MARKER in reason.lower():
            authorized = self._authorized_minter(to)
            logger.warning(
                "signer %s is not the authorized minter of %s (expected %s)", signer, to, authorized or "unknown"
            )
            return SettlementResult.failed(
                ErrorKind.UNAUTHORIZED_SIGNER,
                "contract rejected the signer as minter",
                signer=signer,
                authorizedMinter=authorized,
                revertReason=reason,
                **context,
            )
        logger.warning("gas estimation reverted to=%s: %s", to, reason)
        return SettlementResult.failed(
            ErrorKind.GAS_ESTIMATION_REVERTED,
            "contract call reverted during gas estimation",
            signer=signer,
            revertReason=reason,
            **context,
        )

    def _authorized_minter(self, contract: str) -> Optional[str]:
        try:
            return str(self.chain.call_function(contract, MINT_ABI, "authorizedMinter"))
        except _RPC_ERRORS as exc:
            logger.debug("authorizedMinter() not readable on %s: %s", contract, exc)
            return None
