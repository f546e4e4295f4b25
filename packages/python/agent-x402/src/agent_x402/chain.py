"""Thin web3 wrapper used by the verifier and the settlement executor."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

from web3 import Web3
from web3.contract.contract import Contract
from web3.exceptions import BlockNotFound, TimeExhausted, TransactionNotFound

from .constants import RECEIPT_TIMEOUT_SECONDS

logger = logging.getLogger(__name__)

HashLike = Union[str, bytes]


class TransactionStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "fail"
    PENDING = "pending"


@dataclass(frozen=True)
class OnChainTransaction:
    """A transaction as observed on chain.

    ``status`` is ``PENDING`` while the transaction has no block. Once mined
    it is ``None`` here; the outcome lives on the receipt.
    """

    hash: str
    sender: str
    to: Optional[str]
    value_minor: int
    input_data: str
    block_number: Optional[int]
    status: Optional[TransactionStatus] = None


@dataclass(frozen=True)
class TransactionReceipt:
    tx_hash: str
    status: TransactionStatus
    block_number: Optional[int]
    gas_used: Optional[int]
    logs: List[Any] = field(default_factory=list)


@dataclass(frozen=True)
class BlockInfo:
    number: int
    timestamp: int


def _ensure_ssl_certs() -> None:
    if os.getenv("SSL_CERT_FILE") or os.getenv("REQUESTS_CA_BUNDLE"):
        return
    try:
        import certifi

        cert_path = certifi.where()
        os.environ["SSL_CERT_FILE"] = cert_path
        os.environ.setdefault("REQUESTS_CA_BUNDLE", cert_path)
    except Exception:
        # Fall back to system certs when certifi isn't available.
        return


def _hex(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value if value.startswith("0x") else f"0x{value}"
    return Web3.to_hex(value)


def _plain(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return Web3.to_hex(value)
    return value


def _status_from_receipt(raw_status: Any) -> TransactionStatus:
    if raw_status is None:
        return TransactionStatus.PENDING
    return TransactionStatus.SUCCESS if int(raw_status) == 1 else TransactionStatus.FAILED


class ChainClient:
    """Blocking RPC client around :class:`web3.Web3`.

    Lookups that can legitimately miss (unknown hash, unmined receipt,
    missing block) return ``None`` rather than raising. Transport failures
    still raise; callers decide how to classify them.
    """

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        *,
        web3: Optional[Web3] = None,
        timeout: float = 30.0,
    ) -> None:
        if web3 is None:
            if not rpc_url:
                raise ValueError("ChainClient needs an rpc_url or a web3 instance")
            _ensure_ssl_certs()
            web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self.web3 = web3
        self.rpc_url = rpc_url
        logger.debug("chain client initialized for %s", rpc_url or "injected provider")

    @classmethod
    def from_policy(cls, policy: Any, *, timeout: float = 30.0) -> "ChainClient":
        return cls(policy.rpc_endpoint, timeout=timeout)

    @staticmethod
    def is_address(value: Any) -> bool:
        return isinstance(value, str) and Web3.is_address(value)

    @staticmethod
    def to_checksum_address(value: str) -> str:
        return Web3.to_checksum_address(value)

    def get_transaction(self, tx_hash: HashLike) -> Optional[OnChainTransaction]:
        try:
            tx = self.web3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None
        if tx is None:
            return None
        block_number = tx.get("blockNumber")
        return OnChainTransaction(
            hash=_hex(tx.get("hash") or tx_hash),
            sender=str(tx.get("from")),
            to=str(tx["to"]) if tx.get("to") else None,
            value_minor=int(tx.get("value", 0)),
            input_data=_hex(tx.get("input", "0x")),
            block_number=int(block_number) if block_number is not None else None,
            status=TransactionStatus.PENDING if block_number is None else None,
        )

    def get_receipt(self, tx_hash: HashLike) -> Optional[TransactionReceipt]:
        try:
            receipt = self.web3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        if receipt is None:
            return None
        return self._to_receipt(receipt, tx_hash)

    def get_block(self, block_identifier: Union[int, str]) -> Optional[BlockInfo]:
        try:
            block = self.web3.eth.get_block(block_identifier)
        except BlockNotFound:
            return None
        if block is None:
            return None
        return BlockInfo(number=int(block["number"]), timestamp=int(block["timestamp"]))

    def head_block(self) -> BlockInfo:
        block = self.get_block("latest")
        if block is None:
            raise RuntimeError("RPC returned no latest block")
        return block

    def get_balance(self, address: str) -> int:
        return int(self.web3.eth.get_balance(Web3.to_checksum_address(address)))

    def get_nonce(self, address: str) -> int:
        return int(self.web3.eth.get_transaction_count(Web3.to_checksum_address(address), "pending"))

    def gas_price(self) -> int:
        return int(self.web3.eth.gas_price)

    def chain_id(self) -> int:
        return int(self.web3.eth.chain_id)

    def estimate_gas(self, tx: Dict[str, Any]) -> int:
        return int(self.web3.eth.estimate_gas(tx))

    def call(self, tx: Dict[str, Any]) -> bytes:
        return bytes(self.web3.eth.call(tx))

    def contract(self, address: str, abi: List[Dict[str, Any]]) -> Contract:
        return self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    def encode_call(self, abi: List[Dict[str, Any]], fn_name: str, args: Sequence[Any]) -> str:
        """ABI-encode a function call; no RPC round-trip."""
        return self.web3.eth.contract(abi=abi).encode_abi(fn_name, args=list(args))

    def call_function(self, address: str, abi: List[Dict[str, Any]], fn_name: str, *args: Any) -> Any:
        contract = self.contract(address, abi)
        return getattr(contract.functions, fn_name)(*args).call()

    def decode_events(
        self,
        receipt: TransactionReceipt,
        abi: List[Dict[str, Any]],
        *,
        address: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """Decode every log in ``receipt`` matching an event in ``abi``.

        Receipts can carry logs from unrelated contracts, so a log that does
        not decode against any known event is skipped.
        """
        contract = self.web3.eth.contract(abi=abi)
        names = [entry["name"] for entry in abi if entry.get("type") == "event"]
        decoded: List[Dict[str, Any]] = []
        for log in receipt.logs:
            if address is not None and str(log.get("address", "")).lower() != address.lower():
                continue
            for name in names:
                try:
                    event = getattr(contract.events, name)().process_log(log)
                except Exception as exc:  # foreign or malformed log
                    logger.debug("log did not decode as %s: %s", name, exc)
                    continue
                decoded.append(
                    {
                        "event": name,
                        "args": {key: _plain(value) for key, value in dict(event["args"]).items()},
                        "logIndex": event.get("logIndex"),
                        "address": str(event.get("address")),
                    }
                )
                break
        return decoded

    def send_raw_transaction(self, raw_tx: Union[str, bytes]) -> str:
        tx_hash = self.web3.eth.send_raw_transaction(raw_tx)
        return _hex(tx_hash)

    def wait_for_receipt(
        self,
        tx_hash: HashLike,
        *,
        timeout: float = RECEIPT_TIMEOUT_SECONDS,
        poll_latency: float = 1.5,
    ) -> Optional[TransactionReceipt]:
        try:
            receipt = self.web3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=poll_latency
            )
        except TimeExhausted:
            logger.warning("timed out after %ss waiting for receipt tx=%s", timeout, _hex(tx_hash))
            return None
        if receipt is None:
            return None
        return self._to_receipt(receipt, tx_hash)

    def _to_receipt(self, receipt: Any, tx_hash: HashLike) -> TransactionReceipt:
        block_number = receipt.get("blockNumber")
        gas_used = receipt.get("gasUsed")
        return TransactionReceipt(
            tx_hash=_hex(receipt.get("transactionHash") or tx_hash),
            status=_status_from_receipt(receipt.get("status")),
            block_number=int(block_number) if block_number is not None else None,
            gas_used=int(gas_used) if gas_used is not None else None,
            logs=list(receipt.get("logs") or []),
        )
