from typing import Any, Dict, List, Optional

import pytest
from web3 import Web3

from agent_x402.chain import (
    BlockInfo,
    ChainClient,
    OnChainTransaction,
    TransactionReceipt,
    TransactionStatus,
)
from agent_x402.config import PricingPolicy
from agent_x402.custody import TransactionSigner

PAY_TO = "0x" + "a1" * 20
PAYER = "0x" + "b2" * 20
USER = "0x" + "c3" * 20
CONTRACT = "0x" + "d4" * 20
SIGNER = "0x" + "e5" * 20

PRICE = 10**16
NOW = 1_700_000_000


def tx_hash_for(n: int) -> str:
    return "0x" + format(n, "064x")


class FakeChain(ChainClient):
    """Offline chain: ABI encoding is real, every RPC lookup is table-driven."""

    def __init__(self) -> None:
        super().__init__(web3=Web3())
        self.transactions: Dict[str, OnChainTransaction] = {}
        self.receipts: Dict[str, TransactionReceipt] = {}
        self.blocks: Dict[int, BlockInfo] = {}
        self.head = BlockInfo(number=1000, timestamp=NOW)
        self.balances: Dict[str, int] = {}
        self.estimate_error: Optional[BaseException] = None
        self.estimate = 100_000
        self.submitted_receipt_status = TransactionStatus.SUCCESS
        self.receipt_available = True
        self.view_results: Dict[str, Any] = {}
        self.view_error: Optional[BaseException] = None
        self.events: List[Dict[str, Any]] = []
        self.estimated: List[Dict[str, Any]] = []
        self.view_calls: List[tuple] = []
        self.rpc_calls = 0

    def add_payment(
        self,
        tx_hash: str,
        *,
        to: str = PAY_TO,
        value: int = PRICE,
        sender: str = PAYER,
        age: int = 5,
        status: TransactionStatus = TransactionStatus.SUCCESS,
        mined: bool = True,
    ) -> None:
        block_number = 990 if mined else None
        self.transactions[tx_hash.lower()] = OnChainTransaction(
            hash=tx_hash,
            sender=sender,
            to=to,
            value_minor=value,
            input_data="0x",
            block_number=block_number,
            status=None if mined else TransactionStatus.PENDING,
        )
        if mined:
            self.blocks[990] = BlockInfo(number=990, timestamp=self.head.timestamp - age)
            self.receipts[tx_hash.lower()] = TransactionReceipt(
                tx_hash=tx_hash, status=status, block_number=990, gas_used=21000
            )

    def get_transaction(self, tx_hash):
        self.rpc_calls += 1
        return self.transactions.get(str(tx_hash).lower())

    def get_receipt(self, tx_hash):
        self.rpc_calls += 1
        return self.receipts.get(str(tx_hash).lower())

    def get_block(self, block_identifier):
        self.rpc_calls += 1
        if block_identifier == "latest":
            return self.head
        return self.blocks.get(block_identifier)

    def get_balance(self, address):
        self.rpc_calls += 1
        return self.balances.get(address.lower(), 10**20)

    def get_nonce(self, address):
        self.rpc_calls += 1
        return 7

    def gas_price(self):
        self.rpc_calls += 1
        return 10**9

    def chain_id(self):
        self.rpc_calls += 1
        return 97

    def estimate_gas(self, tx):
        self.rpc_calls += 1
        self.estimated.append(tx)
        if self.estimate_error is not None:
            raise self.estimate_error
        return self.estimate

    def send_raw_transaction(self, raw_tx):
        self.rpc_calls += 1
        return tx_hash_for(0xBEEF)

    def wait_for_receipt(self, tx_hash, *, timeout=0, poll_latency=0):
        self.rpc_calls += 1
        if not self.receipt_available:
            return None
        return TransactionReceipt(
            tx_hash=tx_hash, status=self.submitted_receipt_status, block_number=1001, gas_used=90_000
        )

    def call_function(self, address, abi, fn_name, *args):
        self.rpc_calls += 1
        self.view_calls.append((fn_name, args))
        if self.view_error is not None:
            raise self.view_error
        return self.view_results[fn_name]

    def decode_events(self, receipt, abi, *, address=None):
        return list(self.events)


class StubSigner(TransactionSigner):
    def __init__(self, address: str = SIGNER, tx_hash: Optional[str] = None) -> None:
        self.address = Web3.to_checksum_address(address)
        self.tx_hash = tx_hash or tx_hash_for(0xF00D)
        self.signed: List[Dict[str, Any]] = []

    def sign_transaction(self, tx):
        self.signed.append(dict(tx))
        return "0x" + "ab" * 32

    def broadcast(self, raw_tx, chain):
        return self.tx_hash


def make_policy(**overrides: Any) -> PricingPolicy:
    values: Dict[str, Any] = {
        "unit_price_minor": PRICE,
        "currency": "BNB",
        "network": "BSCTest",
        "pay_to_address": Web3.to_checksum_address(PAY_TO),
        "min_amount_minor": PRICE,
        "rpc_endpoint": "http://rpc.test",
    }
    values.update(overrides)
    return PricingPolicy(**values)


@pytest.fixture
def chain():
    return FakeChain()


@pytest.fixture
def policy():
    return make_policy()


@pytest.fixture
def signer():
    return StubSigner()
