import logging
import os

import httpx
from dotenv import load_dotenv

from agent_x402.chain import ChainClient
from agent_x402.challenge import parse_challenge
from agent_x402.custody import LocalSigner
from agent_x402.settlement import SettlementExecutor
from agent_x402.verifier import encode_proof

load_dotenv()
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s: %(message)s")

PRIVATE_KEY = os.getenv("PRIVATE_KEY")
if not PRIVATE_KEY or not PRIVATE_KEY.startswith("0x"):
    raise SystemExit("PRIVATE_KEY env var must be set and start with 0x")

RPC_URL = os.getenv("PAYMENT_RPC_URL", "https://data-seed-prebsc-1-s1.binance.org:8545/")
API_URL = os.getenv("API_URL", "http://localhost:3000")
ENDPOINT = f"{API_URL}/api/premium-data"

with httpx.Client(timeout=150.0) as http:
    response = http.get(ENDPOINT)
    if response.status_code != 402:
        raise SystemExit(f"expected HTTP 402 from the resource, got {response.status_code}")
    requirement = parse_challenge(response.json())
    if requirement is None:
        raise SystemExit("resource returned a challenge without a payable address")

    executor = SettlementExecutor(ChainClient(RPC_URL), LocalSigner(PRIVATE_KEY))
    payment = executor.transfer(requirement.amount_minor, requirement.address)
    if not payment.success:
        raise SystemExit(f"payment failed: {payment.to_payload()}")
    print("Paid:", payment.tx_hash)

    response = http.get(ENDPOINT, headers={"X-PAYMENT": encode_proof(payment.tx_hash)})
    print("Status:", response.status_code)
    print("Body:", response.text)
