"""Pay the Image Agent with a native transfer and collect the generated image."""

import json
import os
from pathlib import Path

import requests
from dotenv import load_dotenv

from agent_x402.chain import ChainClient
from agent_x402.challenge import parse_challenge
from agent_x402.custody import LocalSigner
from agent_x402.settlement import SettlementExecutor
from agent_x402.verifier import encode_proof

# Load .env files
base = Path(__file__).resolve()
for path in [base.parents[1] / ".env", base.parents[2] / ".env"]:
    if path.exists():
        load_dotenv(path)

payer_key = os.getenv("PAYER_KEY")
rpc_url = os.getenv("PAYMENT_RPC_URL")
agent_url = os.getenv("IMAGE_AGENT_URL", "http://localhost:9000")
topic = os.getenv("TOPIC", "a lighthouse in a storm")
referrer = os.getenv("REFERRER")

if not payer_key or not rpc_url:
    raise SystemExit("PAYER_KEY and PAYMENT_RPC_URL must be set")


def main() -> None:
    print("--- x402 agent flow (Python) ---")
    task_url = f"{agent_url.rstrip('/')}/task"
    params = {"action": "generate_image_with_prompt"}
    if referrer:
        params["referrer"] = referrer
    body = {"topic": topic}

    card = requests.get(f"{agent_url.rstrip('/')}/.well-known/agent.json", timeout=30)
    if card.ok:
        names = [capability.get("name") for capability in card.json().get("capabilities", [])]
        print("Agent capabilities:", ", ".join(names))

    resp = requests.post(task_url, params=params, json=body, timeout=30)
    if resp.status_code != 402:
        raise SystemExit(f"expected HTTP 402 from the agent, got {resp.status_code}: {resp.text}")
    requirement = parse_challenge(resp.json())
    if requirement is None:
        raise SystemExit("agent did not return a payable challenge")
    print(f"Challenge: pay {requirement.max_amount_required} ({requirement.currency}) to {requirement.address}")

    executor = SettlementExecutor(ChainClient(rpc_url), LocalSigner(payer_key))
    payment = executor.transfer(requirement.amount_minor, requirement.address)
    if not payment.success:
        raise SystemExit(f"payment failed: {json.dumps(payment.to_payload(), indent=2)}")
    header = encode_proof(payment.tx_hash)
    print(f"\nPaid in {payment.tx_hash}\nX-PAYMENT header:\n{header}\n")

    # Image generation plus the relayed prompt purchase can take a while.
    result = requests.post(task_url, params=params, json=body, headers={"X-PAYMENT": header}, timeout=300)
    print("Response from agent:\n")
    try:
        print(json.dumps(result.json(), indent=2))
    except ValueError:
        print(result.text)


if __name__ == "__main__":
    main()
