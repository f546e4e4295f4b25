import logging
import os

from dotenv import load_dotenv
from fastapi import FastAPI, Request

from agent_x402.chain import ChainClient
from agent_x402.config import load_freshness_window, load_pricing_policy
from agent_x402.http import PaymentGate, fastapi_payment_middleware
from agent_x402.replay import replay_guard_from_env
from agent_x402.verifier import PaymentVerifier

load_dotenv()
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s: %(message)s")

app = FastAPI()

PORT = int(os.getenv("PORT", "3000"))

policy = load_pricing_policy()
verifier = PaymentVerifier(ChainClient.from_policy(policy), replay_guard_from_env(), policy, load_freshness_window())

routes = {
    "GET /api/premium-data": "Access to premium data endpoint",
}

middleware = fastapi_payment_middleware(PaymentGate(verifier), routes)


@app.middleware("http")
async def x402_middleware(request, call_next):
    return await middleware(request, call_next)


@app.get("/api/premium-data")
async def premium_data(request: Request):
    return {
        "message": "Success! You've accessed the premium data.",
        "data": {
            "secret": "This is protected content behind a paywall",
            "paidBy": request.state.payment.payer,
            "txHash": request.state.payment.tx_hash,
        },
    }


@app.get("/")
async def root():
    return {
        "message": "x402 Demo Server",
        "endpoints": {
            "free": ["/", "/health"],
            "protected": [
                {
                    "path": "/api/premium-data",
                    "price": str(policy.unit_price_minor),
                    "currency": policy.currency,
                    "description": "Premium data endpoint (requires payment)",
                }
            ],
        },
    }


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
