import pytest

fastapi = pytest.importorskip("fastapi")
flask = pytest.importorskip("flask")

from fastapi.testclient import TestClient

from agent_x402.http import PaymentGate, fastapi_payment_middleware, flask_payment_middleware
from agent_x402.replay import InMemoryReplayGuard
from agent_x402.verifier import PaymentVerifier, encode_proof

from conftest import PAYER, tx_hash_for

TX = tx_hash_for(42)


@pytest.fixture
def gate(chain, policy):
    return PaymentGate(PaymentVerifier(chain, InMemoryReplayGuard(60), policy))


def test_gate_challenge_carries_failure_reason(gate):
    result, challenge = gate.evaluate(None, "http://agent.test/task", referrer="alice")
    assert not result.valid
    entry = challenge["accepts"][0]
    assert entry["ext"]["error"] == "MissingProof"
    assert entry["ext"]["referrer"] == "alice"
    assert entry["ext"]["errorDetails"] == "X-PAYMENT header is required"


def test_gate_accepts_valid_proof(chain, gate):
    chain.add_payment(TX)
    result, challenge = gate.evaluate(encode_proof(TX), "http://agent.test/task")
    assert result.valid
    assert challenge is None


def test_fastapi_wrapper_gates_configured_routes(chain, gate):
    app = fastapi.FastAPI()
    middleware = fastapi_payment_middleware(gate, {"GET /protected": "Protected report"})

    @app.middleware("http")
    async def x402_mw(request, call_next):
        return await middleware(request, call_next)

    @app.get("/protected")
    def protected(request: fastapi.Request):
        return {"payer": request.state.payment.payer}

    @app.get("/open")
    def open_route():
        return {"ok": True}

    client = TestClient(app)
    assert client.get("/open").json() == {"ok": True}

    resp = client.get("/protected?referrer=bob")
    assert resp.status_code == 402
    entry = resp.json()["accepts"][0]
    assert entry["description"] == "Protected report"
    assert entry["ext"]["referrer"] == "bob"

    chain.add_payment(TX)
    resp = client.get("/protected", headers={"X-PAYMENT": encode_proof(TX)})
    assert resp.status_code == 200
    assert resp.json() == {"payer": PAYER}

    resp = client.get("/protected", headers={"X-PAYMENT": encode_proof(TX)})
    assert resp.status_code == 402
    assert resp.json()["accepts"][0]["ext"]["error"] == "ProofReused"


def test_flask_wrapper_gates_configured_routes(chain, gate):
    app = flask.Flask(__name__)
    flask_payment_middleware(app, gate, {"POST /task": None})

    @app.post("/task")
    def task():
        return {"payer": flask.g.payment.payer}

    @app.get("/health")
    def health():
        return {"ok": True}

    client = app.test_client()
    assert client.get("/health").status_code == 200

    resp = client.post("/task", json={})
    assert resp.status_code == 402
    assert resp.get_json()["accepts"][0]["description"] == "Payment required: 0.01 BNB"

    chain.add_payment(TX)
    resp = client.post("/task", json={}, headers={"X-PAYMENT": encode_proof(TX)})
    assert resp.status_code == 200
    assert resp.get_json() == {"payer": PAYER}
