"""FastAPI apps for the Prompt Agent and the Image Agent.

Run either with uvicorn's factory mode, e.g.::

    uvicorn agent_x402.agents:prompt_agent_from_env --factory --port 9100
    uvicorn agent_x402.agents:image_agent_from_env --factory --port 9000

Handlers are plain ``def`` functions: they block on RPC round-trips and
receipt waits, and FastAPI runs them in its thread pool.
"""

from __future__ import annotations

import logging
import random
from typing import Any, Dict, Mapping, Optional

import httpx
from fastapi import Body, FastAPI, Header, Query, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .chain import ChainClient
from .collaborators import (
    DEFAULT_IMAGE_PROMPT_PREFIX,
    HttpImageGenerator,
    ImageGenerationError,
    ImageGenerator,
    PromptGenerator,
    generate_prompt,
)
from .config import (
    ConfigurationError,
    PricingPolicy,
    config_value,
    load_contract_address,
    load_environment,
    load_freshness_window,
    load_pricing_policy,
    parse_amount_minor,
)
from .constants import PAYMENT_HEADER
from .custody import signer_from_env
from .discovery import AGENT_CARD_PATH, build_agent_card, build_capability
from .http import PaymentGate
from .ledger import LedgerQueryError, RewardLedger
from .relay import AgentRelaySync
from .replay import replay_guard_from_env
from .responses import error_envelope, success_envelope
from .rewards import RewardTier, TierWeights, load_reward_templates, load_tier_weights, reward_payload, select_tier
from .settlement import SettlementExecutor
from .verifier import PaymentVerifier

logger = logging.getLogger(__name__)

JsonDict = Dict[str, Any]

PROMPT_AGENT_FEE_DESCRIPTION = "Prompt Agent service fee"
IMAGE_AGENT_FEE_DESCRIPTION = "Image Agent relay payment"
DEFAULT_TOPIC = "an abstract composition"

IMAGE_ACTIONS = ("generate_image", "generate_image_with_prompt", "make_payment")


def install_cors(app: FastAPI) -> None:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", PAYMENT_HEADER],
        max_age=86400,
    )


def _envelope_response(code: int, msg: str, data: Any = None) -> JSONResponse:
    return JSONResponse(error_envelope(code, msg, data), status_code=code)


def _optional_str(payload: JsonDict, key: str) -> Optional[str]:
    value = payload.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value.strip() or None


# =========================================================================
# Prompt Agent
# =========================================================================


def create_prompt_agent_app(
    *,
    policy: PricingPolicy,
    verifier: PaymentVerifier,
    executor: SettlementExecutor,
    contract_address: str,
    weights: Optional[TierWeights] = None,
    templates: Optional[Mapping[RewardTier, str]] = None,
    ledger: Optional[RewardLedger] = None,
    prompt_generator: Optional[PromptGenerator] = generate_prompt,
    rng: Optional[random.Random] = None,
) -> FastAPI:
    """Paid prompt agent: every call mints a tier-selected reward to the caller."""
    app = FastAPI(title="Prompt Agent")
    install_cors(app)

    gate = PaymentGate(verifier)
    tier_weights = weights or TierWeights.default()

    @app.get(AGENT_CARD_PATH)
    def agent_card(request: Request) -> JSONResponse:
        capability = build_capability(
            "generate_prompt",
            "Generate an image prompt and mint a reward token to the caller",
            policy,
            input_schema={
                "type": "object",
                "properties": {
                    "topic": {"type": "string", "description": "Image subject"},
                    "style": {"type": "string", "description": "Art style (optional)"},
                    "additionalRequirements": {"type": "string", "description": "Extra requirements (optional)"},
                    "userAddress": {"type": "string", "description": "Reward beneficiary (optional)"},
                },
            },
            output_schema={
                "type": "object",
                "properties": {
                    "data": {"type": "string", "description": "Prompt text"},
                    "rarity": {"type": "string", "description": "Reward tier code (N, R or S)"},
                    "txHash": {"type": "string", "description": "Reward mint transaction"},
                },
            },
        )
        card = build_agent_card(
            "Prompt Generation Agent",
            "Generates image prompts; each paid call mints a reward token of a random tier",
            str(request.base_url),
            policy,
            [capability],
        )
        return JSONResponse(card.to_payload())

    @app.post("/task")
    def task(
        request: Request,
        payload: Optional[JsonDict] = Body(default=None),
        x_payment: Optional[str] = Header(default=None, alias=PAYMENT_HEADER),
        referrer: Optional[str] = None,
    ) -> JSONResponse:
        body = payload or {}
        result, challenge = gate.evaluate(x_payment, str(request.url), referrer=referrer)
        if challenge is not None:
            return JSONResponse(challenge, status_code=status.HTTP_402_PAYMENT_REQUIRED)

        user_address = body.get("userAddress")
        if isinstance(user_address, str) and ChainClient.is_address(user_address):
            beneficiary = user_address
        else:
            beneficiary = result.payer
        tier = select_tier(tier_weights, rng)
        logger.info("prompt task paid tx=%s beneficiary=%s tier=%s", result.tx_hash, beneficiary, tier.value)

        settlement = executor.settle(
            policy.unit_price_minor,
            beneficiary,
            PROMPT_AGENT_FEE_DESCRIPTION,
            contract_address,
            referrer or "",
            tier,
        )
        if not settlement.success:
            return _envelope_response(
                status.HTTP_500_INTERNAL_SERVER_ERROR, "Reward settlement failed", settlement.to_payload()
            )

        data: JsonDict = {
            "data": reward_payload(tier, templates),
            "rarity": tier.code,
            "txHash": settlement.tx_hash,
        }
        topic = body.get("topic")
        if prompt_generator is not None and isinstance(topic, str) and topic.strip():
            style = body.get("style") if isinstance(body.get("style"), str) else None
            extra = body.get("additionalRequirements")
            data["topicPrompt"] = prompt_generator(topic.strip(), style, extra if isinstance(extra, str) else None)
        return JSONResponse(success_envelope(data))

    if ledger is not None:
        _install_ledger_routes(app, ledger)

    _ = (agent_card, task)
    return app


def _install_ledger_routes(app: FastAPI, ledger: RewardLedger) -> None:
    @app.get("/referrer/query")
    def referrer_query(
        query_type: str = Query(default="stats", alias="type"),
        referrer: Optional[str] = None,
    ) -> JSONResponse:
        try:
            if query_type == "list":
                referrers = ledger.referrer_stats()
                return JSONResponse(success_envelope({"total": len(referrers), "referrers": referrers}))
            if query_type not in ("stats", "tokens"):
                return _envelope_response(status.HTTP_400_BAD_REQUEST, f"Unknown query type {query_type!r}")
            if not referrer:
                return _envelope_response(status.HTTP_400_BAD_REQUEST, "Missing referrer parameter")
            if query_type == "stats":
                count = ledger.referrer_count(referrer)
                return JSONResponse(success_envelope({"referrer": referrer, "count": str(count)}))
            tokens = ledger.tokens_by_referrer(referrer)
            return JSONResponse(success_envelope({"referrer": referrer, "tokenIds": tokens, "count": len(tokens)}))
        except LedgerQueryError as err:
            return _envelope_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Ledger query failed", str(err))

    @app.get("/rewards/stats")
    def reward_stats(address: Optional[str] = None) -> JSONResponse:
        if not address or not ChainClient.is_address(address):
            return _envelope_response(status.HTTP_400_BAD_REQUEST, "address must be a valid 0x address")
        try:
            stats = ledger.rarity_stats(address)
        except LedgerQueryError as err:
            return _envelope_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Ledger query failed", str(err))
        return JSONResponse(success_envelope({"address": address, **stats}))

    _ = (referrer_query, reward_stats)


# =========================================================================
# Image Agent
# =========================================================================


def create_image_agent_app(
    *,
    policy: PricingPolicy,
    verifier: PaymentVerifier,
    executor: SettlementExecutor,
    relay: AgentRelaySync,
    image_generator: ImageGenerator,
    prompt_agent_url: str,
    contract_address: Optional[str] = None,
    prompt_prefix: str = DEFAULT_IMAGE_PROMPT_PREFIX,
) -> FastAPI:
    """Paid image agent that buys its prompt from the Prompt Agent."""
    app = FastAPI(title="Image Agent")
    install_cors(app)

    gate = PaymentGate(verifier)

    @app.get(AGENT_CARD_PATH)
    def agent_card(request: Request) -> JSONResponse:
        capabilities = [
            build_capability(
                "generate_image",
                "Generate an image from a prompt",
                policy,
                input_schema={
                    "type": "object",
                    "properties": {"prompt": {"type": "string"}},
                    "required": ["prompt"],
                },
                output_schema={"type": "object", "properties": {"data": {"type": "string", "description": "Image URL"}}},
            ),
            build_capability(
                "generate_image_with_prompt",
                "Buy a prompt from the Prompt Agent on the caller's behalf, then generate an image",
                policy,
                input_schema={
                    "type": "object",
                    "properties": {
                        "topic": {"type": "string"},
                        "style": {"type": "string"},
                        "additionalRequirements": {"type": "string"},
                        "promptAgentUrl": {"type": "string"},
                    },
                },
                output_schema={
                    "type": "object",
                    "properties": {
                        "data": {"type": "string", "description": "Image URL"},
                        "prompt": {"type": "string"},
                        "rarity": {"type": "string"},
                    },
                },
            ),
            build_capability(
                "make_payment",
                "Pay a recipient from the agent's account",
                policy,
                input_schema={
                    "type": "object",
                    "properties": {
                        "recipient": {"type": "string"},
                        "amount": {"type": "string", "description": "Whole currency units, e.g. 0.01"},
                        "description": {"type": "string"},
                        "useContract": {"type": "boolean"},
                    },
                    "required": ["recipient", "amount"],
                },
            ),
        ]
        card = build_agent_card(
            "Image Generation Agent",
            "Generates images; prompts are bought from a paid prompt agent",
            str(request.base_url),
            policy,
            capabilities,
        )
        return JSONResponse(card.to_payload())

    def _generate(prompt: str) -> str:
        return image_generator(f"{prompt_prefix}{prompt}")

    @app.post("/task")
    def task(
        request: Request,
        payload: Optional[JsonDict] = Body(default=None),
        x_payment: Optional[str] = Header(default=None, alias=PAYMENT_HEADER),
        action: str = "generate_image_with_prompt",
        referrer: Optional[str] = None,
    ) -> JSONResponse:
        body = payload or {}
        if action not in IMAGE_ACTIONS:
            return _envelope_response(status.HTTP_404_NOT_FOUND, f"Unknown action {action!r}")

        try:
            params = _image_params(action, body)
        except ValueError as err:
            return _envelope_response(status.HTTP_400_BAD_REQUEST, str(err))

        result, challenge = gate.evaluate(x_payment, str(request.url), referrer=referrer)
        if challenge is not None:
            return JSONResponse(challenge, status_code=status.HTTP_402_PAYMENT_REQUIRED)
        logger.info("image task paid action=%s tx=%s payer=%s", action, result.tx_hash, result.payer)

        if action == "make_payment":
            return _make_payment(params, referrer)

        if action == "generate_image":
            prompt = params["prompt"]
            extra: JsonDict = {}
        else:
            agent_url = (params.get("promptAgentUrl") or prompt_agent_url).rstrip("/")
            relay_result = relay.invoke(
                f"{agent_url}/task",
                {
                    "topic": params.get("topic") or DEFAULT_TOPIC,
                    "style": params.get("style"),
                    "additionalRequirements": params.get("additionalRequirements"),
                },
                beneficiary=result.payer,
                referrer=referrer,
                capability="generate_prompt",
                description=IMAGE_AGENT_FEE_DESCRIPTION,
            )
            if not relay_result.success:
                return _envelope_response(
                    status.HTTP_500_INTERNAL_SERVER_ERROR, "Prompt Agent call failed", relay_result.to_payload()
                )
            data = relay_result.data or {}
            prompt = data.get("data")
            if not isinstance(prompt, str) or not prompt.strip():
                return _envelope_response(
                    status.HTTP_500_INTERNAL_SERVER_ERROR,
                    "Prompt Agent returned no prompt",
                    {"state": relay_result.state.value, "txHash": relay_result.tx_hash},
                )
            extra = {"rarity": data.get("rarity"), "relayTxHash": relay_result.tx_hash}

        try:
            url = _generate(prompt)
        except ImageGenerationError as err:
            return _envelope_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Image generation failed", str(err))
        output: JsonDict = {"data": url, "prompt": f"{prompt_prefix}{prompt}"}
        output.update({key: value for key, value in extra.items() if value is not None})
        return JSONResponse(success_envelope(output))

    def _make_payment(params: JsonDict, referrer: Optional[str]) -> JSONResponse:
        amount = params["amount_minor"]
        recipient = params["recipient"]
        if params["useContract"]:
            if not contract_address:
                return _envelope_response(
                    status.HTTP_500_INTERNAL_SERVER_ERROR, "PAYMENT_CONTRACT_ADDRESS is not configured"
                )
            settlement = executor.settle(
                amount, recipient, params["description"], contract_address, referrer or "", RewardTier.COMMON
            )
        else:
            settlement = executor.transfer(amount, recipient)
        if not settlement.success:
            return _envelope_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Payment failed", settlement.to_payload())
        return JSONResponse(success_envelope({"txHash": settlement.tx_hash, "events": settlement.events}))

    _ = (agent_card, task)
    return app


def _image_params(action: str, body: JsonDict) -> JsonDict:
    if action == "generate_image":
        prompt = _optional_str(body, "prompt")
        if not prompt:
            raise ValueError("prompt is required")
        return {"prompt": prompt}

    if action == "generate_image_with_prompt":
        return {
            key: _optional_str(body, key)
            for key in ("topic", "style", "additionalRequirements", "promptAgentUrl")
        }

    recipient = _optional_str(body, "recipient")
    amount = body.get("amount")
    if not recipient or amount is None:
        raise ValueError("recipient and amount are required")
    if isinstance(amount, bool) or not isinstance(amount, (str, int, float)):
        raise ValueError("amount must be a decimal string or number")
    # Whole currency units ("0.01"), never minor units.
    text = str(amount).strip()
    if "." not in text:
        text = f"{text}.0"
    try:
        amount_minor = parse_amount_minor(text, field="amount")
    except ConfigurationError as err:
        raise ValueError(str(err)) from err
    if amount_minor == 0:
        raise ValueError("amount must be greater than zero")
    use_contract = body.get("useContract", False)
    if not isinstance(use_contract, bool):
        raise ValueError("useContract must be a boolean")
    return {
        "recipient": recipient,
        "amount_minor": amount_minor,
        "description": _optional_str(body, "description") or "Agent payment",
        "useContract": use_contract,
    }


# =========================================================================
# Environment factories
# =========================================================================


def prompt_agent_from_env() -> FastAPI:
    load_environment()
    policy = load_pricing_policy(
        "PROMPT_AGENT",
        default_price="1000000000000000",
        address_keys=("PAYMENT_CONTRACT_ADDRESS",),
    )
    chain = ChainClient.from_policy(policy)
    contract_address = load_contract_address()
    verifier = PaymentVerifier(chain, replay_guard_from_env(), policy, load_freshness_window())
    executor = SettlementExecutor(chain, signer_from_env("prompt"))
    return create_prompt_agent_app(
        policy=policy,
        verifier=verifier,
        executor=executor,
        contract_address=contract_address,
        weights=load_tier_weights(),
        templates=load_reward_templates(),
        ledger=RewardLedger(chain, contract_address),
    )


def image_agent_from_env() -> FastAPI:
    load_environment()
    policy = load_pricing_policy("PAYMENT")
    chain = ChainClient.from_policy(policy)
    verifier = PaymentVerifier(chain, replay_guard_from_env(), policy, load_freshness_window())
    executor = SettlementExecutor(chain, signer_from_env("image"))
    relay = AgentRelaySync(httpx.Client(timeout=60.0), executor)
    contract_address = config_value("PAYMENT_CONTRACT_ADDRESS", required=False)
    return create_image_agent_app(
        policy=policy,
        verifier=verifier,
        executor=executor,
        relay=relay,
        image_generator=HttpImageGenerator.from_env(),
        prompt_agent_url=config_value("PROMPT_AGENT_URL"),
        contract_address=load_contract_address() if contract_address else None,
        prompt_prefix=config_value("IMAGE_PROMPT_PREFIX", required=False, default=DEFAULT_IMAGE_PROMPT_PREFIX)
        or DEFAULT_IMAGE_PROMPT_PREFIX,
    )
