"""Payment-gate middleware wrappers for FastAPI and Flask."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

from .challenge import build_challenge, challenge_response_body
from .constants import DEFAULT_MIME_TYPE, PAYMENT_HEADER
from .verifier import PaymentVerifier, VerificationResult

logger = logging.getLogger(__name__)

# "METHOD /path" -> challenge description (None for the default text).
RoutesConfig = Dict[str, Optional[str]]


class PaymentGate:
    """Verifier plus challenge builder, shared by endpoints and middleware."""

    def __init__(
        self,
        verifier: PaymentVerifier,
        *,
        description: Optional[str] = None,
        mime_type: str = DEFAULT_MIME_TYPE,
    ) -> None:
        self.verifier = verifier
        self.description = description
        self.mime_type = mime_type

    @property
    def policy(self):
        return self.verifier.policy

    def challenge(
        self,
        resource: str,
        *,
        referrer: Optional[str] = None,
        result: Optional[VerificationResult] = None,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        error = None
        error_details = None
        if result is not None and result.reason is not None:
            error = result.reason.value
            error_details = result.message
        document = build_challenge(
            self.verifier.policy,
            resource,
            description=description or self.description,
            referrer=referrer,
            error=error,
            error_details=error_details,
            mime_type=self.mime_type,
        )
        return challenge_response_body(document)

    def evaluate(
        self,
        proof: Optional[str],
        resource: str,
        *,
        referrer: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Tuple[VerificationResult, Optional[Dict[str, Any]]]:
        """Verify ``proof``; the second item is a 402 body when it failed."""
        result = self.verifier.verify(proof)
        if result.valid:
            return result, None
        return result, self.challenge(resource, referrer=referrer, result=result, description=description)


def _route_key(method: str, path: str) -> str:
    return f"{method.upper()} {path}"


# =========================================================================
# FastAPI wrappers (async)
# =========================================================================


def fastapi_payment_middleware(gate: PaymentGate, routes: RoutesConfig):
    """Return an ``@app.middleware("http")`` callable gating ``routes``.

    The verification result is stored on ``request.state.payment``.
    """
    from fastapi import status
    from fastapi.concurrency import run_in_threadpool
    from fastapi.responses import JSONResponse

    async def middleware(request, call_next):
        key = _route_key(request.method, request.url.path)
        if key not in routes:
            return await call_next(request)

        referrer = request.query_params.get("referrer") or None
        result, challenge = await run_in_threadpool(
            gate.evaluate,
            request.headers.get(PAYMENT_HEADER),
            str(request.url),
            referrer=referrer,
            description=routes.get(key),
        )
        if challenge is not None:
            return JSONResponse(challenge, status_code=status.HTTP_402_PAYMENT_REQUIRED)
        request.state.payment = result
        return await call_next(request)

    return middleware


# =========================================================================
# Flask wrappers (sync)
# =========================================================================


def flask_payment_middleware(app, gate: PaymentGate, routes: RoutesConfig):
    """Register a ``before_request`` hook gating ``routes``; result on ``g.payment``."""
    from flask import g, jsonify, request

    def payment_gate():
        key = _route_key(request.method, request.path)
        if key not in routes:
            return None
        referrer = request.args.get("referrer") or None
        result, challenge = gate.evaluate(
            request.headers.get(PAYMENT_HEADER),
            request.url,
            referrer=referrer,
            description=routes.get(key),
        )
        if challenge is not None:
            return jsonify(challenge), 402
        g.payment = result
        return None

    app.before_request(payment_gate)
    return payment_gate
