"""Payment-required challenge documents (HTTP 402 bodies)."""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from web3 import Web3

from .config import PricingPolicy, format_amount
from .constants import DEFAULT_MIME_TYPE, NATIVE_CURRENCIES, PAYMENT_SCHEME, X402_VERSION

logger = logging.getLogger(__name__)

_DIGITS_RE = re.compile(r"[0-9]+")


class ChallengeExtension(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    referrer: Optional[str] = None
    error: Optional[str] = None
    error_details: Optional[Any] = Field(default=None, alias="errorDetails")


class PaymentRequirement(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    scheme: str = PAYMENT_SCHEME
    network: str
    currency: str
    address: str
    max_amount_required: str = Field(alias="maxAmountRequired")
    resource: str
    description: str
    mime_type: str = Field(default=DEFAULT_MIME_TYPE, alias="mimeType")
    ext: Optional[ChallengeExtension] = None

    @property
    def amount_minor(self) -> int:
        return int(self.max_amount_required)

    @property
    def referrer(self) -> Optional[str]:
        return self.ext.referrer if self.ext is not None else None


class ChallengeDocument(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    x402_version: int = Field(default=X402_VERSION, alias="x402Version")
    accepts: List[PaymentRequirement]

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def resource_with_address(resource: str, address: str) -> str:
    """Set ``address=<address>`` on ``resource``, replacing any existing value."""
    parts = urlsplit(resource)
    query = [(key, value) for key, value in parse_qsl(parts.query, keep_blank_values=True) if key != "address"]
    query.append(("address", address))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def build_challenge(
    policy: PricingPolicy,
    resource: str,
    description: Optional[str] = None,
    referrer: Optional[str] = None,
    error: Optional[str] = None,
    error_details: Optional[Any] = None,
    mime_type: str = DEFAULT_MIME_TYPE,
) -> ChallengeDocument:
    if description is None:
        native = NATIVE_CURRENCIES.get(policy.network)
        decimals = native["decimals"] if native else 18
        description = f"Payment required: {format_amount(policy.unit_price_minor, decimals)} {policy.currency}"

    ext = None
    if referrer or error:
        ext = ChallengeExtension(
            referrer=referrer or None,
            error=error,
            error_details=error_details if error else None,
        )

    requirement = PaymentRequirement(
        scheme=PAYMENT_SCHEME,
        network=policy.network,
        currency=policy.currency,
        address=policy.pay_to_address,
        max_amount_required=str(policy.unit_price_minor),
        resource=resource_with_address(resource, policy.pay_to_address),
        description=description,
        mime_type=mime_type,
        ext=ext,
    )
    return ChallengeDocument(x402_version=X402_VERSION, accepts=[requirement])


def challenge_response_body(document: ChallengeDocument) -> Dict[str, Any]:
    return document.to_payload()


def parse_challenge(payload: Any) -> Optional[PaymentRequirement]:
    """Extract the first payment requirement from a downstream 402 body.

    Only ``address`` and ``maxAmountRequired`` are mandatory here; descriptive
    fields a downstream agent omits are filled with empty strings. Anything
    that cannot be paid returns ``None``.
    """
    if not isinstance(payload, dict) or "x402Version" not in payload:
        return None
    accepts = payload.get("accepts")
    if not isinstance(accepts, list) or not accepts or not isinstance(accepts[0], dict):
        return None

    entry = accepts[0]
    address = entry.get("address")
    amount = entry.get("maxAmountRequired")
    if isinstance(amount, int) and not isinstance(amount, bool):
        amount = str(amount)
    if not isinstance(address, str) or not Web3.is_address(address):
        logger.warning("challenge has no usable payment address: %r", address)
        return None
    if not isinstance(amount, str) or not _DIGITS_RE.fullmatch(amount.strip()):
        logger.warning("challenge has no usable maxAmountRequired: %r", amount)
        return None

    candidate = {
        "scheme": PAYMENT_SCHEME,
        "network": "",
        "currency": "",
        "resource": "",
        "description": "",
        **entry,
        "maxAmountRequired": amount.strip(),
    }
    try:
        return PaymentRequirement.model_validate(candidate)
    except ValidationError as exc:
        logger.warning("challenge failed schema validation: %s", exc)
        return None
