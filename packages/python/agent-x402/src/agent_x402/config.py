"""Environment-backed configuration for agent services.

Values are read from the process environment, with a ``.env`` file loaded
once through python-dotenv. Every loader here is meant to run at startup;
invalid values raise :class:`~agent_x402.errors.ConfigurationError` instead
of surfacing later as protocol failures.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple, Union

from dotenv import load_dotenv
from web3 import Web3

from .constants import (
    DEFAULT_RPC_URLS,
    NATIVE_CURRENCIES,
    PROOF_FRESHNESS_SECONDS,
    REPLAY_TTL_SECONDS,
)
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_ENV_LOADED = False

# Role-specific key first, shared fallback second.
SIGNER_KEY_NAMES: Dict[str, Tuple[str, ...]] = {
    "prompt": ("PROMPT_PRIVATE_KEY", "PAYMENT_PRIVATE_KEY"),
    "image": ("PAYMENT_PRIVATE_KEY",),
}


def load_environment(path: Optional[Union[str, Path]] = None, *, override: bool = False) -> None:
    """Load a ``.env`` file into ``os.environ`` (first call only unless ``override``)."""
    global _ENV_LOADED
    if _ENV_LOADED and not override:
        return
    if path is not None:
        load_dotenv(dotenv_path=path, override=override)
    else:
        load_dotenv(override=override)
    _ENV_LOADED = True


def config_value(
    keys: Union[str, Sequence[str]],
    *,
    required: bool = True,
    default: Optional[str] = None,
) -> Optional[str]:
    """Return the first non-blank value among ``keys``."""
    key_list: Tuple[str, ...]
    if isinstance(keys, str):
        key_list = (keys,)
    else:
        key_list = tuple(keys)

    for key in key_list:
        value = os.environ.get(key)
        if value is not None and value.strip():
            return value.strip()

    if not required:
        return default

    joined = "/".join(key_list)
    raise ConfigurationError(f"Missing configuration for {joined}. Provide it via environment or .env.")


def normalize_address(value: Any, *, field: str) -> str:
    if not isinstance(value, str) or not Web3.is_address(value.strip()):
        raise ConfigurationError(f"{field} must be a 0x-prefixed 20-byte hexadecimal address.")
    return Web3.to_checksum_address(value.strip())


def parse_amount_minor(value: Any, *, field: str, decimals: int = 18) -> int:
    """Parse an amount into minor units.

    Integers and integer strings are taken as minor units (``"0x"`` prefixed
    strings as hex). A decimal string such as ``"0.01"`` is read as whole
    currency units and scaled by ``decimals`` without float rounding.
    """
    if isinstance(value, bool):
        raise ConfigurationError(f"{field} must be a number, not a boolean")
    if isinstance(value, int):
        if value < 0:
            raise ConfigurationError(f"{field} must be non-negative")
        return value
    if not isinstance(value, str):
        raise ConfigurationError(f"{field} must be a string or integer value")

    trimmed = value.strip()
    if not trimmed:
        raise ConfigurationError(f"{field} cannot be empty")
    if trimmed.lower().startswith("0x"):
        try:
            return int(trimmed, 16)
        except ValueError as err:
            raise ConfigurationError(f"{field} is not a valid hexadecimal number") from err
    if "." not in trimmed:
        try:
            amount = int(trimmed, 10)
        except ValueError as err:
            raise ConfigurationError(f"{field} must be a decimal or hexadecimal number") from err
        if amount < 0:
            raise ConfigurationError(f"{field} must be non-negative")
        return amount

    try:
        whole = Decimal(trimmed)
    except InvalidOperation as err:
        raise ConfigurationError(f"{field} is not a valid decimal amount") from err
    scaled = whole.scaleb(decimals)
    if scaled < 0:
        raise ConfigurationError(f"{field} must be non-negative")
    if scaled != scaled.to_integral_value():
        raise ConfigurationError(f"{field} has more than {decimals} decimal places")
    return int(scaled)


def format_amount(amount_minor: int, decimals: int = 18) -> str:
    """Render minor units as a plain decimal string (``10**16`` -> ``"0.01"``)."""
    text = format(Decimal(amount_minor).scaleb(-decimals), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text or "0"


@dataclass(frozen=True)
class PricingPolicy:
    unit_price_minor: int
    currency: str
    network: str
    pay_to_address: str
    min_amount_minor: int
    rpc_endpoint: str

    def __post_init__(self) -> None:
        if self.unit_price_minor < 0 or self.min_amount_minor < 0:
            raise ConfigurationError("Pricing amounts must be non-negative")
        if not Web3.is_address(self.pay_to_address):
            raise ConfigurationError(
                f"pay_to_address {self.pay_to_address!r} is not a valid address"
            )
        if not self.rpc_endpoint:
            raise ConfigurationError("rpc_endpoint must be set")

    @property
    def is_free(self) -> bool:
        return self.unit_price_minor == 0


def load_pricing_policy(
    prefix: str = "PAYMENT",
    *,
    default_price: str = "5000000000000000",
    address_keys: Sequence[str] = ("PAYMENT_CONTRACT_ADDRESS", "PAYMENT_ADDRESS"),
) -> PricingPolicy:
    """Build a :class:`PricingPolicy` from ``{prefix}_*`` settings.

    ``{prefix}_MIN_AMOUNT`` falls back to the price, so an agent configured
    with a single price accepts exactly that amount or more.
    """
    load_environment()
    network = config_value(f"{prefix}_NETWORK", required=False, default="BSCTest")
    native = NATIVE_CURRENCIES.get(network)
    currency = config_value(
        f"{prefix}_CURRENCY",
        required=False,
        default=native["symbol"] if native else "BNB",
    )
    decimals = native["decimals"] if native else 18

    price_raw = config_value(f"{prefix}_PRICE", required=False, default=default_price)
    min_raw = config_value(f"{prefix}_MIN_AMOUNT", required=False, default=price_raw)
    price = parse_amount_minor(price_raw, field=f"{prefix}_PRICE", decimals=decimals)
    min_amount = parse_amount_minor(min_raw, field=f"{prefix}_MIN_AMOUNT", decimals=decimals)

    pay_to = normalize_address(config_value(tuple(address_keys)), field="/".join(address_keys))
    rpc_url = config_value(
        "PAYMENT_RPC_URL",
        required=False,
        default=DEFAULT_RPC_URLS.get(network),
    )
    if not rpc_url:
        raise ConfigurationError(f"PAYMENT_RPC_URL is required for network {network}")

    return PricingPolicy(
        unit_price_minor=price,
        currency=currency,
        network=network,
        pay_to_address=pay_to,
        min_amount_minor=min_amount,
        rpc_endpoint=rpc_url,
    )


def resolve_signing_key(role: str) -> str:
    """Return the private key bound to ``role``; never logs the key itself."""
    load_environment()
    names = SIGNER_KEY_NAMES.get(role, ("PAYMENT_PRIVATE_KEY",))
    for name in names:
        value = os.environ.get(name)
        if value and value.strip():
            key = value.strip()
            logger.info("signing key for role=%s resolved from %s", role, name)
            return key if key.startswith("0x") else f"0x{key}"
    raise ConfigurationError(f"No signing key configured for role {role!r}; set {'/'.join(names)}")


def signing_key_source(role: str) -> Optional[str]:
    """Name of the environment variable that supplies ``role``'s key."""
    for name in SIGNER_KEY_NAMES.get(role, ("PAYMENT_PRIVATE_KEY",)):
        value = os.environ.get(name)
        if value and value.strip():
            return name
    return None


def load_contract_address() -> str:
    load_environment()
    return normalize_address(config_value("PAYMENT_CONTRACT_ADDRESS"), field="PAYMENT_CONTRACT_ADDRESS")


def load_freshness_window() -> int:
    raw = config_value("PROOF_FRESHNESS_SECONDS", required=False, default=str(PROOF_FRESHNESS_SECONDS))
    return _parse_positive_int(raw, field="PROOF_FRESHNESS_SECONDS")


def load_replay_ttl() -> int:
    raw = config_value("REPLAY_TTL_SECONDS", required=False, default=str(REPLAY_TTL_SECONDS))
    return _parse_positive_int(raw, field="REPLAY_TTL_SECONDS")


def _parse_positive_int(raw: Optional[str], *, field: str) -> int:
    try:
        value = int(str(raw), 10)
    except ValueError as err:
        raise ConfigurationError(f"{field} must be an integer value.") from err
    if value <= 0:
        raise ConfigurationError(f"{field} must be positive.")
    return value
