import pytest

from agent_x402 import config
from agent_x402.config import (
    PricingPolicy,
    config_value,
    format_amount,
    load_freshness_window,
    load_pricing_policy,
    load_replay_ttl,
    normalize_address,
    parse_amount_minor,
    resolve_signing_key,
    signing_key_source,
)
from agent_x402.errors import ConfigurationError

PAY_TO = "0x" + "a1" * 20
KEY = "0x" + "11" * 32

_ENV_KEYS = [
    "PAYMENT_NETWORK",
    "PAYMENT_CURRENCY",
    "PAYMENT_PRICE",
    "PAYMENT_MIN_AMOUNT",
    "PAYMENT_ADDRESS",
    "PAYMENT_CONTRACT_ADDRESS",
    "PAYMENT_RPC_URL",
    "PROMPT_AGENT_PRICE",
    "PROMPT_AGENT_MIN_AMOUNT",
    "PROMPT_PRIVATE_KEY",
    "PAYMENT_PRIVATE_KEY",
    "PROOF_FRESHNESS_SECONDS",
    "REPLAY_TTL_SECONDS",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.setattr(config, "_ENV_LOADED", True)
    for key in _ENV_KEYS:
        monkeypatch.delenv(key, raising=False)


def test_config_value_returns_first_non_blank(monkeypatch):
    monkeypatch.setenv("PAYMENT_ADDRESS", "   ")
    monkeypatch.setenv("PAYMENT_CONTRACT_ADDRESS", " 0xabc ")
    assert config_value(("PAYMENT_ADDRESS", "PAYMENT_CONTRACT_ADDRESS")) == "0xabc"


def test_config_value_missing_required_raises():
    with pytest.raises(ConfigurationError, match="PAYMENT_ADDRESS"):
        config_value("PAYMENT_ADDRESS")
    assert config_value("PAYMENT_ADDRESS", required=False, default="x") == "x"


def test_parse_amount_minor_accepts_integer_hex_and_decimal():
    assert parse_amount_minor("10000000000000000", field="price") == 10**16
    assert parse_amount_minor("0x2386f26fc10000", field="price") == 10**16
    assert parse_amount_minor("0.01", field="price") == 10**16
    assert parse_amount_minor(5, field="price") == 5


@pytest.mark.parametrize("value", ["", "-1", "abc", "0.0000000000000000001", True, 1.5, "-0.5"])
def test_parse_amount_minor_rejects_invalid(value):
    with pytest.raises(ConfigurationError):
        parse_amount_minor(value, field="price")


def test_format_amount():
    assert format_amount(10**16) == "0.01"
    assert format_amount(10**18) == "1"
    assert format_amount(0) == "0"
    assert format_amount(1234, decimals=2) == "12.34"


def test_normalize_address_checksums_and_rejects():
    assert normalize_address(PAY_TO, field="addr") == normalize_address(PAY_TO.upper().replace("0X", "0x"), field="addr")
    with pytest.raises(ConfigurationError):
        normalize_address("0x1234", field="addr")


def test_load_pricing_policy_defaults(monkeypatch):
    monkeypatch.setenv("PAYMENT_ADDRESS", PAY_TO)
    policy = load_pricing_policy()
    assert policy.network == "BSCTest"
    assert policy.currency == "BNB"
    assert policy.unit_price_minor == 5 * 10**15
    assert policy.min_amount_minor == policy.unit_price_minor
    assert policy.rpc_endpoint.startswith("https://")
    assert policy.pay_to_address.lower() == PAY_TO


def test_load_pricing_policy_prefix_and_overrides(monkeypatch):
    monkeypatch.setenv("PAYMENT_CONTRACT_ADDRESS", PAY_TO)
    monkeypatch.setenv("PROMPT_AGENT_PRICE", "0.002")
    monkeypatch.setenv("PROMPT_AGENT_MIN_AMOUNT", "1000")
    monkeypatch.setenv("PAYMENT_RPC_URL", "http://localhost:8545")
    policy = load_pricing_policy(
        "PROMPT_AGENT", default_price="1000000000000000", address_keys=("PAYMENT_CONTRACT_ADDRESS",)
    )
    assert policy.unit_price_minor == 2 * 10**15
    assert policy.min_amount_minor == 1000
    assert policy.rpc_endpoint == "http://localhost:8545"


def test_load_pricing_policy_requires_rpc_for_unknown_network(monkeypatch):
    monkeypatch.setenv("PAYMENT_ADDRESS", PAY_TO)
    monkeypatch.setenv("PAYMENT_NETWORK", "Devnet")
    with pytest.raises(ConfigurationError, match="PAYMENT_RPC_URL"):
        load_pricing_policy()


def test_pricing_policy_validation():
    with pytest.raises(ConfigurationError):
        PricingPolicy(
            unit_price_minor=1,
            currency="BNB",
            network="BSCTest",
            pay_to_address="not-an-address",
            min_amount_minor=1,
            rpc_endpoint="http://rpc",
        )
    free = PricingPolicy(0, "BNB", "BSCTest", PAY_TO, 0, "http://rpc")
    assert free.is_free


def test_resolve_signing_key_prefers_role_key(monkeypatch):
    monkeypatch.setenv("PAYMENT_PRIVATE_KEY", "22" * 32)
    assert resolve_signing_key("prompt") == "0x" + "22" * 32
    assert signing_key_source("prompt") == "PAYMENT_PRIVATE_KEY"

    monkeypatch.setenv("PROMPT_PRIVATE_KEY", KEY)
    assert resolve_signing_key("prompt") == KEY
    assert signing_key_source("prompt") == "PROMPT_PRIVATE_KEY"
    assert resolve_signing_key("image") == "0x" + "22" * 32


def test_resolve_signing_key_missing():
    with pytest.raises(ConfigurationError):
        resolve_signing_key("image")
    assert signing_key_source("image") is None


def test_windows_from_env(monkeypatch):
    assert load_freshness_window() == 600
    assert load_replay_ttl() == 86400
    monkeypatch.setenv("PROOF_FRESHNESS_SECONDS", "30")
    assert load_freshness_window() == 30
    monkeypatch.setenv("REPLAY_TTL_SECONDS", "0")
    with pytest.raises(ConfigurationError):
        load_replay_ttl()
