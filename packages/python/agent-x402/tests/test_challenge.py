from urllib.parse import parse_qs, urlsplit

import pytest

from agent_x402.challenge import (
    build_challenge,
    challenge_response_body,
    parse_challenge,
    resource_with_address,
)

from conftest import PAY_TO, PRICE, make_policy


def test_challenge_document_shape(policy):
    body = challenge_response_body(build_challenge(policy, "http://agent.test/task"))
    assert body["x402Version"] == 1
    assert len(body["accepts"]) == 1

    entry = body["accepts"][0]
    assert entry["scheme"] == "exact"
    assert entry["network"] == "BSCTest"
    assert entry["currency"] == "BNB"
    assert entry["address"] == policy.pay_to_address
    assert entry["maxAmountRequired"] == str(PRICE)
    assert entry["mimeType"] == "application/json"
    assert entry["description"] == "Payment required: 0.01 BNB"
    assert "ext" not in entry

    query = parse_qs(urlsplit(entry["resource"]).query)
    assert query["address"] == [policy.pay_to_address]


def test_challenge_carries_referrer_and_error(policy):
    document = build_challenge(
        policy,
        "http://agent.test/task?referrer=old",
        description="Prompt generation",
        referrer="alice",
        error="ProofExpired",
        error_details="too old",
    )
    entry = challenge_response_body(document)["accepts"][0]
    assert entry["description"] == "Prompt generation"
    assert entry["ext"] == {"referrer": "alice", "error": "ProofExpired", "errorDetails": "too old"}


def test_error_details_dropped_without_error(policy):
    entry = challenge_response_body(build_challenge(policy, "/task", referrer="bob", error_details="x"))["accepts"][0]
    assert entry["ext"] == {"referrer": "bob"}


def test_resource_with_address_replaces_existing_value():
    url = resource_with_address("http://a.test/task?address=0xold&x=1", PAY_TO)
    query = parse_qs(urlsplit(url).query)
    assert query["address"] == [PAY_TO]
    assert query["x"] == ["1"]


def test_parse_challenge_round_trips(policy):
    body = challenge_response_body(build_challenge(policy, "/task", referrer="carol"))
    requirement = parse_challenge(body)
    assert requirement is not None
    assert requirement.amount_minor == PRICE
    assert requirement.address == policy.pay_to_address
    assert requirement.referrer == "carol"


def test_parse_challenge_fills_missing_descriptive_fields():
    requirement = parse_challenge({"x402Version": 1, "accepts": [{"address": PAY_TO, "maxAmountRequired": 5}]})
    assert requirement is not None
    assert requirement.amount_minor == 5
    assert requirement.network == ""
    assert requirement.referrer is None


def test_parse_challenge_rejects_unpayable_documents():
    assert parse_challenge(None) is None
    assert parse_challenge({"accepts": []}) is None
    assert parse_challenge({"x402Version": 1, "accepts": []}) is None
    assert parse_challenge({"x402Version": 1, "accepts": [{"address": "nope", "maxAmountRequired": "1"}]}) is None
    assert parse_challenge({"x402Version": 1, "accepts": [{"address": PAY_TO, "maxAmountRequired": "-1"}]}) is None
    assert parse_challenge({"x402Version": 1, "accepts": [{"address": PAY_TO}]}) is None


@pytest.mark.parametrize("amount", ["\u00b2", "\u0663", " 12 3", "1e18", "0x10"])
def test_parse_challenge_requires_ascii_digit_amount(amount):
    payload = {"x402Version": 1, "accepts": [{"address": PAY_TO, "maxAmountRequired": amount}]}
    assert parse_challenge(payload) is None


def test_free_policy_still_builds_challenge():
    policy = make_policy(unit_price_minor=0, min_amount_minor=0)
    entry = challenge_response_body(build_challenge(policy, "/task"))["accepts"][0]
    assert entry["maxAmountRequired"] == "0"
