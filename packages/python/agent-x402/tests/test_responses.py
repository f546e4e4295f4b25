from agent_x402.responses import (
    CurrentFormat,
    LegacyFormat,
    decode_downstream,
    downstream_message,
    error_envelope,
    success_envelope,
)


def test_envelopes():
    assert success_envelope({"x": 1}) == {"code": 200, "msg": "success", "data": {"x": 1}}
    assert error_envelope(500, "boom") == {"code": 500, "msg": "boom", "data": None}


def test_current_format_is_preferred():
    decoded = decode_downstream({"code": 200, "msg": "success", "data": {"data": "a fox", "rarity": "R"}})
    assert isinstance(decoded, CurrentFormat)
    assert decoded.content() == {"data": "a fox", "rarity": "R"}


def test_current_format_with_scalar_data():
    decoded = decode_downstream({"code": 200, "msg": "success", "data": "a fox"})
    assert decoded.content() == {"data": "a fox"}


def test_legacy_format():
    decoded = decode_downstream({"success": True, "prompt": "a fox", "rarity": "S", "extra": 1})
    assert isinstance(decoded, LegacyFormat)
    assert decoded.content() == {"data": "a fox", "rarity": "S"}


def test_unknown_shapes_are_rejected():
    assert decode_downstream({"code": 500, "msg": "error", "data": None}) is None
    assert decode_downstream({"success": False, "prompt": "x"}) is None
    assert decode_downstream(["not", "a", "dict"]) is None
    assert decode_downstream(None) is None


def test_downstream_message():
    assert downstream_message({"msg": "bad topic"}, "default") == "bad topic"
    assert downstream_message({"error": "quota"}, "default") == "quota"
    assert downstream_message({"msg": ""}, "default") == "default"
    assert downstream_message("plain text", "default") == "default"
