"""Response envelopes and decoding of downstream agent payloads."""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, ValidationError

JsonDict = Dict[str, Any]


def success_envelope(data: Any) -> JsonDict:
    return {"code": 200, "msg": "success", "data": data}


def error_envelope(code: int, msg: str, data: Any = None) -> JsonDict:
    return {"code": code, "msg": msg, "data": data}


class CurrentFormat(BaseModel):
    """``{"code": 200, "msg": "success", "data": {...}}``"""

    model_config = ConfigDict(extra="ignore")

    code: Literal[200]
    msg: Literal["success"]
    data: Any

    def content(self) -> JsonDict:
        if isinstance(self.data, dict):
            return dict(self.data)
        return {"data": self.data}


class LegacyFormat(BaseModel):
    """``{"success": true, "prompt": "..."}`` from older agents."""

    model_config = ConfigDict(extra="ignore")

    success: Literal[True]
    prompt: str
    rarity: Optional[str] = None

    def content(self) -> JsonDict:
        payload: JsonDict = {"data": self.prompt}
        if self.rarity is not None:
            payload["rarity"] = self.rarity
        return payload


DownstreamPayload = Union[CurrentFormat, LegacyFormat]


def decode_downstream(payload: Any) -> Optional[DownstreamPayload]:
    """Match ``payload`` against the known success shapes, newest first."""
    if not isinstance(payload, dict):
        return None
    for model in (CurrentFormat, LegacyFormat):
        try:
            return model.model_validate(payload)
        except ValidationError:
            continue
    return None


def downstream_message(payload: Any, default: str) -> str:
    """Best human-readable error text from a non-success downstream body."""
    if isinstance(payload, dict):
        for key in ("msg", "message", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return default
