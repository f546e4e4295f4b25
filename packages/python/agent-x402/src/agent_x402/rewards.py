"""Weighted reward tier draws and per-tier reward payloads."""

from __future__ import annotations

import logging
import math
import random
from enum import Enum
from typing import Dict, Iterator, Mapping, Optional, Tuple

from .config import config_value, load_environment
from .errors import ConfigurationError

logger = logging.getLogger(__name__)


class RewardTier(str, Enum):
    COMMON = "Common"
    RARE = "Rare"
    SUPER_RARE = "SuperRare"

    @property
    def entry_point(self) -> str:
        return _ENTRY_POINTS[self]

    @property
    def code(self) -> str:
        return _CODES[self]

    @classmethod
    def parse(cls, value: str) -> "RewardTier":
        """Accept the tier name, its one-letter code or a snake_case spelling."""
        key = value.strip().replace("_", "").replace("-", "").lower()
        for tier in cls:
            if key in (tier.value.lower(), tier.code.lower()):
                return tier
        raise ValueError(f"Unknown reward tier {value!r}")


_ENTRY_POINTS = {
    RewardTier.COMMON: "mintNSBT",
    RewardTier.RARE: "mintRSBT",
    RewardTier.SUPER_RARE: "mintSSBT",
}

_CODES = {
    RewardTier.COMMON: "N",
    RewardTier.RARE: "R",
    RewardTier.SUPER_RARE: "S",
}

# Rarest partition first: [0, S) -> SuperRare, [S, S+R) -> Rare, rest -> Common.
DRAW_ORDER: Tuple[RewardTier, ...] = (RewardTier.SUPER_RARE, RewardTier.RARE, RewardTier.COMMON)

DEFAULT_TIER_WEIGHTS = "SuperRare:1,Rare:10,Common:89"

DEFAULT_REWARD_TEMPLATES: Dict[RewardTier, str] = {
    RewardTier.COMMON: "a quiet still life of everyday objects in soft morning light",
    RewardTier.RARE: "a luminous seascape at dusk with layered, textured brushwork",
    RewardTier.SUPER_RARE: "a surreal cathedral of floating islands under an aurora sky",
}

TEMPLATE_ENV_KEYS: Dict[RewardTier, str] = {
    RewardTier.COMMON: "PROMPT_N",
    RewardTier.RARE: "PROMPT_R",
    RewardTier.SUPER_RARE: "PROMPT_S",
}

_SYSTEM_RANDOM = random.SystemRandom()


class TierWeights:
    """Percentage weights per tier; must be non-negative and sum to 100."""

    def __init__(self, weights: Mapping[RewardTier, float]) -> None:
        normalized: Dict[RewardTier, float] = {}
        for tier in DRAW_ORDER:
            weight = float(weights.get(tier, 0.0))
            if weight < 0 or math.isnan(weight):
                raise ConfigurationError(f"Tier weight for {tier.value} must be non-negative")
            normalized[tier] = weight
        total = sum(normalized.values())
        if abs(total - 100.0) > 1e-9:
            raise ConfigurationError(f"Tier weights must sum to 100, got {total}")
        self._weights = normalized

    @classmethod
    def parse(cls, text: str) -> "TierWeights":
        """Parse ``"SuperRare:1,Rare:10,Common:89"`` style settings."""
        weights: Dict[RewardTier, float] = {}
        for chunk in text.split(","):
            if not chunk.strip():
                continue
            name, sep, raw = chunk.partition(":")
            if not sep:
                raise ConfigurationError(f"Malformed tier weight entry {chunk!r}")
            try:
                tier = RewardTier.parse(name)
                weights[tier] = float(raw)
            except ValueError as exc:
                raise ConfigurationError(f"Malformed tier weight entry {chunk!r}: {exc}") from exc
        return cls(weights)

    @classmethod
    def default(cls) -> "TierWeights":
        return cls.parse(DEFAULT_TIER_WEIGHTS)

    def __getitem__(self, tier: RewardTier) -> float:
        return self._weights[tier]

    def __iter__(self) -> Iterator[Tuple[RewardTier, float]]:
        return iter(self._weights.items())

    def as_dict(self) -> Dict[str, float]:
        return {tier.value: weight for tier, weight in self._weights.items()}

    def __repr__(self) -> str:
        return f"TierWeights({self.as_dict()!r})"


def select_tier(weights: TierWeights, rng: Optional[random.Random] = None) -> RewardTier:
    """Draw one tier. ``rng`` defaults to OS entropy and exists for tests."""
    source = rng if rng is not None else _SYSTEM_RANDOM
    draw = source.random() * 100.0
    cumulative = 0.0
    chosen = None
    for tier, weight in weights:
        if weight <= 0:
            continue
        chosen = tier
        cumulative += weight
        if draw < cumulative:
            break
    if chosen is None:  # pragma: no cover - weights sum to 100
        raise ConfigurationError("No tier has a positive weight")
    logger.debug("selected reward tier %s (draw=%.4f)", chosen.value, draw)
    return chosen


def load_tier_weights() -> TierWeights:
    load_environment()
    raw = config_value("REWARD_TIER_WEIGHTS", required=False, default=DEFAULT_TIER_WEIGHTS)
    return TierWeights.parse(raw or DEFAULT_TIER_WEIGHTS)


def load_reward_templates() -> Dict[RewardTier, str]:
    load_environment()
    return {
        tier: config_value(key, required=False, default=DEFAULT_REWARD_TEMPLATES[tier]) or ""
        for tier, key in TEMPLATE_ENV_KEYS.items()
    }


def reward_payload(tier: RewardTier, templates: Optional[Mapping[RewardTier, str]] = None) -> str:
    source = templates if templates is not None else DEFAULT_REWARD_TEMPLATES
    return source.get(tier) or DEFAULT_REWARD_TEMPLATES[tier]
