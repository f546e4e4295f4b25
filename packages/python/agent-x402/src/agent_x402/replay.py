"""At-most-once consumption store for settlement proofs."""

from __future__ import annotations

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import redis

from .config import config_value, load_environment, load_replay_ttl
from .constants import REPLAY_TTL_SECONDS
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass(frozen=True)
class ReplayRecord:
    tx_hash: str
    consumed_at: float
    expires_at: float

    def to_json(self) -> str:
        return json.dumps(
            {"txHash": self.tx_hash, "consumedAt": self.consumed_at, "expiresAt": self.expires_at}
        )

    @classmethod
    def from_json(cls, raw: str) -> "ReplayRecord":
        payload = json.loads(raw)
        return cls(
            tx_hash=str(payload["txHash"]),
            consumed_at=float(payload["consumedAt"]),
            expires_at=float(payload["expiresAt"]),
        )


def normalize_hash(tx_hash: str) -> str:
    return tx_hash.strip().lower()


class ReplayGuard(ABC):
    """Maps a transaction hash to "consumed" for ``ttl_seconds``.

    ``consume`` is set-if-absent: it returns ``True`` only for the caller
    that recorded the hash, so two verifications racing on the same proof
    cannot both succeed at the write.
    """

    def __init__(self, ttl_seconds: int = REPLAY_TTL_SECONDS, *, clock: Clock = time.time) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def _new_record(self, tx_hash: str) -> ReplayRecord:
        now = self._clock()
        return ReplayRecord(tx_hash=tx_hash, consumed_at=now, expires_at=now + self.ttl_seconds)

    @abstractmethod
    def get(self, tx_hash: str) -> Optional[ReplayRecord]:
        ...

    @abstractmethod
    def consume(self, tx_hash: str) -> bool:
        ...

    def is_consumed(self, tx_hash: str) -> bool:
        return self.get(tx_hash) is not None


class InMemoryReplayGuard(ReplayGuard):
    """Process-local guard; entries vanish on restart."""

    def __init__(self, ttl_seconds: int = REPLAY_TTL_SECONDS, *, clock: Clock = time.time) -> None:
        super().__init__(ttl_seconds, clock=clock)
        self._lock = threading.Lock()
        self._records: Dict[str, ReplayRecord] = {}
        logger.warning(
            "Using in-memory replay guard; consumed proofs are lost on restart and not shared across processes."
        )

    def get(self, tx_hash: str) -> Optional[ReplayRecord]:
        key = normalize_hash(tx_hash)
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            if self._clock() >= record.expires_at:
                del self._records[key]
                return None
            return record

    def consume(self, tx_hash: str) -> bool:
        key = normalize_hash(tx_hash)
        with self._lock:
            existing = self._records.get(key)
            if existing is not None and self._clock() < existing.expires_at:
                return False
            self._records[key] = self._new_record(key)
            self._prune()
            return True

    def _prune(self) -> None:
        now = self._clock()
        expired = [key for key, record in self._records.items() if now >= record.expires_at]
        for key in expired:
            del self._records[key]

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)


class RedisReplayGuard(ReplayGuard):
    """Durable guard backed by Redis ``SET NX EX``."""

    def __init__(
        self,
        client: Any,
        ttl_seconds: int = REPLAY_TTL_SECONDS,
        *,
        prefix: str = "x402:replay:",
        clock: Clock = time.time,
    ) -> None:
        super().__init__(ttl_seconds, clock=clock)
        self._client = client
        self._prefix = prefix

    @classmethod
    def from_url(
        cls, redis_url: str, ttl_seconds: int = REPLAY_TTL_SECONDS, **kwargs: Any
    ) -> "RedisReplayGuard":
        client = redis.Redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        logger.info("replay guard connected to redis at %s", redis_url)
        return cls(client, ttl_seconds, **kwargs)

    def _key(self, tx_hash: str) -> str:
        return f"{self._prefix}{normalize_hash(tx_hash)}"

    def get(self, tx_hash: str) -> Optional[ReplayRecord]:
        raw = self._client.get(self._key(tx_hash))
        if not raw:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        return ReplayRecord.from_json(raw)

    def consume(self, tx_hash: str) -> bool:
        record = self._new_record(normalize_hash(tx_hash))
        stored = self._client.set(self._key(tx_hash), record.to_json(), nx=True, ex=self.ttl_seconds)
        return bool(stored)


def create_replay_guard(
    backend: str = "memory",
    *,
    ttl_seconds: int = REPLAY_TTL_SECONDS,
    redis_url: Optional[str] = None,
) -> ReplayGuard:
    backend = (backend or "memory").strip().lower()
    if backend == "memory":
        return InMemoryReplayGuard(ttl_seconds)
    if backend == "redis":
        if not redis_url:
            raise ConfigurationError("REDIS_URL is required when REPLAY_BACKEND=redis")
        return RedisReplayGuard.from_url(redis_url, ttl_seconds)
    raise ConfigurationError(f"Unknown replay backend {backend!r}; expected 'memory' or 'redis'")


def replay_guard_from_env() -> ReplayGuard:
    load_environment()
    return create_replay_guard(
        config_value("REPLAY_BACKEND", required=False, default="memory") or "memory",
        ttl_seconds=load_replay_ttl(),
        redis_url=config_value("REDIS_URL", required=False),
    )
