"""Checkpoint stores consulted by the controller to skip recomputation."""

from __future__ import annotations

import logging
import pickle
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import redis.asyncio as redis

from taskmesh.config.settings import Settings, settings as default_settings
from taskmesh.errors import CheckpointError

logger = logging.getLogger("taskmesh.checkpoint")


@dataclass
class CheckpointRecord:
    key: str
    value: Any
    token: str
    created_at: float = field(default_factory=time.time)
    valid: bool = True


class CheckpointStore(ABC):
    """persist(key, value) -> token; restore(key) -> record or None on a miss."""

    @abstractmethod
    async def persist(self, key: str, value: Any) -> str:
        ...

    @abstractmethod
    async def restore(self, key: str) -> Optional[CheckpointRecord]:
        ...

    @abstractmethod
    async def invalidate(self, key: str) -> None:
        ...

    async def close(self) -> None:
        pass


class MemoryCheckpointStore(CheckpointStore):
    """Process-local store; values are pickled so later mutation cannot leak in."""

    def __init__(self):
        self._records: Dict[str, CheckpointRecord] = {}
        self._lock = threading.Lock()
        self.persisted = 0
        self.restored = 0

    async def persist(self, key: str, value: Any) -> str:
        try:
            payload = pickle.dumps(value)
        except Exception as e:
            raise CheckpointError(f"Cannot serialize checkpoint {key!r}: {e}") from e
        token = uuid.uuid4().hex
        with self._lock:
            self._records[key] = CheckpointRecord(key=key, value=payload, token=token)
            self.persisted += 1
        return token

    async def restore(self, key: str) -> Optional[CheckpointRecord]:
        with self._lock:
            record = self._records.get(key)
        if record is None:
            return None
        self.restored += 1
        return CheckpointRecord(
            key=record.key,
            value=pickle.loads(record.value),
            token=record.token,
            created_at=record.created_at,
            valid=record.valid,
        )

    async def invalidate(self, key: str) -> None:
        with self._lock:
            record = self._records.get(key)
            if record is not None:
                record.valid = False

    def keys(self):
        return sorted(self._records)


class RedisCheckpointStore(CheckpointStore):
    """Checkpoints kept in Redis hashes: ``<prefix>:checkpoint:<key>``.

    Each hash holds the pickled value, its token and a ``valid`` flag.
    A ``ttl`` above zero expires records after that many seconds.
    """

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "taskmesh", ttl: int = 0):
        self.redis = redis_client
        self.key_prefix = key_prefix
        self.ttl = ttl

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None) -> "RedisCheckpointStore":
        config = config or default_settings
        client = redis.from_url(config.redis_url, decode_responses=False)
        return cls(client, key_prefix=config.redis_key_prefix, ttl=config.checkpoint_ttl)

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:checkpoint:{key}"

    async def persist(self, key: str, value: Any) -> str:
        try:
            payload = pickle.dumps(value)
        except Exception as e:
            raise CheckpointError(f"Cannot serialize checkpoint {key!r}: {e}") from e
        token = uuid.uuid4().hex
        redis_key = self._key(key)
        try:
            await self.redis.hset(
                redis_key,
                mapping={
                    "payload": payload,
                    "token": token,
                    "created_at": str(time.time()),
                    "valid": "1",
                },
            )
            if self.ttl > 0:
                await self.redis.expire(redis_key, self.ttl)
        except redis.RedisError as e:
            raise CheckpointError(f"Persisting checkpoint {key!r} failed: {e}") from e
        logger.debug(f"Persisted checkpoint {key!r} ({len(payload)} bytes)")
        return token

    async def restore(self, key: str) -> Optional[CheckpointRecord]:
        try:
            data = await self.redis.hgetall(self._key(key))
        except redis.RedisError as e:
            raise CheckpointError(f"Restoring checkpoint {key!r} failed: {e}") from e
        if not data:
            return None
        data = {(k.decode() if isinstance(k, bytes) else k): v for k, v in data.items()}
        token = data.get("token", b"")
        token = token.decode() if isinstance(token, bytes) else str(token)
        valid = data.get("valid", b"0") in (b"1", "1")
        try:
            value = pickle.loads(data["payload"])
        except Exception as e:
            raise CheckpointError(f"Checkpoint {key!r} is corrupt: {e}") from e
        created_at = data.get("created_at", b"0")
        return CheckpointRecord(
            key=key,
            value=value,
            token=token,
            created_at=float(created_at.decode() if isinstance(created_at, bytes) else created_at),
            valid=valid and bool(token),
        )

    async def invalidate(self, key: str) -> None:
        try:
            await self.redis.hset(self._key(key), "valid", "0")
        except redis.RedisError as e:
            raise CheckpointError(f"Invalidating checkpoint {key!r} failed: {e}") from e

    async def close(self) -> None:
        await self.redis.aclose()


def create_checkpoint_store(config: Optional[Settings] = None) -> Optional[CheckpointStore]:
    config = config or default_settings
    if config.checkpoint_backend == "memory":
        return MemoryCheckpointStore()
    if config.checkpoint_backend == "redis":
        return RedisCheckpointStore.from_settings(config)
    return None


__all__ = [
    "CheckpointRecord",
    "CheckpointStore",
    "MemoryCheckpointStore",
    "RedisCheckpointStore",
    "create_checkpoint_store",
]
