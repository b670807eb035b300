from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from decimal import Decimal
from typing import Protocol

from pydantic import BaseModel, Field, ValidationError
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from rateopt.core.config import CHECKPOINT_SCHEMA_VERSION, get_settings
from rateopt.core.errors import CheckpointSchemaError, CheckpointUnavailableError
from rateopt.persistence.db import SessionLocal
from rateopt.persistence.repos import checkpoints as checkpoints_repo


logger = logging.getLogger(__name__)


class PoolSnapshot(BaseModel):
    rate_plan_id: int
    device_count: int = 0
    usage_mb: Decimal = Decimal("0")
    cost: Decimal = Decimal("0")


class AssignmentSnapshot(BaseModel):
    device_id: int
    rate_plan_id: int
    cost: Decimal


class CheckpointState(BaseModel):
    """Serialized partial progress of one assigner run.

    Decimals serialize as strings so a resumed run continues from bit-identical totals.
    """

    schema_version: int = CHECKPOINT_SCHEMA_VERSION
    queue_id: int
    sequence_id: int
    # Hash of the device and plan inputs; a checkpoint never resumes against different inputs.
    fingerprint: str
    strategy_index: int = 0
    remaining_device_ids: list[int] | None = None
    bucket: str | None = None
    pools: list[PoolSnapshot] = Field(default_factory=list)
    assignments: list[AssignmentSnapshot] = Field(default_factory=list)
    best_cost: Decimal | None = None
    best_strategy: str | None = None
    best_assignments: list[AssignmentSnapshot] = Field(default_factory=list)


def checkpoint_key(*, instance_id: int, group_id: int, queue_id: int, sequence_id: int) -> str:
    # Stable across redeliveries so the same work item always resumes the same state.
    raw = f"{instance_id}:{group_id}:{queue_id}:{sequence_id}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def encode_checkpoint(state: CheckpointState) -> bytes:
    return state.model_dump_json().encode("utf-8")


def decode_checkpoint(blob: bytes) -> CheckpointState:
    # Reject foreign schema versions before field validation can misread them.
    try:
        raw = json.loads(blob)
    except (ValueError, UnicodeDecodeError) as exc:
        raise CheckpointSchemaError("Checkpoint blob is not valid JSON") from exc
    version = raw.get("schema_version") if isinstance(raw, dict) else None
    if version != CHECKPOINT_SCHEMA_VERSION:
        raise CheckpointSchemaError(
            f"Unsupported checkpoint schema version {version!r}; expected {CHECKPOINT_SCHEMA_VERSION}"
        )
    try:
        return CheckpointState.model_validate(raw)
    except ValidationError as exc:
        raise CheckpointSchemaError("Checkpoint blob failed validation") from exc


class CheckpointStore(Protocol):
    async def save(self, key: str, blob: bytes, *, queue_id: int) -> None: ...

    async def load(self, key: str) -> bytes | None: ...

    async def delete(self, key: str) -> None: ...


class MemoryCheckpointStore:
    # Process-local store for inline execution and tests.
    def __init__(self) -> None:
        self._items: dict[str, bytes] = {}

    async def save(self, key: str, blob: bytes, *, queue_id: int) -> None:
        self._items[key] = blob

    async def load(self, key: str) -> bytes | None:
        return self._items.get(key)

    async def delete(self, key: str) -> None:
        self._items.pop(key, None)

    def clear(self) -> None:
        self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


class RedisCheckpointStore:
    def __init__(self, redis: Redis, *, prefix: str, ttl_s: int) -> None:
        self._redis = redis
        self._prefix = prefix
        self._ttl_s = ttl_s

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def save(self, key: str, blob: bytes, *, queue_id: int) -> None:
        try:
            # TTL bounds orphaned checkpoints from queues that never resume.
            await self._redis.set(self._key(key), blob, ex=self._ttl_s)
        except (RedisError, OSError) as exc:
            raise CheckpointUnavailableError("Redis checkpoint save failed") from exc

    async def load(self, key: str) -> bytes | None:
        try:
            value = await self._redis.get(self._key(key))
        except (RedisError, OSError) as exc:
            raise CheckpointUnavailableError("Redis checkpoint load failed") from exc
        if value is None:
            return None
        return value if isinstance(value, (bytes, bytearray)) else str(value).encode("utf-8")

    async def delete(self, key: str) -> None:
        try:
            await self._redis.delete(self._key(key))
        except (RedisError, OSError) as exc:
            raise CheckpointUnavailableError("Redis checkpoint delete failed") from exc


class DatabaseCheckpointStore:
    # Fallback backend for deployments without Redis persistence.
    async def save(self, key: str, blob: bytes, *, queue_id: int) -> None:
        try:
            async with SessionLocal() as session:
                await checkpoints_repo.upsert_checkpoint(session, key=key, queue_id=queue_id, payload=blob)
                await session.commit()
        except SQLAlchemyError as exc:
            raise CheckpointUnavailableError("Database checkpoint save failed") from exc

    async def load(self, key: str) -> bytes | None:
        try:
            async with SessionLocal() as session:
                return await checkpoints_repo.get_checkpoint_payload(session, key)
        except SQLAlchemyError as exc:
            raise CheckpointUnavailableError("Database checkpoint load failed") from exc

    async def delete(self, key: str) -> None:
        try:
            async with SessionLocal() as session:
                await checkpoints_repo.delete_checkpoint(session, key)
                await session.commit()
        except SQLAlchemyError as exc:
            raise CheckpointUnavailableError("Database checkpoint delete failed") from exc


_memory_store = MemoryCheckpointStore()
_redis_client: Redis | None = None
_redis_loop: asyncio.AbstractEventLoop | None = None


def memory_checkpoint_store() -> MemoryCheckpointStore:
    return _memory_store


def _checkpoint_redis() -> Redis:
    # Redis clients are loop-bound; rebuild when tests spin up a fresh loop.
    global _redis_client, _redis_loop
    current_loop = asyncio.get_running_loop()
    if _redis_client is None or _redis_loop != current_loop:
        _redis_client = Redis.from_url(get_settings().redis_url)
        _redis_loop = current_loop
    return _redis_client


def get_checkpoint_store() -> CheckpointStore:
    settings = get_settings()
    backend = settings.checkpoint_backend.lower()
    if backend == "memory":
        return _memory_store
    if backend == "database":
        return DatabaseCheckpointStore()
    if backend == "redis":
        return RedisCheckpointStore(
            _checkpoint_redis(),
            prefix=settings.checkpoint_redis_prefix,
            ttl_s=settings.checkpoint_ttl_s,
        )
    raise ValueError(f"Unsupported checkpoint backend: {settings.checkpoint_backend}")
