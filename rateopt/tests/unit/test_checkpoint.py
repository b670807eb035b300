from __future__ import annotations

import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from rateopt.core.config import get_settings
from rateopt.core.errors import CheckpointSchemaError, CheckpointUnavailableError
from rateopt.services.optimizer import checkpoint as checkpoint_module
from rateopt.services.optimizer.checkpoint import (
    CheckpointState,
    MemoryCheckpointStore,
    RedisCheckpointStore,
    checkpoint_key,
    decode_checkpoint,
    encode_checkpoint,
)


def _state() -> CheckpointState:
    return CheckpointState(queue_id=4, sequence_id=9, fingerprint="abc", remaining_device_ids=[3, 1])


def test_checkpoint_key_is_stable_and_scoped() -> None:
    key = checkpoint_key(instance_id=1, group_id=2, queue_id=3, sequence_id=4)
    assert key == checkpoint_key(instance_id=1, group_id=2, queue_id=3, sequence_id=4)
    assert key != checkpoint_key(instance_id=1, group_id=2, queue_id=3, sequence_id=5)


def test_decode_rejects_foreign_schema_version() -> None:
    raw = json.loads(encode_checkpoint(_state()))
    raw["schema_version"] = 99
    with pytest.raises(CheckpointSchemaError):
        decode_checkpoint(json.dumps(raw).encode("utf-8"))


def test_decode_rejects_garbage() -> None:
    with pytest.raises(CheckpointSchemaError):
        decode_checkpoint(b"not-json")


def test_decode_restores_state() -> None:
    state = decode_checkpoint(encode_checkpoint(_state()))
    assert state.remaining_device_ids == [3, 1]
    assert state.fingerprint == "abc"


@pytest.mark.asyncio
async def test_memory_store_roundtrip() -> None:
    store = MemoryCheckpointStore()
    await store.save("k", b"payload", queue_id=1)
    assert await store.load("k") == b"payload"
    await store.delete("k")
    assert await store.load("k") is None


class _FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, bytes] = {}
        self.ttls: dict[str, int] = {}

    async def set(self, key: str, value: bytes, ex: int | None = None) -> None:
        self.values[key] = value
        self.ttls[key] = ex

    async def get(self, key: str):
        return self.values.get(key)

    async def delete(self, key: str) -> None:
        self.values.pop(key, None)


class _DownRedis:
    async def set(self, *_args, **_kwargs) -> None:
        raise RedisConnectionError("down")

    async def get(self, *_args, **_kwargs):
        raise RedisConnectionError("down")

    async def delete(self, *_args, **_kwargs) -> None:
        raise RedisConnectionError("down")


@pytest.mark.asyncio
async def test_redis_store_prefixes_keys_and_sets_ttl() -> None:
    redis = _FakeRedis()
    store = RedisCheckpointStore(redis, prefix="ckpt", ttl_s=60)  # type: ignore[arg-type]
    await store.save("abc", b"blob", queue_id=1)
    assert redis.values == {"ckpt:abc": b"blob"}
    assert redis.ttls["ckpt:abc"] == 60
    assert await store.load("abc") == b"blob"


@pytest.mark.asyncio
async def test_redis_store_failures_surface_as_unavailable() -> None:
    store = RedisCheckpointStore(_DownRedis(), prefix="ckpt", ttl_s=60)  # type: ignore[arg-type]
    with pytest.raises(CheckpointUnavailableError):
        await store.save("abc", b"blob", queue_id=1)
    with pytest.raises(CheckpointUnavailableError):
        await store.load("abc")


def test_backend_selection_follows_settings(monkeypatch) -> None:
    monkeypatch.setenv("CHECKPOINT_BACKEND", "memory")
    get_settings.cache_clear()
    assert checkpoint_module.get_checkpoint_store() is checkpoint_module.memory_checkpoint_store()

    monkeypatch.setenv("CHECKPOINT_BACKEND", "database")
    get_settings.cache_clear()
    assert isinstance(checkpoint_module.get_checkpoint_store(), checkpoint_module.DatabaseCheckpointStore)

    monkeypatch.setenv("CHECKPOINT_BACKEND", "tape")
    get_settings.cache_clear()
    with pytest.raises(ValueError):
        checkpoint_module.get_checkpoint_store()
