from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from rateopt.domain.models import AssignerCheckpoint


async def upsert_checkpoint(
    session: AsyncSession, *, key: str, queue_id: int, payload: bytes
) -> AssignerCheckpoint:
    # Last write wins per key; the queue's processing holder is the only writer.
    row = await session.get(AssignerCheckpoint, key)
    if row is None:
        row = AssignerCheckpoint(key=key, queue_id=queue_id, payload=payload)
        session.add(row)
    else:
        row.payload = payload
        row.queue_id = queue_id
    return row


async def get_checkpoint_payload(session: AsyncSession, key: str) -> bytes | None:
    result = await session.execute(select(AssignerCheckpoint.payload).where(AssignerCheckpoint.key == key))
    return result.scalar_one_or_none()


async def delete_checkpoint(session: AsyncSession, key: str) -> None:
    await session.execute(delete(AssignerCheckpoint).where(AssignerCheckpoint.key == key))
