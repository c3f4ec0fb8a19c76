"""Deduplicating message persistence.

Every write is a single statement, so the database is the only
serialization point: ``upsert_if_absent`` is ``INSERT ... ON CONFLICT
(id) DO NOTHING`` and ``set_read`` is a plain ``UPDATE``.
"""

from __future__ import annotations

from datetime import UTC

import structlog
from sqlalchemy import func, select, update

from .db import Database, MessageRecord
from .models import Message, Page, PageResult, UpsertResult

logger = structlog.get_logger()


class MessageStore:
    """Persisted messages keyed by provider message ID."""

    def __init__(self, db: Database) -> None:
        self._db = db

    async def upsert_if_absent(self, message: Message) -> UpsertResult:
        """Insert *message* unless its ``id`` is already stored.

        An existing row is never modified, whatever the new payload says.
        """
        stmt = (
            self._db.insert(MessageRecord)
            .values(
                id=message.id,
                sender=message.sender,
                recipients=list(message.recipients),
                subject=message.subject,
                body=message.body,
                received_at=message.received_at.astimezone(UTC),
                is_read=False,
            )
            .on_conflict_do_nothing(index_elements=["id"])
        )
        async with self._db.session() as session, session.begin():
            result = await session.execute(stmt)
        inserted = result.rowcount == 1
        logger.debug("message_upserted", message_id=message.id, inserted=inserted)
        return UpsertResult(inserted=inserted)

    async def set_read(self, message_id: str) -> None:
        """Mark a stored message read.  Unknown IDs are ignored."""
        stmt = update(MessageRecord).where(MessageRecord.id == message_id).values(is_read=True)
        async with self._db.session() as session, session.begin():
            result = await session.execute(stmt)
        if result.rowcount == 0:
            logger.debug("set_read_unknown_message", message_id=message_id)

    async def get(self, message_id: str) -> Message | None:
        async with self._db.session() as session:
            record = await session.get(MessageRecord, message_id)
        return _to_message(record) if record is not None else None

    async def exists(self, message_id: str) -> bool:
        stmt = select(MessageRecord.id).where(MessageRecord.id == message_id)
        async with self._db.session() as session:
            return (await session.execute(stmt)).scalar_one_or_none() is not None

    async def list_all(self, page: Page | None = None) -> PageResult:
        """Return stored messages, most recently received first."""
        page = page or Page()
        stmt = (
            select(MessageRecord)
            .order_by(MessageRecord.received_at.desc(), MessageRecord.id.desc())
            .offset(page.offset)
            .limit(page.limit)
        )
        async with self._db.session() as session:
            total = (await session.execute(select(func.count()).select_from(MessageRecord))).scalar_one()
            records = (await session.execute(stmt)).scalars().all()
        return PageResult(
            items=[_to_message(r) for r in records],
            total=total,
            offset=page.offset,
            limit=page.limit,
        )


def _to_message(record: MessageRecord) -> Message:
    received_at = record.received_at
    # SQLite hands back naive datetimes; values were written as UTC.
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=UTC)
    return Message(
        id=record.id,
        sender=record.sender,
        recipients=list(record.recipients or []),
        subject=record.subject,
        body=record.body,
        received_at=received_at,
        is_read=record.is_read,
    )
