"""Per-mailbox ingestion lease backed by the ``mailbox_leases`` table.

Acquire is one statement: insert the lease row, or on conflict take it
over only if it has expired or already belongs to the same holder.  A
row count of zero means someone else holds it.  While held, a background
task renews the lease every third of its TTL so long cycles keep it.

Every :meth:`LeaseManager.acquire` call uses a fresh holder token made
from the manager's owner and a random suffix, so two overlapping cycles
in one process exclude each other just like two separate workers do.
"""

from __future__ import annotations

import asyncio
import os
import socket
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta

import structlog
from sqlalchemy import delete, or_, update

from .config import LeaseConfig
from .db import Database, MailboxLeaseRecord
from .errors import LeaseUnavailable

logger = structlog.get_logger()


def default_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class LeaseManager:
    """Grants at most one live lease per mailbox across all workers."""

    def __init__(self, db: Database, config: LeaseConfig, *, owner: str | None = None) -> None:
        self._db = db
        self._ttl = timedelta(seconds=config.ttl_seconds)
        self.owner = owner or config.owner or default_owner()

    def new_holder(self) -> str:
        return f"{self.owner}:{uuid.uuid4().hex[:12]}"

    async def try_acquire(self, mailbox: str, holder: str | None = None) -> bool:
        holder = holder or self.owner
        now = datetime.now(UTC)
        table = MailboxLeaseRecord.__table__
        stmt = (
            self._db.insert(MailboxLeaseRecord)
            .values(mailbox=mailbox, owner=holder, expires_at=now + self._ttl)
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["mailbox"],
            set_={"owner": stmt.excluded.owner, "expires_at": stmt.excluded.expires_at},
            where=or_(table.c.expires_at < now, table.c.owner == holder),
        )
        async with self._db.session() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount == 1

    async def renew(self, mailbox: str, holder: str | None = None) -> bool:
        stmt = (
            update(MailboxLeaseRecord)
            .where(MailboxLeaseRecord.mailbox == mailbox, MailboxLeaseRecord.owner == (holder or self.owner))
            .values(expires_at=datetime.now(UTC) + self._ttl)
        )
        async with self._db.session() as session, session.begin():
            result = await session.execute(stmt)
        return result.rowcount == 1

    async def release(self, mailbox: str, holder: str | None = None) -> None:
        stmt = delete(MailboxLeaseRecord).where(
            MailboxLeaseRecord.mailbox == mailbox,
            MailboxLeaseRecord.owner == (holder or self.owner),
        )
        async with self._db.session() as session, session.begin():
            await session.execute(stmt)

    @asynccontextmanager
    async def acquire(self, mailbox: str) -> AsyncIterator[str]:
        """Hold the lease for *mailbox* for the duration of the block.

        Yields the holder token.  Raises :class:`LeaseUnavailable` if the
        lease is held by anyone else, including another cycle of this
        same manager.
        """
        holder = self.new_holder()
        if not await self.try_acquire(mailbox, holder):
            logger.info("lease_unavailable", mailbox=mailbox, owner=self.owner)
            raise LeaseUnavailable(f"ingestion lease for {mailbox} is held by another cycle")

        logger.debug("lease_acquired", mailbox=mailbox, holder=holder)
        renewer = asyncio.create_task(self._keep_alive(mailbox, holder))
        try:
            yield holder
        finally:
            renewer.cancel()
            try:
                await renewer
            except asyncio.CancelledError:
                pass
            await self.release(mailbox, holder)
            logger.debug("lease_released", mailbox=mailbox, holder=holder)

    async def _keep_alive(self, mailbox: str, holder: str) -> None:
        interval = self._ttl.total_seconds() / 3
        while True:
            await asyncio.sleep(interval)
            try:
                renewed = await self.renew(mailbox, holder)
            except Exception:
                logger.warning("lease_renew_failed", mailbox=mailbox, exc_info=True)
                continue
            if not renewed:
                logger.warning("lease_lost", mailbox=mailbox, holder=holder)
                return
