"""IngestionCoordinator: one poll → extract → persist → mark-read cycle.

Per message the order is always persist first, mark read last.  A crash
or cancellation anywhere in between leaves the message unread upstream,
so the next cycle lists it again; the second insert is a no-op and
mark-read is simply retried.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable
from datetime import UTC, datetime
from typing import TypeVar

import structlog

from .errors import FatalError, MailboxError, NotFound, TransientError, provider_call
from .lease import LeaseManager
from .logging import alert_operator
from .models import CycleReport, Message, MessageOutcome, MessageResult
from .providers.interface import MailboxProvider
from .store import MessageStore

logger = structlog.get_logger()

T = TypeVar("T")


class IngestionCoordinator:
    """Drives ingestion cycles for a single mailbox.

    Only one cycle per mailbox runs at a time, across all workers: each
    cycle holds the mailbox lease from before ``list_unread`` until it
    finishes.  Inside a cycle, up to ``max_concurrency`` messages are
    processed concurrently; a message ID is never processed twice in
    the same cycle.
    """

    def __init__(
        self,
        provider: MailboxProvider,
        store: MessageStore,
        leases: LeaseManager,
        *,
        mailbox: str,
        max_concurrency: int = 4,
        provider_timeout: float = 60.0,
    ) -> None:
        self._provider = provider
        self._store = store
        self._leases = leases
        self._mailbox = mailbox
        self._max_concurrency = max(1, max_concurrency)
        self._provider_timeout = provider_timeout
        self._cancel = asyncio.Event()
        # IDs persisted locally whose upstream mark-read has not succeeded yet.
        self._pending_read: set[str] = set()

        self.cycles_completed: int = 0
        self.last_report: CycleReport | None = None

    @property
    def mailbox(self) -> str:
        return self._mailbox

    @property
    def pending_read(self) -> frozenset[str]:
        return frozenset(self._pending_read)

    @property
    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def cancel(self) -> None:
        """Stop the running cycle after the messages already in flight.

        The request stays in force: later cycles return an empty,
        cancelled report until :meth:`resume` is called.
        """
        self._cancel.set()

    def resume(self) -> None:
        self._cancel.clear()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> CycleReport:
        """Run one ingestion cycle under the mailbox lease.

        Raises :class:`LeaseUnavailable` if another cycle holds the lease,
        :class:`TransientError` if the unread listing fails, and
        :class:`FatalError` if the provider reports an auth/config failure.
        Per-message failures never fail the cycle; they are reported.
        """
        with structlog.contextvars.bound_contextvars(
            mailbox=self._mailbox,
            cycle_id=uuid.uuid4().hex[:12],
        ):
            if self._cancel.is_set():
                logger.info("cycle_skipped_cancelled")
                now = datetime.now(UTC)
                return CycleReport(mailbox=self._mailbox, started_at=now, finished_at=now, cancelled=True)
            async with self._leases.acquire(self._mailbox):
                report = await self._run_locked()
        self.cycles_completed += 1
        self.last_report = report
        return report

    async def _run_locked(self) -> CycleReport:
        report = CycleReport(mailbox=self._mailbox, started_at=datetime.now(UTC))

        try:
            unread = await self._call(self._provider.list_unread())
        except FatalError as exc:
            alert_operator("list_unread_fatal", mailbox=self._mailbox, error=str(exc))
            raise
        except MailboxError as exc:
            logger.warning("cycle_aborted", error_kind=exc.kind, error=str(exc))
            raise

        # Collapse duplicates so one ID is never processed concurrently.
        batch: dict[str, Message] = {}
        for message in unread:
            batch.setdefault(message.id, message)
        logger.info("cycle_started", unread=len(unread), unique=len(batch))

        await self._retry_pending_reads(exclude=batch.keys())

        fatal: list[FatalError] = []
        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def _worker(message: Message) -> None:
            async with semaphore:
                # Cancellation and fatal errors take effect between messages only.
                if self._cancel.is_set() or fatal:
                    return
                report.results.append(await self._process(message, fatal))

        async with asyncio.TaskGroup() as tg:
            for message in batch.values():
                tg.create_task(_worker(message))

        report.cancelled = self._cancel.is_set()
        report.pending_read = sorted(self._pending_read)
        report.finished_at = datetime.now(UTC)
        logger.info(
            "cycle_finished",
            inserted=report.count(MessageOutcome.INSERTED),
            already_known=report.count(MessageOutcome.ALREADY_KNOWN),
            read_pending=report.count(MessageOutcome.READ_PENDING),
            vanished=report.count(MessageOutcome.VANISHED),
            failed=report.count(MessageOutcome.FAILED),
            skipped=len(batch) - len(report.results),
            cancelled=report.cancelled,
        )
        if fatal:
            raise fatal[0]
        return report

    # ------------------------------------------------------------------
    # Per message
    # ------------------------------------------------------------------

    async def _process(self, message: Message, fatal: list[FatalError]) -> MessageResult:
        log = logger.bind(message_id=message.id)

        try:
            upsert = await self._store.upsert_if_absent(message)
        except Exception as exc:
            # Not persisted, so not marked read: the next cycle sees it again.
            log.error("message_persist_failed", error=str(exc), exc_info=True)
            return MessageResult(message_id=message.id, outcome=MessageOutcome.FAILED, error="PersistFailed")

        if upsert.inserted:
            outcome = MessageOutcome.INSERTED
            log.info("message_persisted", rows=len(message.rows))
        else:
            outcome = MessageOutcome.ALREADY_KNOWN
            log.info("message_already_known")

        read_outcome = await self._mark_read(message.id, fatal)
        return MessageResult(
            message_id=message.id,
            outcome=read_outcome or outcome,
            inserted=upsert.inserted,
            error=None if read_outcome in (None, MessageOutcome.VANISHED) else "MarkReadPending",
        )

    async def _mark_read(self, message_id: str, fatal: list[FatalError]) -> MessageOutcome | None:
        """Flag a persisted message read upstream, then locally.

        Returns ``None`` on success, otherwise the outcome to report.
        """
        log = logger.bind(message_id=message_id)
        try:
            await self._call(self._provider.mark_read(message_id))
        except NotFound:
            # Gone upstream; nothing left to mark.  Local state is left as is.
            self._pending_read.discard(message_id)
            log.info("mark_read_message_vanished")
            return MessageOutcome.VANISHED
        except TransientError as exc:
            self._pending_read.add(message_id)
            log.warning("mark_read_pending", error=str(exc))
            return MessageOutcome.READ_PENDING
        except FatalError as exc:
            self._pending_read.add(message_id)
            fatal.append(exc)
            alert_operator("mark_read_fatal", message_id=message_id, error=str(exc))
            return MessageOutcome.READ_PENDING
        except MailboxError as exc:
            self._pending_read.add(message_id)
            log.warning("mark_read_rejected", error_kind=exc.kind, error=str(exc))
            return MessageOutcome.READ_PENDING

        try:
            await self._store.set_read(message_id)
        except Exception as exc:
            # Upstream is read; retry so the local flag catches up.
            self._pending_read.add(message_id)
            log.warning("local_set_read_failed", error=str(exc))
            return MessageOutcome.READ_PENDING

        self._pending_read.discard(message_id)
        return None

    async def _retry_pending_reads(self, *, exclude) -> None:
        """Retry mark-read for IDs left pending by earlier cycles.

        IDs present in the current listing are skipped; they are handled
        by the normal per-message path.
        """
        for message_id in sorted(self._pending_read - set(exclude)):
            if self._cancel.is_set():
                return
            if not await self._store.exists(message_id):
                self._pending_read.discard(message_id)
                continue
            fatal: list[FatalError] = []
            outcome = await self._mark_read(message_id, fatal)
            if fatal:
                raise fatal[0]
            if outcome is None:
                logger.info("pending_mark_read_completed", message_id=message_id)

    async def _call(self, awaitable: Awaitable[T]) -> T:
        return await provider_call(awaitable, self._provider_timeout)
