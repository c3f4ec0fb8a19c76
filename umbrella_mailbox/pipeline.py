"""Wires the pipeline components together from a PipelineConfig."""

from __future__ import annotations

import structlog

from .config import PipelineConfig
from .coordinator import IngestionCoordinator
from .db import Database
from .handler import AttachmentReplyHandler
from .lease import LeaseManager
from .providers import MailboxProvider, build_provider
from .store import MessageStore

logger = structlog.get_logger()


class Pipeline:
    """Holds one instance of every component, sharing a provider and database.

    Pass *provider* to substitute a test double or a custom backend.
    """

    def __init__(self, config: PipelineConfig, *, provider: MailboxProvider | None = None) -> None:
        self.config = config
        self.db = Database(config.store)
        self.provider = provider or build_provider(config)
        self.store = MessageStore(self.db)
        self.leases = LeaseManager(self.db, config.lease)
        self.coordinator = IngestionCoordinator(
            self.provider,
            self.store,
            self.leases,
            mailbox=config.mailbox_key,
            max_concurrency=config.max_concurrency,
            provider_timeout=config.provider_timeout_seconds,
        )
        self.handler = AttachmentReplyHandler(
            self.provider,
            max_attachment_bytes=config.reply.max_attachment_bytes,
            provider_timeout=config.provider_timeout_seconds,
        )

    async def start(self) -> None:
        await self.db.create_schema()
        await self.provider.start()
        logger.info("pipeline_started", pipeline=self.config.name, provider=self.config.provider)

    async def stop(self) -> None:
        await self.provider.stop()
        await self.db.close()
        logger.info("pipeline_stopped", pipeline=self.config.name)
