"""Mailbox provider implementations."""

from __future__ import annotations

from ..config import PipelineConfig
from .graph import GraphMailboxProvider
from .imap import ImapMailboxProvider
from .interface import MailboxProvider
from .memory import InMemoryMailboxProvider


def build_provider(config: PipelineConfig) -> MailboxProvider:
    """Instantiate the provider selected by ``config.provider``."""
    if config.provider == "imap":
        return ImapMailboxProvider(config.imap, config.smtp)
    return GraphMailboxProvider(config.graph)


__all__ = [
    "GraphMailboxProvider",
    "ImapMailboxProvider",
    "InMemoryMailboxProvider",
    "MailboxProvider",
    "build_provider",
]
