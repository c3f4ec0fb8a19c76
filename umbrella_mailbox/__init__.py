"""Umbrella mailbox pipeline.

Public API re-exported here for convenience::

    from umbrella_mailbox import Pipeline, PipelineConfig, IngestionCoordinator
"""

from .config import (
    GraphConfig,
    ImapConfig,
    LeaseConfig,
    PipelineConfig,
    ReplyConfig,
    RetryConfig,
    SmtpConfig,
    StoreConfig,
)
from .coordinator import IngestionCoordinator
from .errors import (
    FatalError,
    InvalidArgument,
    LeaseUnavailable,
    MailboxError,
    NotFound,
    PayloadTooLarge,
    TransientError,
)
from .extractor import extract_rows
from .handler import AttachmentDownload, AttachmentReplyHandler
from .lease import LeaseManager
from .logging import alert_operator, setup_logging
from .models import (
    AttachmentInfo,
    CycleReport,
    Message,
    MessageOutcome,
    MessageResult,
    OutgoingAttachment,
    TableRow,
)
from .pipeline import Pipeline
from .providers import (
    GraphMailboxProvider,
    ImapMailboxProvider,
    InMemoryMailboxProvider,
    MailboxProvider,
    build_provider,
)
from .retry import with_retry
from .store import MessageStore

__all__ = [
    "AttachmentDownload",
    "AttachmentInfo",
    "AttachmentReplyHandler",
    "CycleReport",
    "FatalError",
    "GraphConfig",
    "GraphMailboxProvider",
    "ImapConfig",
    "ImapMailboxProvider",
    "InMemoryMailboxProvider",
    "IngestionCoordinator",
    "InvalidArgument",
    "LeaseConfig",
    "LeaseManager",
    "LeaseUnavailable",
    "MailboxError",
    "MailboxProvider",
    "Message",
    "MessageOutcome",
    "MessageResult",
    "MessageStore",
    "NotFound",
    "OutgoingAttachment",
    "PayloadTooLarge",
    "Pipeline",
    "PipelineConfig",
    "ReplyConfig",
    "RetryConfig",
    "SmtpConfig",
    "StoreConfig",
    "TableRow",
    "TransientError",
    "alert_operator",
    "build_provider",
    "extract_rows",
    "setup_logging",
    "with_retry",
]
