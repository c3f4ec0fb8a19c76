"""Data models for the mailbox pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import IO

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TableRow(BaseModel):
    """One row of cell text extracted from an HTML table."""

    model_config = ConfigDict(frozen=True)

    cells: list[str] = Field(default_factory=list)


class Message(BaseModel):
    """An email message as listed by a provider and persisted by the store.

    ``rows`` is derived from ``body`` on every access and is never stored.
    """

    id: str = Field(min_length=1, description="Provider-assigned message ID")
    sender: str = Field(default="", description="Sender address")
    recipients: list[str] = Field(default_factory=list, description="Recipient addresses, in order")
    subject: str = Field(default="", description="Subject line")
    body: str = Field(default="", description="Raw HTML body")
    received_at: datetime = Field(description="Receive timestamp (timezone-aware)")
    is_read: bool = Field(default=False, description="Local read state")

    @field_validator("received_at")
    @classmethod
    def _require_offset(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("received_at must carry a UTC offset")
        return value

    @property
    def rows(self) -> list[TableRow]:
        from .extractor import extract_rows

        return extract_rows(self.body)


class AttachmentInfo(BaseModel):
    """Attachment metadata; no content."""

    id: str = Field(description="Attachment ID, unique within its message")
    name: str = Field(default="unnamed")
    content_type: str = Field(default="application/octet-stream")
    size: int | None = Field(default=None, description="Size in bytes, when known")


@dataclass
class OutgoingAttachment:
    """A file to attach to a reply.

    ``data`` is either the raw bytes or a readable binary file object.
    """

    name: str
    content_type: str
    data: bytes | IO[bytes]


@dataclass
class ReplyAttachment:
    """A reply attachment after it has been read and size-checked."""

    name: str
    content_type: str
    content: bytes


class MessageOutcome(str, Enum):
    """What one ingestion cycle did with one message."""

    INSERTED = "inserted"
    ALREADY_KNOWN = "already_known"
    READ_PENDING = "read_pending"
    VANISHED = "vanished"
    FAILED = "failed"


class MessageResult(BaseModel):
    message_id: str
    outcome: MessageOutcome
    inserted: bool = False
    error: str | None = None


class CycleReport(BaseModel):
    """Per-cycle summary returned to the ingestion trigger."""

    mailbox: str
    started_at: datetime
    finished_at: datetime | None = None
    results: list[MessageResult] = Field(default_factory=list)
    pending_read: list[str] = Field(
        default_factory=list,
        description="IDs persisted locally whose upstream mark-read must be retried",
    )
    cancelled: bool = False

    def count(self, outcome: MessageOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)


class UpsertResult(BaseModel):
    inserted: bool


class Page(BaseModel):
    """Offset pagination for :meth:`MessageStore.list_all`."""

    offset: int = Field(default=0, ge=0)
    limit: int = Field(default=50, ge=1, le=500)


class PageResult(BaseModel):
    items: list[Message]
    total: int
    offset: int
    limit: int
