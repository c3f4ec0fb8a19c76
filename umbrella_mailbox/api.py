"""HTTP API: message listing, attachment download, replies, manual ingest.

Errors from the pipeline are translated to status codes here and the
response body only ever carries the error kind.  Internal detail
stays in the logs.
"""

from __future__ import annotations

import base64
import binascii
from contextlib import asynccontextmanager
from typing import Annotated
from urllib.parse import quote

import structlog
from fastapi import APIRouter, Depends, FastAPI, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from .config import PipelineConfig
from .errors import (
    FatalError,
    InvalidArgument,
    LeaseUnavailable,
    MailboxError,
    NotFound,
    PayloadTooLarge,
    TransientError,
)
from .models import AttachmentInfo, CycleReport, Message, OutgoingAttachment, Page
from .pipeline import Pipeline

logger = structlog.get_logger()

_STATUS_BY_ERROR: list[tuple[type[MailboxError], int]] = [
    (InvalidArgument, 400),
    (NotFound, 404),
    (LeaseUnavailable, 409),
    (PayloadTooLarge, 413),
    (TransientError, 503),
    (FatalError, 502),
]


# ----------------------------------------------------------------------
# Schemas
# ----------------------------------------------------------------------


class MessageOut(BaseModel):
    id: str
    sender: str
    recipients: list[str]
    subject: str
    received_at: str
    is_read: bool

    @classmethod
    def from_message(cls, message: Message) -> MessageOut:
        return cls(
            id=message.id,
            sender=message.sender,
            recipients=message.recipients,
            subject=message.subject,
            received_at=message.received_at.isoformat(),
            is_read=message.is_read,
        )


class MessageDetail(MessageOut):
    body: str
    rows: list[list[str]]

    @classmethod
    def from_message(cls, message: Message) -> MessageDetail:
        return cls(
            **MessageOut.from_message(message).model_dump(),
            body=message.body,
            rows=[row.cells for row in message.rows],
        )


class PaginatedMessages(BaseModel):
    items: list[MessageOut]
    total: int
    offset: int
    limit: int


class ReplyAttachmentIn(BaseModel):
    name: str
    content_type: str = "application/octet-stream"
    content_base64: str


class ReplyRequest(BaseModel):
    content: str
    attachments: list[ReplyAttachmentIn] = Field(default_factory=list)


class ReplyResponse(BaseModel):
    reply_id: str


# ----------------------------------------------------------------------
# Dependencies
# ----------------------------------------------------------------------


def get_pipeline(request: Request) -> Pipeline:
    return request.app.state.pipeline


PipelineDep = Annotated[Pipeline, Depends(get_pipeline)]


# ----------------------------------------------------------------------
# Routes
# ----------------------------------------------------------------------

router = APIRouter(prefix="/api/v1", tags=["messages"])


@router.get("/messages", response_model=PaginatedMessages)
async def list_messages(
    pipeline: PipelineDep,
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=500),
):
    """Stored messages, most recently received first."""
    result = await pipeline.store.list_all(Page(offset=offset, limit=limit))
    return PaginatedMessages(
        items=[MessageOut.from_message(m) for m in result.items],
        total=result.total,
        offset=result.offset,
        limit=result.limit,
    )


@router.get("/messages/{message_id}", response_model=MessageDetail)
async def get_message(message_id: str, pipeline: PipelineDep):
    message = await pipeline.store.get(message_id)
    if message is None:
        raise NotFound(f"message {message_id} not stored")
    return MessageDetail.from_message(message)


@router.get("/messages/{message_id}/attachments", response_model=list[AttachmentInfo])
async def list_attachments(message_id: str, pipeline: PipelineDep):
    return await pipeline.handler.list_attachments(message_id)


@router.get("/messages/{message_id}/attachments/{attachment_id}")
async def download_attachment(message_id: str, attachment_id: str, pipeline: PipelineDep):
    download = await pipeline.handler.download_attachment(message_id, attachment_id)
    return StreamingResponse(
        download.chunks(),
        media_type=download.content_type,
        headers={
            "Content-Disposition": f"attachment; filename*=UTF-8''{quote(download.name)}",
            "Content-Length": str(download.size),
        },
    )


@router.post("/messages/{message_id}/reply", response_model=ReplyResponse)
async def reply(message_id: str, body: ReplyRequest, pipeline: PipelineDep):
    attachments = [
        OutgoingAttachment(name=a.name, content_type=a.content_type, data=_decode(a))
        for a in body.attachments
    ]
    reply_id = await pipeline.handler.reply(message_id, body.content, attachments)
    return ReplyResponse(reply_id=reply_id)


@router.post("/ingest", response_model=CycleReport)
async def ingest(pipeline: PipelineDep):
    """Run one ingestion cycle now."""
    return await pipeline.coordinator.run_cycle()


def _decode(attachment: ReplyAttachmentIn) -> bytes:
    try:
        return base64.b64decode(attachment.content_base64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidArgument(f"attachment {attachment.name!r} is not valid base64") from exc


# ----------------------------------------------------------------------
# Application factory
# ----------------------------------------------------------------------


async def _handle_mailbox_error(request: Request, exc: MailboxError) -> JSONResponse:
    status_code = next((code for cls, code in _STATUS_BY_ERROR if isinstance(exc, cls)), 502)
    log = logger.error if status_code >= 500 else logger.info
    log("request_failed", path=request.url.path, error_kind=exc.kind, error=str(exc))
    return JSONResponse({"error": exc.kind}, status_code=status_code)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: create schema + start provider. Shutdown: stop both."""
    pipeline: Pipeline = app.state.pipeline
    await pipeline.start()
    yield
    await pipeline.stop()
    logger.info("shutdown_complete")


def create_app(config: PipelineConfig | None = None, *, pipeline: Pipeline | None = None) -> FastAPI:
    """Build and return the FastAPI application."""
    if pipeline is None:
        pipeline = Pipeline(config or PipelineConfig())

    app = FastAPI(
        title="Umbrella Mailbox API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.pipeline = pipeline
    app.include_router(router)
    app.add_exception_handler(MailboxError, _handle_mailbox_error)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "service": "umbrella-mailbox-api",
            "provider": await pipeline.provider.health_check(),
        }

    return app
