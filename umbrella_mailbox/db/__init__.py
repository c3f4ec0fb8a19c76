"""Database engine and ORM models."""

from .engine import Database
from .models import Base, MailboxLeaseRecord, MessageRecord

__all__ = ["Base", "Database", "MailboxLeaseRecord", "MessageRecord"]
