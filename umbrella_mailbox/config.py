"""Pipeline configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars,
which is the natural config mechanism in Kubernetes.
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings


class GraphConfig(BaseSettings):
    """Microsoft Graph mailbox settings (client-credentials flow)."""

    model_config = {"env_prefix": "GRAPH_"}

    tenant_id: str = Field(default="", description="Azure AD tenant ID")
    client_id: str = Field(default="", description="App registration client ID")
    client_secret: SecretStr = Field(
        default=SecretStr(""),
        description="App registration client secret",
    )
    mailbox: str = Field(default="", description="User principal name of the mailbox to poll")
    base_url: str = Field(
        default="https://graph.microsoft.com/v1.0",
        description="Graph API base URL",
    )
    token_url: str = Field(
        default="https://login.microsoftonline.com/{tenant_id}/oauth2/v2.0/token",
        description="OAuth2 token endpoint template",
    )
    scope: str = Field(default="https://graph.microsoft.com/.default", description="OAuth2 scope")
    page_size: int = Field(default=50, description="Messages requested per page")
    timeout_seconds: float = Field(default=30.0, description="Per-request timeout")
    token_refresh_margin_seconds: float = Field(
        default=120.0,
        description="Refresh the access token this many seconds before it expires",
    )


class ImapConfig(BaseSettings):
    """IMAP server connection settings."""

    model_config = {"env_prefix": "IMAP_"}

    host: str = Field(default="", description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    use_ssl: bool = Field(default=True, description="Use SSL/TLS connection")
    username: str = Field(default="", description="IMAP login username")
    password: SecretStr = Field(default=SecretStr(""), description="IMAP login password")
    mailbox: str = Field(default="INBOX", description="IMAP mailbox/folder to poll")
    timeout_seconds: float = Field(default=30.0, description="Per-operation timeout")


class SmtpConfig(BaseSettings):
    """SMTP settings used by the IMAP provider to send replies."""

    model_config = {"env_prefix": "SMTP_"}

    host: str = Field(default="", description="SMTP server hostname")
    port: int = Field(default=587, description="SMTP server port")
    starttls: bool = Field(default=True, description="Upgrade the connection with STARTTLS")
    username: str = Field(default="", description="SMTP login username")
    password: SecretStr = Field(default=SecretStr(""), description="SMTP login password")
    from_address: str = Field(default="", description="Address replies are sent from")


class StoreConfig(BaseSettings):
    """Persistence settings."""

    model_config = {"env_prefix": "STORE_"}

    database_url: str = Field(
        default="sqlite+aiosqlite:///./umbrella_mailbox.db",
        description="Async SQLAlchemy URL",
    )
    echo: bool = Field(default=False, description="Log SQL statements")


class RetryConfig(BaseSettings):
    """Retry / backoff settings driven by Tenacity."""

    model_config = {"env_prefix": "RETRY_"}

    max_attempts: int = Field(default=5, description="Maximum attempts per retried operation")
    initial_wait_seconds: float = Field(
        default=1.0,
        description="Initial backoff wait in seconds",
    )
    max_wait_seconds: float = Field(
        default=60.0,
        description="Maximum backoff wait in seconds",
    )
    multiplier: float = Field(default=2.0, description="Exponential backoff multiplier")


class LeaseConfig(BaseSettings):
    """Mailbox ingestion lease settings."""

    model_config = {"env_prefix": "LEASE_"}

    ttl_seconds: float = Field(
        default=300.0,
        description="Lease lifetime; an expired lease may be taken over by another worker",
    )
    owner: str | None = Field(
        default=None,
        description="Lease owner identity (defaults to hostname:pid)",
    )


class ReplyConfig(BaseSettings):
    """Reply composition limits."""

    model_config = {"env_prefix": "REPLY_"}

    max_attachment_bytes: int = Field(
        default=3 * 1024 * 1024,
        description="Largest attachment accepted on a reply",
    )


class PipelineConfig(BaseSettings):
    """Root configuration for a pipeline instance.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = {"env_prefix": "PIPELINE_"}

    name: str = Field(default="mailbox", description="Pipeline instance name")
    provider: Literal["graph", "imap"] = Field(
        default="graph",
        description="Mailbox provider implementation",
    )
    poll_interval_seconds: float = Field(
        default=60.0,
        description="Seconds between ingestion cycles",
    )
    max_concurrency: int = Field(
        default=4,
        description="Messages processed concurrently within one cycle",
    )
    provider_timeout_seconds: float = Field(
        default=60.0,
        description="Upper bound on any single mailbox provider call",
    )
    health_port: int = Field(default=8080, description="Port for K8s health probe endpoints")
    api_host: str = Field(default="0.0.0.0", description="HTTP API bind address")
    api_port: int = Field(default=8000, description="HTTP API bind port")
    log_json: bool = Field(default=True, description="JSON log output (False for dev)")
    log_level: str = Field(default="INFO", description="Root log level")

    graph: GraphConfig = Field(default_factory=GraphConfig)
    imap: ImapConfig = Field(default_factory=ImapConfig)
    smtp: SmtpConfig = Field(default_factory=SmtpConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    lease: LeaseConfig = Field(default_factory=LeaseConfig)
    reply: ReplyConfig = Field(default_factory=ReplyConfig)

    @property
    def mailbox_key(self) -> str:
        """Identity of the polled mailbox, used as the lease key."""
        if self.provider == "graph":
            return f"graph:{self.graph.mailbox}"
        return f"imap:{self.imap.username}@{self.imap.host}/{self.imap.mailbox}"
