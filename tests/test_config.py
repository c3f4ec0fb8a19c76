"""Tests for umbrella_mailbox.config."""

from __future__ import annotations

from umbrella_mailbox.config import (
    GraphConfig,
    ImapConfig,
    LeaseConfig,
    PipelineConfig,
    ReplyConfig,
    RetryConfig,
    StoreConfig,
)
from umbrella_mailbox.providers import GraphMailboxProvider, ImapMailboxProvider, build_provider


class TestGraphConfig:
    def test_defaults(self):
        cfg = GraphConfig()
        assert cfg.base_url == "https://graph.microsoft.com/v1.0"
        assert "{tenant_id}" in cfg.token_url
        assert cfg.client_secret.get_secret_value() == ""

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("GRAPH_TENANT_ID", "t-env")
        monkeypatch.setenv("GRAPH_CLIENT_SECRET", "hidden")
        cfg = GraphConfig()
        assert cfg.tenant_id == "t-env"
        assert cfg.client_secret.get_secret_value() == "hidden"
        assert "hidden" not in repr(cfg)


class TestImapConfig:
    def test_defaults(self):
        cfg = ImapConfig()
        assert cfg.port == 993
        assert cfg.use_ssl is True
        assert cfg.mailbox == "INBOX"

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("IMAP_HOST", "mail.env.com")
        monkeypatch.setenv("IMAP_PORT", "143")
        cfg = ImapConfig()
        assert cfg.host == "mail.env.com"
        assert cfg.port == 143


class TestOtherConfigs:
    def test_store_default_is_sqlite(self):
        assert StoreConfig().database_url.startswith("sqlite+aiosqlite://")

    def test_retry_defaults(self):
        cfg = RetryConfig()
        assert cfg.max_attempts == 5
        assert cfg.multiplier == 2.0

    def test_lease_from_env(self, monkeypatch):
        monkeypatch.setenv("LEASE_TTL_SECONDS", "12.5")
        assert LeaseConfig().ttl_seconds == 12.5

    def test_reply_limit_default(self):
        assert ReplyConfig().max_attachment_bytes == 3 * 1024 * 1024


class TestPipelineConfig:
    def test_defaults(self):
        cfg = PipelineConfig()
        assert cfg.provider == "graph"
        assert cfg.max_concurrency == 4
        assert cfg.poll_interval_seconds == 60.0

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("PIPELINE_PROVIDER", "imap")
        monkeypatch.setenv("PIPELINE_MAX_CONCURRENCY", "8")
        cfg = PipelineConfig()
        assert cfg.provider == "imap"
        assert cfg.max_concurrency == 8

    def test_graph_mailbox_key(self):
        cfg = PipelineConfig(graph=GraphConfig(mailbox="desk@example.com"))
        assert cfg.mailbox_key == "graph:desk@example.com"

    def test_imap_mailbox_key(self):
        cfg = PipelineConfig(
            provider="imap",
            imap=ImapConfig(host="mail.test", username="desk", mailbox="Reports"),
        )
        assert cfg.mailbox_key == "imap:desk@mail.test/Reports"


class TestBuildProvider:
    def test_graph_selected_by_default(self):
        assert isinstance(build_provider(PipelineConfig()), GraphMailboxProvider)

    def test_imap_selected(self):
        provider = build_provider(PipelineConfig(provider="imap"))
        assert isinstance(provider, ImapMailboxProvider)
