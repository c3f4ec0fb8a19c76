"""Entry point for the mailbox pipeline.

Usage::

    python -m umbrella_mailbox worker        # poll the mailbox until SIGTERM
    python -m umbrella_mailbox ingest-once   # run a single ingestion cycle
    python -m umbrella_mailbox api           # serve the HTTP API
    python -m umbrella_mailbox init-db       # create the database schema
"""

from __future__ import annotations

import asyncio
import sys

_MODES = ("worker", "ingest-once", "api", "init-db")


async def _ingest_once(config) -> int:
    from .errors import LeaseUnavailable, MailboxError
    from .models import MessageOutcome
    from .pipeline import Pipeline

    pipeline = Pipeline(config)
    await pipeline.start()
    try:
        report = await pipeline.coordinator.run_cycle()
    except LeaseUnavailable:
        print(f"mailbox {config.mailbox_key} is leased by another worker", file=sys.stderr)
        return 2
    except MailboxError as exc:
        print(f"ingestion failed: {exc.kind}", file=sys.stderr)
        return 1
    finally:
        await pipeline.stop()

    counts = ", ".join(f"{o.value}={report.count(o)}" for o in MessageOutcome)
    print(f"{report.mailbox}: {counts}, pending_read={len(report.pending_read)}")
    return 0


async def _init_db(config) -> None:
    from .db import Database

    db = Database(config.store)
    try:
        await db.create_schema()
    finally:
        await db.close()


def main() -> None:
    if len(sys.argv) < 2 or sys.argv[1] not in _MODES:
        print(f"Usage: python -m umbrella_mailbox <{'|'.join(_MODES)}>", file=sys.stderr)
        sys.exit(1)

    mode = sys.argv[1]

    from .config import PipelineConfig
    from .logging import setup_logging

    config = PipelineConfig()

    if mode == "worker":
        from .pipeline import Pipeline
        from .worker import IngestionWorker

        worker = IngestionWorker(Pipeline(config))
        asyncio.run(worker.run())

    elif mode == "ingest-once":
        setup_logging(json=config.log_json, level=config.log_level)
        sys.exit(asyncio.run(_ingest_once(config)))

    elif mode == "api":
        import uvicorn

        from .api import create_app

        setup_logging(json=config.log_json, level=config.log_level)
        uvicorn.run(
            create_app(config),
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower(),
        )

    elif mode == "init-db":
        setup_logging(json=config.log_json, level=config.log_level)
        asyncio.run(_init_db(config))
        print("schema created")


if __name__ == "__main__":
    main()
