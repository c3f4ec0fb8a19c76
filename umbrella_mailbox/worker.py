"""IngestionWorker: runs ingestion cycles on a schedule until shutdown."""

from __future__ import annotations

import asyncio
import contextlib
import signal
import time
from collections.abc import Callable
from enum import Enum

import structlog
import uvicorn

from .errors import FatalError, LeaseUnavailable, TransientError
from .logging import alert_operator, setup_logging
from .models import CycleReport
from .pipeline import Pipeline
from .retry import with_retry

logger = structlog.get_logger()


class WorkerStatus(str, Enum):
    """Runtime status of a worker instance."""

    STARTING = "starting"
    RUNNING = "running"
    DEGRADED = "degraded"
    STOPPING = "stopping"
    STOPPED = "stopped"


def install_signal_handlers(on_shutdown: Callable[[], None]) -> None:
    """Register SIGTERM and SIGINT handlers that call *on_shutdown*."""
    loop = asyncio.get_running_loop()

    def _handle(sig: signal.Signals) -> None:
        logger.info("shutdown_signal_received", signal=sig.name)
        on_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _handle, sig)


class IngestionWorker:
    """Scheduler for one mailbox.

    ``run()`` starts the following concurrently via
    :class:`asyncio.TaskGroup`:

    * The cycle loop (one cycle every ``poll_interval_seconds``)
    * FastAPI health server (for K8s probes)

    Transient cycle failures are retried with backoff by tenacity.  A
    lease held elsewhere just skips the cycle.  A fatal error alerts an
    operator and stops the loop.
    """

    def __init__(self, pipeline: Pipeline) -> None:
        self.pipeline = pipeline
        self.config = pipeline.config
        self.status: WorkerStatus = WorkerStatus.STARTING
        self.start_time: float = time.monotonic()
        self.last_cycle_at: float | None = None
        self.last_error: str | None = None
        self._shutdown_event = asyncio.Event()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()
        self.pipeline.coordinator.cancel()

    # ------------------------------------------------------------------
    # Cycles
    # ------------------------------------------------------------------

    async def run_once(self) -> CycleReport | None:
        """Run one cycle, retrying transient failures.

        Returns ``None`` when another worker holds the mailbox lease.
        """
        retrying = with_retry(
            self.config.retry,
            retryable_exceptions=(TransientError,),
            excluded_exceptions=(LeaseUnavailable,),
        )

        @retrying
        async def _cycle() -> CycleReport:
            return await self.pipeline.coordinator.run_cycle()

        try:
            report = await _cycle()
        except LeaseUnavailable:
            logger.info("cycle_skipped_lease_held", mailbox=self.pipeline.coordinator.mailbox)
            return None
        self.last_cycle_at = time.monotonic()
        self.last_error = None
        return report

    async def _run_cycle_loop(self) -> None:
        logger.info("cycle_loop_started", pipeline=self.config.name)
        self.status = WorkerStatus.RUNNING
        try:
            while not self._shutdown_event.is_set():
                try:
                    await self.run_once()
                    self.status = WorkerStatus.RUNNING
                except FatalError as exc:
                    self.status = WorkerStatus.DEGRADED
                    self.last_error = exc.kind
                    alert_operator("ingestion_stopped", pipeline=self.config.name, error=str(exc))
                    return
                except TransientError as exc:
                    # Retries exhausted; try again next interval.
                    self.status = WorkerStatus.DEGRADED
                    self.last_error = exc.kind
                    logger.error("cycle_failed_after_retries", error=str(exc))

                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self.config.poll_interval_seconds,
                    )
        finally:
            logger.info("cycle_loop_stopped", pipeline=self.config.name)
            # Lets the health server exit once the loop is done.
            self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Health server
    # ------------------------------------------------------------------

    async def _run_health_server(self) -> None:
        """Start the FastAPI health server and shut it down on signal."""
        from .health import create_health_app

        app = create_health_app(self)
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.config.health_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        # Run until the shutdown event fires
        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start the pipeline and run cycles until shutdown.

        This is the single entry point::

            asyncio.run(worker.run())
        """
        setup_logging(json=self.config.log_json, level=self.config.log_level)
        install_signal_handlers(self.request_shutdown)
        self.start_time = time.monotonic()

        logger.info("worker_starting", pipeline=self.config.name)
        await self.pipeline.start()

        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._run_cycle_loop())
                tg.create_task(self._run_health_server())
        except* Exception:
            logger.exception("worker_task_group_error", pipeline=self.config.name)
        finally:
            self.status = WorkerStatus.STOPPING
            await self.pipeline.stop()
            self.status = WorkerStatus.STOPPED
            logger.info("worker_stopped", pipeline=self.config.name)
