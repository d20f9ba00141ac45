"""
Periodic worker loop shared by the background workers.

Runs one task on a fixed interval until SIGINT or SIGTERM. A failed run is
logged and the loop continues with the next interval.
"""
import asyncio
import signal
import time
from typing import Any, Awaitable, Callable, Optional

import structlog

from billing_events.config import Settings, get_settings
from billing_events.monitoring.logging import setup_logging
from billing_events.services import Services, build_services

logger = structlog.get_logger(__name__)

WorkerTask = Callable[[Services], Awaitable[Any]]


class PeriodicWorker:
    """Calls ``task`` every ``interval_seconds`` until stopped."""

    def __init__(self, name: str, interval_seconds: float, task: WorkerTask):
        self.name = name
        self.interval_seconds = interval_seconds
        self.task = task
        self._stopping = asyncio.Event()

    def stop(self) -> None:
        if not self._stopping.is_set():
            logger.info("worker_shutdown_signal_received", worker=self.name)
        self._stopping.set()

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.stop)

    async def run_once(self, services: Services) -> Optional[Any]:
        started = time.monotonic()
        try:
            result = await self.task(services)
        except Exception:
            logger.exception("worker_run_failed", worker=self.name)
            return None
        logger.debug(
            "worker_run_completed",
            worker=self.name,
            duration_seconds=time.monotonic() - started,
        )
        return result

    async def run(self, services: Services) -> None:
        logger.info("worker_started", worker=self.name, interval_seconds=self.interval_seconds)
        try:
            while not self._stopping.is_set():
                await self.run_once(services)
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
                except asyncio.TimeoutError:
                    pass
        finally:
            logger.info("worker_stopped", worker=self.name)


async def run_worker(
    name: str,
    interval: Callable[[Settings], float],
    task: WorkerTask,
    settings: Optional[Settings] = None,
) -> None:
    """Entry point used by each worker module's ``__main__``."""
    settings = settings or get_settings()
    setup_logging(settings)

    services = build_services(settings)
    worker = PeriodicWorker(name, interval(settings), task)
    worker.install_signal_handlers()
    try:
        await services.database.create_all()
        await worker.run(services)
    finally:
        await services.close()
