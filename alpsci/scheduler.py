"""Scheduler — periodic build-history sync with an early-wake trigger."""

from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alpsci.engines.build_sync.runner import BuildSyncRunner, ClientFactory

logger = structlog.get_logger(__name__)

DEFAULT_SYNC_INTERVAL = 900.0


class EngineLoop:
    """Single engine scheduling loop with trigger/timeout wake mechanism."""

    def __init__(
        self,
        name: str,
        run_fn: Callable[[], Awaitable[int]],
        interval: float,
    ) -> None:
        self.name = name
        self.run_fn = run_fn
        self.interval = interval
        self.trigger = asyncio.Event()

    async def run_once(self) -> int:
        """One cycle; errors are logged and count as nothing processed."""
        try:
            processed = await self.run_fn()
        except Exception:
            logger.exception("engine.error", engine=self.name)
            return 0
        logger.info("engine.cycle", engine=self.name, processed=processed)
        return processed

    async def loop(self) -> None:
        """Run the engine forever, waking on trigger or after *interval* seconds."""
        while True:
            try:
                await asyncio.wait_for(self.trigger.wait(), timeout=self.interval)
                self.trigger.clear()
            except asyncio.TimeoutError:
                pass
            await self.run_once()


class Scheduler:
    """Manages lifecycle of EngineLoop tasks."""

    def __init__(self, loops: list[EngineLoop]) -> None:
        self._loops = loops
        self._tasks: list[asyncio.Task[None]] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def trigger(self, name: str) -> bool:
        """Wake the loop called *name* early. False if no such loop."""
        for loop in self._loops:
            if loop.name == name:
                loop.trigger.set()
                return True
        return False

    async def start(self) -> None:
        """Start all loops as asyncio tasks; each runs its first cycle immediately."""
        self._tasks = [
            asyncio.create_task(loop.loop(), name=f"engine-{loop.name}") for loop in self._loops
        ]
        for loop in self._loops:
            loop.trigger.set()
        logger.info("scheduler.started", engines=[loop.name for loop in self._loops])

    async def stop(self) -> None:
        """Cancel all loops and wait for them to exit."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("scheduler.stopped")


def _env_float(key: str, default: float) -> float:
    return float(os.environ.get(key, default))


def create_scheduler(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    sync_runner: BuildSyncRunner,
    client_factory: ClientFactory,
) -> Scheduler:
    """Build a Scheduler that syncs every build each ``ALPSCI_SYNC_INTERVAL`` seconds."""
    sync_interval = _env_float("ALPSCI_SYNC_INTERVAL", DEFAULT_SYNC_INTERVAL)

    async def _sync_all_builds() -> int:
        outcomes = await sync_runner.run_all(session_factory, client_factory)
        return sum(o.result.new_runs_synced for o in outcomes if o.result is not None)

    return Scheduler([EngineLoop("build_sync", _sync_all_builds, sync_interval)])
