"""
Fixed-interval scheduler for the autoresponder.

Runs AutoresponderEngine.run_tick every job_interval seconds until stopped.
A failing tick is logged and the next one runs on schedule.
"""

import asyncio

from loguru import logger

from supportbot.autoresponder.engine import AutoresponderEngine


class AutoresponderScheduler:
    """Fires the autoresponder evaluation tick on a fixed interval."""

    def __init__(self, engine: AutoresponderEngine, interval_s: float | None = None):
        self.engine = engine
        self.interval_s = interval_s or engine.config.job_interval
        self._task: asyncio.Task | None = None
        self._running = False
        self._ticking = False
        self._tick_count = 0

    async def start(self) -> None:
        """Start the background tick loop."""
        if self._task:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Autoresponder scheduler started (every {self.interval_s}s)")

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval_s)
            if not self._running:
                break
            self._ticking = True
            try:
                await self.tick()
            finally:
                self._ticking = False

    async def tick(self) -> None:
        """Run one tick, logging instead of raising on failure."""
        self._tick_count += 1
        try:
            result = await self.engine.run_tick()
            if result.sent or result.dropped or result.errors:
                logger.info(f"Tick {self._tick_count}: {result.to_dict()}")
        except Exception:
            logger.exception("Autoresponder tick failed")

    async def stop(self) -> None:
        """
        Stop the loop, then let the engine finish sends and flush state.

        A loop that is sleeping is cancelled. A tick in progress runs to
        completion, including its sends.
        """
        self._running = False
        if self._task:
            if not self._ticking:
                self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        await self.engine.close()
        logger.info("Autoresponder scheduler stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def tick_count(self) -> int:
        return self._tick_count
