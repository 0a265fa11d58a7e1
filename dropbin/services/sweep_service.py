import asyncio

import sentry_sdk
import structlog

from dropbin.services.lifecycle_service import LifecycleService


class SweepService:
    """
    Runs `LifecycleService.sweep` in the background every `interval` seconds.
    """

    def __init__(
        self,
        log: structlog.stdlib.BoundLogger,
        lifecycle_service: LifecycleService,
        interval: float = 60,
        run_on_start: bool = True,
    ):
        self.log = log.bind(component="sweeper")
        self.lifecycle_service = lifecycle_service
        self.interval = interval
        self.run_on_start = run_on_start
        self.task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    def start(self):
        if self.running:
            raise RuntimeError("SweepService already started")
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        self.task = loop.create_task(self._sweep_loop())

    async def stop(self):
        """
        Wait for an in-progress sweep to finish, then stop the loop.
        """
        if self.task is None:
            raise RuntimeError("SweepService not started")
        self._stop_event.set()
        await self.task
        self.task = None

    async def _sweep_once(self):
        try:
            await self.lifecycle_service.sweep(self.log)
        except Exception as e:
            self.log.exception("Sweep failed", exc_info=e)
            sentry_sdk.capture_exception(e)

    async def _sweep_loop(self):
        self.log.info("Sweeper started", interval=self.interval)
        if self.run_on_start:
            await self._sweep_once()
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                await self._sweep_once()
        self.log.info("Sweeper stopped")
