"""
Periodic background task.

Runs a synchronous callback on a fixed interval inside the event loop.
Owned by the component that needs the sweep; started and stopped with it.
"""
import asyncio
import logging
from typing import Callable, Optional

logger = logging.getLogger("filevault.periodic")


class PeriodicTask:
    """
    asyncio 기반 주기 작업.

    사용 예시:
        task = PeriodicTask("cache_cleanup", 60, cache.cleanup)
        await task.start()
        ...
        await task.stop()
    """

    def __init__(self, name: str, interval: float, callback: Callable[[], object]):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background loop. Calling it twice is a no-op."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)
        logger.debug(
            "Periodic task started: %s (every %ss)",
            self.name,
            self.interval,
            extra={"event": "lifecycle", "task": self.name},
        )

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug("Periodic task stopped: %s", self.name, extra={"event": "lifecycle", "task": self.name})

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self._callback()
            except Exception as e:
                # 한 번의 실패로 정리 루프가 멈추지 않도록 함
                logger.warning(
                    "Periodic task %s failed: %s",
                    self.name,
                    e,
                    exc_info=True,
                    extra={"event": "lifecycle", "task": self.name},
                )
