import asyncio
import logging
from typing import Awaitable, Callable, Set

logger = logging.getLogger(__name__)

SideEffect = Callable[[], Awaitable[object]]


class SideEffectDispatcher:
    """Runs notifications and label purchases as background tasks.

    A side effect's failure is logged here and goes no further; the state
    transition that triggered it has already committed.
    """

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def fire(self, name: str, factory: SideEffect) -> asyncio.Task:
        return self._track(name, self._run(name, factory))

    def fire_later(self, delay: float, name: str, factory: SideEffect) -> asyncio.Task:
        async def delayed():
            await asyncio.sleep(delay)
            await self._run(name, factory)

        return self._track(name, delayed())

    def _track(self, name: str, coro) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, factory: SideEffect) -> None:
        try:
            await factory()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Side effect %s failed", name)

    async def drain(self) -> None:
        """Wait for every scheduled side effect, including ones scheduled meanwhile."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self, timeout: float = 10.0) -> None:
        try:
            await asyncio.wait_for(self.drain(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Cancelling %d side effects still pending at shutdown", len(self._tasks))
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
