import asyncio
import contextlib
import logging

logger = logging.getLogger(__name__)


class Countdown:
    """A cancellable once-per-tick countdown running as an asyncio task.

    ``on_tick(remaining)`` is called after every tick and ``on_expire()`` once
    the count reaches zero; both are plain callables run on the event loop.
    Use it as an async context manager so the task is always cancelled and
    awaited when the owner is done with it::

        async with Countdown(60, on_expire=submit) as countdown:
            ...
    """

    def __init__(self, seconds, on_expire, on_tick=None, tick_seconds=1.0):
        if seconds < 0:
            raise ValueError('seconds must not be negative')
        self._remaining = int(seconds)
        self._on_expire = on_expire
        self._on_tick = on_tick
        self.tick_seconds = tick_seconds
        self._task = None
        self.expired = False

    @property
    def remaining(self):
        return self._remaining

    @property
    def running(self):
        return self._task is not None and not self._task.done()

    def start(self):
        if self._task is not None:
            raise RuntimeError('countdown already started')
        self._task = asyncio.get_running_loop().create_task(self._run())
        return self

    async def _run(self):
        while self._remaining > 0:
            await asyncio.sleep(self.tick_seconds)
            self._remaining -= 1
            if self._on_tick is not None:
                self._on_tick(self._remaining)
        self.expired = True
        logger.debug('countdown expired')
        self._on_expire()

    def cancel(self):
        if self.running and self._task is not asyncio.current_task():
            self._task.cancel()

    async def aclose(self):
        """Cancel the countdown and wait until its task has finished."""
        task = self._task
        if task is None or task is asyncio.current_task():
            return
        self.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def __aenter__(self):
        return self.start()

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
