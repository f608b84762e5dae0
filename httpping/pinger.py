"""Probe orchestration: N workers, one output stream."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from httpping.engine import WebClient
from httpping.models import Config, Measurement, RuntimeConfig

logger = logging.getLogger(__name__)

_DONE = object()


class MeasurementStream:
    """Async iterator over the Measurements produced by a running ping.

    Iteration ends once every worker has finished or the stream has been
    cancelled.
    """

    def __init__(self, producer: Callable[[asyncio.Queue], Awaitable[None]]) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._finished = False
        self._task = asyncio.create_task(producer(self._queue))
        # Runs however the task ends, including cancellation before its first step.
        self._task.add_done_callback(lambda _task: self._queue.put_nowait(_DONE))

    def __aiter__(self) -> MeasurementStream:
        return self

    async def __anext__(self) -> Measurement:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _DONE:
            self._finished = True
            # Surface errors from the coordinator, if any.
            if not self._task.cancelled():
                self._task.result()
            raise StopAsyncIteration
        return item

    def cancel(self) -> None:
        """Stop all workers; pending iteration ends promptly."""
        self._task.cancel()

    async def aclose(self) -> None:
        self.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class Pinger:
    """Runs the configured number of workers against one target."""

    def __init__(
        self,
        config: Config,
        runtime: Optional[RuntimeConfig] = None,
        client: Optional[Any] = None,
    ) -> None:
        self.config = config
        self.runtime = runtime or RuntimeConfig()
        self.client = client if client is not None else WebClient(config, self.runtime)

    @property
    def url(self) -> str:
        return self.client.url

    async def aclose(self) -> None:
        await self.client.aclose()

    def ping(self) -> MeasurementStream:
        """Start probing in the background and return the result stream."""
        return MeasurementStream(self._run)

    async def _run(self, queue: asyncio.Queue) -> None:
        config = self.config

        if config.follow_redirects:
            # Untimed: only the final URL matters.
            await self.client.do_measure(True)
            logger.debug("Redirect discovery settled on %s", self.client.url)

        if config.workers <= 1:
            clients = [self.client]
        else:
            clients = [self.client.clone() for _ in range(config.workers)]

        tasks = [asyncio.create_task(self._worker(c, queue)) for c in clients]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            # Stop the surviving workers before their clients are closed.
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            if clients[0] is not self.client:
                for c in clients:
                    await c.aclose()

    async def _worker(self, client: Any, queue: asyncio.Queue) -> None:
        config = self.config

        if not config.disable_keepalive:
            await client.do_measure(False)
            await asyncio.sleep(config.interval)

        for i in range(config.count):
            queue.put_nowait(await client.do_measure(False))
            if i < config.count - 1:
                await asyncio.sleep(config.interval)
