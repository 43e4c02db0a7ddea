from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Coroutine, TypeVar

_LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class LoopThread:
    """Runs an asyncio event loop on a daemon thread.

    Synchronous callers (a GUI main thread, the command line) hand coroutines
    to the loop with ``run_coroutine`` and receive a concurrent future.
    ``stop()`` cancels whatever is still pending, stops the loop, shuts down
    its default executor and joins the thread.
    """

    def __init__(self, name: str = "devswitch-loop") -> None:
        self.name = name
        self.loop: asyncio.AbstractEventLoop | None = None
        self.thread: threading.Thread | None = None
        self._ready = threading.Event()

    @property
    def running(self) -> bool:
        return self.thread is not None and self.thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._ready.clear()
        self.thread = threading.Thread(target=self._run_event_loop, name=self.name, daemon=True)
        self.thread.start()
        self._ready.wait()
        _LOGGER.debug("Event loop running in thread %s", self.thread.ident)

    def _run_event_loop(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self.loop = loop
        self._ready.set()
        try:
            loop.run_forever()
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.run_until_complete(loop.shutdown_default_executor())
            loop.close()
            _LOGGER.debug("Event loop closed")

    def run_coroutine(self, coro: Coroutine[Any, Any, T]) -> concurrent.futures.Future[T]:
        if self.loop is None or not self.running:
            coro.close()
            raise RuntimeError("Event loop thread is not running.")
        return asyncio.run_coroutine_threadsafe(coro, self.loop)

    def call(self, coro: Coroutine[Any, Any, T], timeout: float | None = None) -> T:
        """Run ``coro`` on the loop and block until it finishes."""
        return self.run_coroutine(coro).result(timeout)

    def stop(self, timeout: float = 5.0) -> None:
        loop = self.loop
        if loop is None or not self.running:
            return
        future = asyncio.run_coroutine_threadsafe(self._shutdown(), loop)
        try:
            future.result(timeout)
        except concurrent.futures.TimeoutError:
            _LOGGER.warning("Timed out waiting for pending tasks to cancel")
        loop.call_soon_threadsafe(loop.stop)
        if self.thread is not None:
            self.thread.join(timeout)
        self.loop = None
        self.thread = None

    async def _shutdown(self) -> None:
        current = asyncio.current_task()
        tasks = [task for task in asyncio.all_tasks() if task is not current]
        _LOGGER.debug("Cancelling %d pending tasks", len(tasks))
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
