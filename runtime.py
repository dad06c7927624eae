import asyncio
import concurrent.futures
import logging
import threading

logger = logging.getLogger(__name__)


class BackgroundLoop:
    """Event loop on a daemon thread so synchronous Flask views can drive async services."""

    def __init__(self, name: str = "consultation-loop"):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_forever, name=name, daemon=True)
        self._thread.start()
        logger.debug(f"Background event loop {name} started")

    def _run_forever(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def run(self, coro, timeout=None):
        """Run a coroutine on the loop and block until it finishes; a timeout cancels it."""
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            logger.warning(f"Coroutine timed out after {timeout}s and was cancelled")
            raise

    def call(self, fn, *args, timeout=None):
        """Run a plain callable on the loop thread, where it may schedule tasks."""
        async def invoke():
            return fn(*args)
        return self.run(invoke(), timeout)

    def stop(self, timeout: float = 5):
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout)
