"""
Cooperative cancellation for a single run.

A CancelToken is created per run and passed through every suspension point
(completion streams, runtime actions, tool executors). ``guard`` races an
awaitable against the token so a stalled provider or sandbox never delays
cancellation.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Optional

from .errors import CancellationRequested

logger = logging.getLogger(__name__)


class CancelToken:
    """Per-run cancellation flag"""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancellationRequested(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[Any], timeout: Optional[float] = None) -> Any:
        """
        Await ``awaitable`` unless the token fires first.

        Args:
            awaitable: Coroutine or future to run
            timeout: Optional timeout in seconds

        Returns:
            The awaitable's result

        Raises:
            CancellationRequested: If the token fired first (the awaitable is cancelled)
            asyncio.TimeoutError: If the timeout elapsed first
        """
        if self.cancelled:
            # The awaitable never ran; it must not be left unawaited
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            elif isinstance(awaitable, asyncio.Future):
                awaitable.cancel()
            self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        watcher = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {work, watcher},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            watcher.cancel()

        if work in done:
            return work.result()

        work.cancel()
        try:
            await work
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Abandoned work raised during abort: {e}")

        if self.cancelled:
            raise CancellationRequested(self.reason or "cancelled")
        raise asyncio.TimeoutError()
