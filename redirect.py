import asyncio
import logging
from typing import Awaitable, Callable, Optional

from events import log_event
from links import Resolution
from store import LinkStore

logger = logging.getLogger("url_shortener")


class DeferredResolution:
    """Resolve a short code after a delay, unless cancelled first.

    Cancelling while the delay is running leaves the store untouched. Once the
    delay has elapsed the resolution has started and can no longer be
    cancelled; callers wait for its result instead.
    """

    def __init__(self, store: LinkStore, code: str, source: Optional[str] = None, delay: float = 1.0):
        self.store = store
        self.code = code
        self.source = source
        self.delay = delay
        self._task: Optional[asyncio.Task] = None
        self._resolving = False

    def start(self) -> "DeferredResolution":
        if self._task is None:
            self._task = asyncio.ensure_future(self._run())
        return self

    async def _run(self) -> Resolution:
        await asyncio.sleep(self.delay)
        self._resolving = True
        return await self.store.resolve(self.code, self.source)

    def done(self) -> bool:
        return self._task is not None and self._task.done()

    def cancelled(self) -> bool:
        return self._task is not None and self._task.cancelled()

    def resolving(self) -> bool:
        return self._resolving

    def cancel(self) -> bool:
        """Cancel during the delay. Returns False once resolution has started."""
        if self._task is None or self._task.done() or self._resolving:
            return False
        self._task.cancel()
        log_event("REDIRECT_CANCELLED", {"shortCode": self.code})
        return True

    async def wait(self, timeout: Optional[float] = None) -> None:
        """Wait up to `timeout` seconds for the resolution to finish."""
        self.start()
        await asyncio.wait({self._task}, timeout=timeout)

    async def result(self) -> Resolution:
        self.start()
        return await self._task


async def resolve_unless_abandoned(
    deferred: DeferredResolution,
    is_abandoned: Callable[[], Awaitable[bool]],
    poll_interval: float = 0.1,
) -> Optional[Resolution]:
    """Wait for `deferred`, cancelling it if `is_abandoned()` reports True during the delay.

    Returns None only when the resolution was cancelled before it started. An
    abandonment noticed after that is ignored and the resolution is awaited.
    """
    deferred.start()
    while not deferred.done():
        if await is_abandoned():
            if deferred.cancel():
                logger.info(f"Redirect for code={deferred.code} abandoned before resolution")
                return None
            logger.info(f"Redirect for code={deferred.code} abandoned while resolving; finishing")
            break
        await deferred.wait(poll_interval)
    return await deferred.result()
