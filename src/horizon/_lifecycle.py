"""Cancellation and signal handling for a single run.

A :class:`CancelToken` is created at process start and handed to the
sequencer. SIGINT/SIGTERM set it through ``loop.add_signal_handler``; every
blocking wait races it, so a signal turns into an orderly cleanup rather
than a ``KeyboardInterrupt`` unwinding through half-finished docker calls.
"""

from __future__ import annotations

import asyncio
import contextlib
import signal
from collections.abc import Callable, Iterable

from horizon.logger import Logger


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.signal: int | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, signum: int | None = None) -> bool:
        """Request cancellation. Returns ``False`` if it was already requested."""
        if self._event.is_set():
            return False
        self.signal = signum
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return ``True`` if cancelled meanwhile."""
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        return self.cancelled


def install_signal_handlers(
    token: CancelToken,
    logger: Logger,
    signals: Iterable[signal.Signals] = (signal.SIGINT, signal.SIGTERM),
) -> Callable[[], None]:
    """Route *signals* to *token*. Returns a function that removes the handlers."""
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def _on_signal(sig: signal.Signals) -> None:
        if token.cancel(int(sig)):
            logger.warning("signal", f"Received {sig.name}, cleaning up", signal=sig.name)
        else:
            logger.warning("signal", f"Received {sig.name} during cleanup; ignoring", signal=sig.name)

    for sig in signals:
        loop.add_signal_handler(sig, _on_signal, sig)
        installed.append(sig)

    def _remove() -> None:
        for sig in installed:
            loop.remove_signal_handler(sig)

    return _remove
