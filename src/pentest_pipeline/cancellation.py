"""Cooperative cancellation shared by the pipeline, retry loop and invokers."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal
from collections.abc import Iterator

logger = logging.getLogger(__name__)

TERMINATION_SIGNALS: tuple[signal.Signals, ...] = (signal.SIGINT, signal.SIGTERM)


class CancellationToken:
    """One-shot cancellation flag that coroutines can poll or await."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        logger.warning("Cancellation requested: %s", reason)

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """Sleep up to ``delay`` seconds; return True when woken by cancellation."""

        if delay <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except TimeoutError:
            return False
        return True


@contextlib.contextmanager
def handle_termination_signals(token: CancellationToken) -> Iterator[None]:
    """Route SIGINT/SIGTERM to ``token`` on the running loop, then restore."""

    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in TERMINATION_SIGNALS:
        try:
            loop.add_signal_handler(sig, token.cancel, f"received {sig.name}")
        except (NotImplementedError, RuntimeError, ValueError):
            logger.debug("Signal handler for %s not supported here", sig.name)
            continue
        installed.append(sig)
    try:
        yield
    finally:
        for sig in installed:
            loop.remove_signal_handler(sig)
