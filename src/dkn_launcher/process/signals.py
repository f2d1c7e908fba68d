"""Fire-once cancellation driven by OS termination signals."""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Iterable

from dkn_launcher.logging import get_logger

log = get_logger("dkn_launcher.process.signals")


class CancellationToken:
    """Shared flag that is set once and observed by any number of waiters."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: str | None = None

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Fire the token.  Returns False if it had already fired."""
        if self._event.is_set():
            return False
        self._reason = reason
        self._event.set()
        return True

    async def wait(self) -> str | None:
        """Block until the token fires, then return the reason."""
        await self._event.wait()
        return self._reason


def termination_signals() -> tuple[signal.Signals, ...]:
    """Signals that request a graceful shutdown on this platform."""
    names = ("SIGINT", "SIGTERM", "SIGHUP", "SIGBREAK")
    return tuple(getattr(signal, name) for name in names if hasattr(signal, name))


def install_signal_handlers(
    token: CancellationToken,
    signals: Iterable[signal.Signals] | None = None,
    loop: asyncio.AbstractEventLoop | None = None,
) -> list[signal.Signals]:
    """Fire *token* on the first termination signal.

    Must be called from the thread running *loop*.  Returns the signals
    that were hooked.
    """
    loop = loop or asyncio.get_running_loop()
    installed: list[signal.Signals] = []

    def _on_signal(sig: signal.Signals) -> None:
        if token.cancel(reason=sig.name):
            log.info("termination_signal_received", signal=sig.name)

    def _threadsafe_handler(signum: int, _frame: object) -> None:
        loop.call_soon_threadsafe(_on_signal, signal.Signals(signum))

    for sig in signals if signals is not None else termination_signals():
        try:
            loop.add_signal_handler(sig, _on_signal, sig)
        except NotImplementedError:
            # Windows event loops have no add_signal_handler
            signal.signal(sig, _threadsafe_handler)
        except (ValueError, RuntimeError) as exc:
            log.debug("signal_handler_not_installed", signal=sig.name, error=str(exc))
            continue
        installed.append(sig)

    return installed


def remove_signal_handlers(
    signals: Iterable[signal.Signals],
    loop: asyncio.AbstractEventLoop | None = None,
) -> None:
    loop = loop or asyncio.get_running_loop()
    for sig in signals:
        try:
            loop.remove_signal_handler(sig)
        except NotImplementedError:
            signal.signal(sig, signal.SIG_DFL)
