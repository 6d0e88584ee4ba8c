"""Scoped release of everything a run acquires.

The guard keeps a stack of release actions (delete temp dir, unmount
partition, delete loop device, ...). Leaving the ``with`` block, whether
normally, through an exception or through SIGINT/SIGTERM, drains the stack in
reverse order of acquisition. Each action runs at most once; a failing action
is logged and the remaining ones still run.

Example:
    with CleanupGuard() as guard:
        loop = devices.attach(image)
        guard.register(lambda: devices.detach(loop), f"delete loop {loop}")
        ...
"""

from __future__ import annotations

import atexit
import signal
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from rpi_autoinstall.exceptions import PipelineInterrupted
from rpi_autoinstall.logging import LoggerFactory


log = LoggerFactory.for_cleanup()

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


@dataclass
class ReleaseAction:
    """An idempotent, no-argument release step."""

    func: Callable[[], object]
    description: str
    done: bool = field(default=False)

    def __call__(self) -> None:
        if self.done:
            return
        self.done = True
        self.func()


class CleanupGuard:
    """Stack of release actions drained exactly once."""

    def __init__(self, install_signal_handlers: bool = True):
        self._actions: list[ReleaseAction] = []
        self._unwound = False
        self._install_signal_handlers = install_signal_handlers
        self._previous_handlers: dict[int, object] = {}

    @property
    def pending(self) -> list[str]:
        """Descriptions of actions that have not run yet, newest first."""
        return [a.description for a in reversed(self._actions) if not a.done]

    @property
    def unwound(self) -> bool:
        return self._unwound

    def register(self, func: Callable[[], object], description: str) -> ReleaseAction:
        """Push a release action; returns a token usable with release()/cancel()."""
        action = ReleaseAction(func=func, description=description)
        self._actions.append(action)
        log.trace(f"Registered release action: {description}")
        return action

    def release(self, *actions: ReleaseAction) -> None:
        """Run specific actions now, in the order given, ahead of unwind()."""
        for action in actions:
            self._run(action)

    def cancel(self, action: ReleaseAction) -> None:
        """Mark an action as no longer needed without running it."""
        action.done = True
        log.trace(f"Cancelled release action: {action.description}")

    def unwind(self) -> None:
        """Run every pending action in reverse order. Later calls do nothing."""
        if self._unwound:
            return
        self._unwound = True
        with self._signals_ignored():
            while self._actions:
                self._run(self._actions.pop())

    def _run(self, action: ReleaseAction) -> None:
        if action.done:
            return
        try:
            action()
        except Exception as error:
            log.error(f"Release action '{action.description}' failed: {error}")
        else:
            log.debug(f"Released: {action.description}")

    # ------------------------------------------------------------------
    # Scope and signal handling
    # ------------------------------------------------------------------

    def __enter__(self) -> "CleanupGuard":
        if self._install_signal_handlers and _on_main_thread():
            for signum in HANDLED_SIGNALS:
                self._previous_handlers[signum] = signal.signal(signum, self._on_signal)
        atexit.register(self.unwind)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            self.unwind()
        finally:
            atexit.unregister(self.unwind)
            self._restore_signal_handlers()

    def _on_signal(self, signum, frame) -> None:
        log.warning(f"Received signal {signum}; cleaning up")
        raise PipelineInterrupted(signum)

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _signals_ignored(self):
        return _IgnoreSignals(enabled=bool(self._previous_handlers))


class _IgnoreSignals:
    """Hold off SIGINT/SIGTERM while release actions run."""

    def __init__(self, enabled: bool):
        self.enabled = enabled
        self.saved: dict[int, object] = {}

    def __enter__(self):
        if self.enabled:
            for signum in HANDLED_SIGNALS:
                self.saved[signum] = signal.signal(signum, signal.SIG_IGN)
        return self

    def __exit__(self, exc_type, exc, tb) -> Optional[bool]:
        for signum, handler in self.saved.items():
            signal.signal(signum, handler)
        return None


def _on_main_thread() -> bool:
    return threading.current_thread() is threading.main_thread()
