"""Batch-wide cooperative cancellation.

A ``CancellationToken`` is shared by every task of one batch. It has two
observable phases, RUNNING and CANCELING. It can be fired once, and is
closed without further announcements when its batch finishes. The
``CancellationBridge`` turns the first SIGINT received during a run into a
call to ``CancellationToken.cancel``; later interrupts in the same run are
ignored. The bridge never talks to the remote service itself.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from enum import Enum
from typing import List, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    """Progress phases announced to the UI layer."""

    RUNNING = "running"
    CANCELING = "canceling"


class PhaseListener(Protocol):
    """Receives phase notifications, at most once per phase per run."""

    def on_phase_change(self, phase: Phase) -> None:
        """React to the batch entering ``phase``."""
        ...


class CancellationToken:
    """Single-shot cancellation signal observed cooperatively by batch tasks."""

    def __init__(self, listeners: Optional[Sequence[PhaseListener]] = None) -> None:
        """Create a token in the RUNNING phase."""
        self._event = asyncio.Event()
        self._listeners: List[PhaseListener] = list(listeners or [])
        self._phase: Optional[Phase] = None
        self._closed = False

    @property
    def is_canceled(self) -> bool:
        """Return True once cancellation has been requested."""
        return self._event.is_set()

    @property
    def is_closed(self) -> bool:
        """Return True once the batch owning the token has finished."""
        return self._closed

    @property
    def phase(self) -> Optional[Phase]:
        """Return the last announced phase, None before the batch starts."""
        return self._phase

    def begin(self) -> None:
        """Announce the RUNNING phase."""
        if self._phase is None:
            self._announce(Phase.RUNNING)

    def cancel(self) -> bool:
        """Request cancellation; return True only for the call that fired it."""
        if self._event.is_set() or self._closed:
            return False
        logger.info("Starting cancellation of in-flight query executions")
        self._event.set()
        self._announce(Phase.CANCELING)
        return True

    def close(self) -> None:
        """Mark the batch finished; later ``cancel`` calls do nothing.

        No phase is announced.
        """
        self._closed = True

    async def wait(self) -> None:
        """Block until cancellation is requested."""
        await self._event.wait()

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; return True if woken early by cancellation."""
        if self._event.is_set():
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    def _announce(self, phase: Phase) -> None:
        self._phase = phase
        for listener in self._listeners:
            try:
                listener.on_phase_change(phase)
            except Exception as exc:
                logger.warning("Phase listener failed on %s: %s", phase.value, exc)


class CancellationBridge:
    """Route OS interrupts on the running event loop to a cancellation token."""

    def __init__(
        self,
        token: CancellationToken,
        signals: Sequence[signal.Signals] = (signal.SIGINT,),
    ) -> None:
        """Bind the bridge to one token; install it with ``async with``."""
        self._token = token
        self._signals = tuple(signals)
        self._installed: List[signal.Signals] = []
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._fired = False

    @property
    def fired(self) -> bool:
        """Return True once the bridge has converted an interrupt."""
        return self._fired

    def install(self) -> None:
        """Register signal handlers on the running loop where supported."""
        self._loop = asyncio.get_running_loop()
        for sig in self._signals:
            try:
                self._loop.add_signal_handler(sig, self.interrupt)
            except (NotImplementedError, RuntimeError, ValueError) as exc:
                # Windows loops and non-main threads cannot install handlers.
                logger.debug("Signal handler for %s not installed: %s", sig, exc)
                continue
            self._installed.append(sig)

    def uninstall(self) -> None:
        """Remove the handlers, restoring default interrupt behaviour."""
        if self._loop is None:
            return
        for sig in self._installed:
            self._loop.remove_signal_handler(sig)
        self._installed.clear()

    def interrupt(self) -> bool:
        """Fire the token on the first interrupt; ignore repeats."""
        if self._fired:
            logger.debug("Ignoring repeated interrupt; cancellation already in progress")
            return False
        self._fired = True
        return self._token.cancel()

    async def __aenter__(self) -> "CancellationBridge":
        """Install the handlers for the duration of a run."""
        self.install()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        """Uninstall the handlers."""
        self.uninstall()
