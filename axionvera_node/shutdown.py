"""Graceful shutdown: OS signal listening, a shared shutdown state and a grace period."""

from __future__ import annotations

import asyncio
import enum
import logging
import signal
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

logger = logging.getLogger(__name__)


class ShutdownError(Exception):
    """Raised when a shutdown signal cannot be delivered."""


class ShutdownSignal(enum.Enum):
    SIGTERM = "SigTerm"
    SIGINT = "SigInt"
    SIGQUIT = "SigQuit"
    TIMEOUT = "Timeout"
    MANUAL = "Manual"


_OS_SIGNALS = (
    ("SIGTERM", ShutdownSignal.SIGTERM),
    ("SIGINT", ShutdownSignal.SIGINT),
    ("SIGQUIT", ShutdownSignal.SIGQUIT),
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _remaining(grace_period: timedelta, start: Optional[datetime]) -> timedelta:
    if start is None:
        return grace_period
    elapsed = _utc_now() - start
    return max(grace_period - elapsed, timedelta(0))


def _as_timedelta(value: Union[timedelta, float]) -> timedelta:
    period = value if isinstance(value, timedelta) else timedelta(seconds=value)
    if period < timedelta(0):
        raise ValueError("grace period must not be negative")
    return period


@dataclass(frozen=True)
class ShutdownInfo:
    is_shutting_down: bool
    shutdown_start_time: Optional[datetime]
    signal_received: Optional[ShutdownSignal]
    grace_period: timedelta

    def elapsed_time(self) -> Optional[timedelta]:
        """Time since shutdown began, or None before it has."""
        if self.shutdown_start_time is None:
            return None
        return _utc_now() - self.shutdown_start_time

    def remaining_time(self) -> timedelta:
        """What is left of the grace period, never below zero."""
        return _remaining(self.grace_period, self.shutdown_start_time)


class ShutdownHandler:
    """Records the first shutdown request and fans it out to every subscriber."""

    def __init__(self, grace_period: Union[timedelta, float]) -> None:
        self.grace_period = _as_timedelta(grace_period)
        self._subscribers: list[asyncio.Queue[ShutdownSignal]] = []
        self._shutting_down = False
        self._start_time: Optional[datetime] = None
        self._signal: Optional[ShutdownSignal] = None

    def subscribe(self) -> asyncio.Queue[ShutdownSignal]:
        """A queue that will receive every shutdown signal sent from now on."""
        queue: asyncio.Queue[ShutdownSignal] = asyncio.Queue()
        self._subscribers.append(queue)
        return queue

    async def start(self) -> asyncio.Queue[ShutdownSignal]:
        """Listen for SIGTERM, SIGINT and SIGQUIT and return a subscription."""
        loop = asyncio.get_running_loop()
        for name, kind in _OS_SIGNALS:
            signum = getattr(signal, name, None)
            if signum is None:
                logger.error("Failed to setup %s handler: not available on this platform", name)
                continue
            try:
                loop.add_signal_handler(signum, self._on_os_signal, kind)
            except (NotImplementedError, RuntimeError, ValueError) as exc:
                logger.error("Failed to setup %s handler: %s", name, exc)
            else:
                logger.info("Listening for %s signal", name)
        return self.subscribe()

    def _on_os_signal(self, kind: ShutdownSignal) -> None:
        logger.info("%s received", kind.name)
        if self._begin(kind):
            self._send(kind)

    def _begin(self, kind: ShutdownSignal) -> bool:
        if self._shutting_down:
            return False
        self._shutting_down = True
        self._start_time = _utc_now()
        self._signal = kind
        return True

    def _send(self, kind: ShutdownSignal) -> int:
        for queue in self._subscribers:
            queue.put_nowait(kind)
        return len(self._subscribers)

    async def trigger_shutdown(self, signal: ShutdownSignal) -> None:
        """Start shutdown by hand; a second request while shutting down is ignored."""
        if not self._begin(signal):
            logger.warning("Shutdown already in progress")
            return
        logger.info("Triggering manual shutdown: %s", signal.name)
        if self._send(signal) == 0:
            raise ShutdownError("Failed to send shutdown signal: no subscribers")

    def is_shutting_down(self) -> bool:
        return self._shutting_down

    def shutdown_info(self) -> ShutdownInfo:
        return ShutdownInfo(
            is_shutting_down=self._shutting_down,
            shutdown_start_time=self._start_time,
            signal_received=self._signal,
            grace_period=self.grace_period,
        )

    def remaining_grace_period(self) -> timedelta:
        """The full grace period before shutdown, then what is left of it."""
        return _remaining(self.grace_period, self._start_time)