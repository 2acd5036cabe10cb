"""Frame-driven scheduling for the level meter and elapsed-time tickers.

Repeating work runs as "do work, then request the next frame if still live".
The daemon paces frames off the event loop; tests pump frames by hand.
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional, Protocol

logger = logging.getLogger(__name__)


class FrameHandle(Protocol):
    def cancel(self) -> None: ...


class FrameClock(Protocol):
    """Source of display-refresh style frame callbacks."""

    def request_frame(self, callback: Callable[[], None]) -> FrameHandle: ...


class LoopFrameClock:
    """Schedules frames on the running asyncio loop at a fixed refresh rate."""

    def __init__(self, fps: float = 60.0):
        if fps <= 0:
            raise ValueError("fps must be positive")
        self.interval = 1.0 / fps

    def request_frame(self, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(self.interval, callback)


class _ManualHandle:
    def __init__(self, callback: Callable[[], None]):
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualFrameClock:
    """Frame pump driven explicitly, for deterministic tests."""

    def __init__(self):
        self._pending: List[_ManualHandle] = []

    @property
    def pending(self) -> int:
        """Number of live callbacks waiting for the next frame."""
        return sum(1 for handle in self._pending if not handle.cancelled)

    def request_frame(self, callback: Callable[[], None]) -> _ManualHandle:
        handle = _ManualHandle(callback)
        self._pending.append(handle)
        return handle

    def advance(self, frames: int = 1) -> None:
        """Run the given number of frames.

        Callbacks requested while a frame runs are deferred to the next one.
        """
        for _ in range(frames):
            due, self._pending = self._pending, []
            for handle in due:
                if not handle.cancelled:
                    handle.callback()


class FrameTicker:
    """Reports the monotonic time elapsed since start() on every frame."""

    def __init__(
        self,
        frames: FrameClock,
        on_tick: Callable[[float], None],
        clock: Callable[[], float] = time.monotonic,
    ):
        self.frames = frames
        self.on_tick = on_tick
        self.clock = clock

        self._live = False
        self._started_at: Optional[float] = None
        self._handle: Optional[FrameHandle] = None

    @property
    def is_live(self) -> bool:
        return self._live

    @property
    def started_at(self) -> Optional[float]:
        return self._started_at

    def elapsed(self) -> Optional[float]:
        if self._started_at is None:
            return None
        return self.clock() - self._started_at

    def start(self) -> float:
        """Start ticking; the first tick runs immediately.

        Returns:
            The monotonic start timestamp.
        """
        self.reset()
        self._started_at = self.clock()
        self._live = True
        self._step()
        return self._started_at

    def _step(self) -> None:
        # A frame may still fire after stop() when cancellation lost the race
        if not self._live:
            return
        elapsed = self.elapsed()
        if elapsed is not None:
            self.on_tick(elapsed)
        if self._live:
            self._handle = self.frames.request_frame(self._step)

    def _halt(self) -> None:
        self._live = False
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def stop(self) -> Optional[float]:
        """Stop ticking.

        Returns:
            Seconds elapsed since start(), or None if the ticker was not started.
        """
        elapsed = self.elapsed()
        self._halt()
        self._started_at = None
        return elapsed

    def reset(self) -> None:
        """Stop ticking and forget the start time."""
        self._halt()
        self._started_at = None
