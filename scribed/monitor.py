"""Live input level meter."""

import logging
import time
from typing import Callable, Optional

import numpy as np

from .frames import FrameClock, FrameTicker
from .models import RecordingSession

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SIZE = 2048
DEFAULT_LEVEL_GAIN = 1.5


def compute_level(samples: np.ndarray, gain: float = DEFAULT_LEVEL_GAIN) -> float:
    """Compute a display level in [0, 1] from time-domain samples.

    Samples are normalized to their native range before taking the RMS:
    unsigned 8-bit around 128, signed 16-bit over 32768, floats as is.

    Args:
        samples: Time-domain samples.
        gain: Empirical multiplier applied to the RMS.

    Returns:
        The clamped, scaled RMS level.
    """
    if samples.size == 0:
        return 0.0

    if samples.dtype == np.uint8:
        normalized = (samples.astype(np.float64) - 128.0) / 128.0
    elif samples.dtype == np.int16:
        normalized = samples.astype(np.float64) / 32768.0
    else:
        normalized = samples.astype(np.float64)

    rms = float(np.sqrt(np.mean(normalized * normalized)))
    return min(1.0, max(0.0, rms * gain))


class SignalMonitor:
    """Meters the most recent window of captured samples once per frame."""

    def __init__(
        self,
        frames: FrameClock,
        window_size: int = DEFAULT_WINDOW_SIZE,
        gain: float = DEFAULT_LEVEL_GAIN,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window_size = window_size
        self.gain = gain

        self._window = np.zeros(0, dtype=np.int16)
        self._session: Optional[RecordingSession] = None
        self._ticker = FrameTicker(frames, self._on_tick, clock)

    @property
    def is_running(self) -> bool:
        return self._ticker.is_live

    def feed(self, samples: np.ndarray) -> None:
        """Append newly captured samples to the metering window."""
        if samples.size == 0:
            return
        if samples.dtype != self._window.dtype:
            self._window = self._window.astype(samples.dtype)
        window = np.concatenate((self._window, samples))
        self._window = window[-self.window_size :]

    def start(self, session: RecordingSession) -> None:
        """Start metering into the given recording session."""
        if self._ticker.is_live:
            self.stop()

        logger.debug("Signal monitor started")
        self._session = session
        self._window = np.zeros(0, dtype=np.int16)
        session.elapsed_seconds = 0.0
        session.start_timestamp = self._ticker.start()

    def _on_tick(self, elapsed: float) -> None:
        session = self._session
        if session is None:
            return
        session.audio_level = compute_level(self._window, self.gain)
        session.elapsed_seconds = elapsed

    def stop(self) -> None:
        """Stop metering; the session keeps its final elapsed time."""
        elapsed = self._ticker.stop()
        session = self._session
        self._session = None
        self._window = np.zeros(0, dtype=np.int16)

        if session is not None:
            if elapsed is not None:
                session.elapsed_seconds = elapsed
            session.audio_level = 0.0
            logger.debug(f"Signal monitor stopped after {session.elapsed_seconds:.2f}s")
