"""Microphone capture devices."""

import asyncio
import logging
from typing import Optional, Protocol

from .config import AudioConfig
from .errors import DeviceUnavailable

logger = logging.getLogger(__name__)

AUDIO_FORMAT = "s16"  # Signed 16-bit, interleaved

# Maximum time to wait for the recorder process to exit
TERMINATE_TIMEOUT_S = 2.0


class CaptureDevice(Protocol):
    """A source of raw audio chunks.

    open() starts delivering chunks onto the queue in arrival order.
    close() is idempotent; once it returns, every chunk read from the
    hardware is already on the queue.
    """

    sample_rate: int
    channels: int

    async def open(self, chunk_queue: asyncio.Queue) -> None: ...

    async def close(self) -> None: ...


class PWRecordDevice:
    """Captures audio using a pw-record subprocess."""

    def __init__(self, config: AudioConfig):
        """Initialize the capture device.

        Args:
            config: Audio section of the application configuration.
        """
        self.target = config.target
        self.sample_rate = config.sample_rate
        self.channels = config.channels
        self.read_size = config.read_size

        self._process: Optional[asyncio.subprocess.Process] = None
        self._reader_task: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return self._process is not None

    def _command(self) -> list:
        return [
            "pw-record",
            f"--target={self.target}",
            f"--rate={self.sample_rate}",
            f"--format={AUDIO_FORMAT}",
            f"--channels={self.channels}",
            "-",
        ]

    async def _read_audio_stream(self, chunk_queue: asyncio.Queue) -> None:
        """Reads audio data from the subprocess stdout."""
        if not self._process or not self._process.stdout:
            logger.error("Audio process or stdout not available for reading.")
            return

        logger.info("Audio reader task started.")
        try:
            while True:
                data = await self._process.stdout.read(self.read_size)
                if not data:
                    logger.info("pw-record stdout stream ended.")
                    break
                chunk_queue.put_nowait(data)
        except asyncio.CancelledError:
            logger.info("Audio reader task cancelled.")
        except Exception as e:
            logger.exception(f"Error in audio reader task: {e}")
        finally:
            logger.info("Audio reader task finished.")

    async def open(self, chunk_queue: asyncio.Queue) -> None:
        """Spawn pw-record and start forwarding its output.

        Raises:
            DeviceUnavailable: If pw-record is missing or cannot be started.
        """
        if self._process is not None:
            raise DeviceUnavailable("Capture device is already open")

        logger.info(
            f"Opening pw-record capture (Target: {self.target}, "
            f"Rate: {self.sample_rate}, Channels: {self.channels})"
        )
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._command(),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError as e:
            logger.error(
                "'pw-record' command not found. Please ensure PipeWire is installed."
            )
            raise DeviceUnavailable("pw-record not found") from e
        except OSError as e:
            logger.exception("Failed to start pw-record process.")
            raise DeviceUnavailable(f"Cannot open capture device: {e}") from e

        logger.info(f"Started pw-record process with PID: {self._process.pid}")
        self._reader_task = asyncio.create_task(self._read_audio_stream(chunk_queue))

    async def close(self) -> None:
        """Terminate pw-record and wait for the reader to flush."""
        process, reader_task = self._process, self._reader_task
        self._process = None
        self._reader_task = None
        if process is None:
            return

        if process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=TERMINATE_TIMEOUT_S)
                logger.info("pw-record process terminated.")
            except asyncio.TimeoutError:
                logger.warning("Timeout waiting for pw-record to terminate, killing.")
                process.kill()
            except ProcessLookupError:
                logger.debug("pw-record already exited.")

        # The reader ends on EOF once the process is gone
        if reader_task is not None and not reader_task.done():
            try:
                await asyncio.wait_for(reader_task, timeout=TERMINATE_TIMEOUT_S)
            except asyncio.TimeoutError:
                logger.warning("Audio reader did not finish, cancelling.")
                reader_task.cancel()
                try:
                    await reader_task
                except asyncio.CancelledError:
                    logger.debug("Audio reader task successfully cancelled.")
