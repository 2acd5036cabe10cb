"""Configuration handling for scribed daemon."""

import getpass
import os
import tomllib
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


def get_default_config_path() -> Path:
    """Get the default config file path following XDG spec."""
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base_dir = Path(xdg_config)
    else:
        base_dir = Path.home() / ".config"

    return base_dir / "scribe" / "config.toml"


def get_default_socket_path() -> Path:
    """Get the default socket path following XDG spec."""
    xdg_runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if xdg_runtime_dir:
        sock_dir = Path(xdg_runtime_dir) / "scribe"
        try:
            sock_dir.mkdir(parents=True, exist_ok=True)
            if not os.access(sock_dir, os.W_OK | os.X_OK):
                raise OSError("Insufficient permissions for XDG runtime dir.")
            return sock_dir / "daemon.sock"
        except (OSError, PermissionError) as e:
            print(
                f"Warning: Could not use XDG_RUNTIME_DIR ({e}), falling back to /tmp."
            )

    uid = getpass.getuser()
    return Path(f"/tmp/scribe-{uid}.sock")


def get_default_log_path() -> Path:
    """Get the default log file path following XDG spec."""
    xdg_state = os.environ.get("XDG_STATE_HOME")
    if xdg_state:
        base_dir = Path(xdg_state)
    else:
        base_dir = Path.home() / ".local" / "state"

    log_dir = base_dir / "scribe"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / "scribed.log"


def get_default_data_dir() -> Path:
    """Get the default session storage directory following XDG spec."""
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        base_dir = Path(xdg_data)
    else:
        base_dir = Path.home() / ".local" / "share"

    return base_dir / "scribe"


class AudioConfig(BaseModel):
    """Microphone capture and level metering configuration."""

    target: str = Field(
        default="auto", description="PipeWire node to record from (auto = default)."
    )
    sample_rate: int = Field(
        default=48000, gt=0, description="Capture sample rate in Hz."
    )
    channels: int = Field(default=1, ge=1, le=8, description="Capture channel count.")
    read_size: int = Field(
        default=4096, gt=0, description="Bytes read from the capture device per chunk."
    )
    level_window: int = Field(
        default=2048, gt=0, description="Samples used for each level meter reading."
    )
    level_gain: float = Field(
        default=1.5, gt=0, description="Gain applied to the RMS level before clamping."
    )
    frame_rate_hz: float = Field(
        default=60.0, gt=0, description="Refresh rate of the meter and timers."
    )


class WhisperConfig(BaseModel):
    """Whisper model configuration."""

    model: str = Field(
        default="small",
        description="Whisper model identifier or local model directory.",
    )
    device: str = Field(
        default="auto", description="Device for inference (auto, cpu, cuda)."
    )
    compute_type: str = Field(
        default="auto",
        description="Compute type for inference (auto, float32, float16, int8).",
    )
    beam_size: int = Field(
        default=1,
        ge=1,
        description="Beam size for search (1 = greedy decoding).",
    )
    cpu_threads: int = Field(
        default=0, ge=0, description="Number of CPU threads for inference (0 = auto)."
    )

    @field_validator("model")
    @classmethod
    def check_model_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("Whisper model identifier cannot be empty")
        return v


class StorageConfig(BaseModel):
    """Session storage configuration."""

    data_dir: Optional[Path] = Field(
        default=None, description="Optional custom directory for stored sessions."
    )

    @property
    def computed_data_dir(self) -> Path:
        return self.data_dir or get_default_data_dir()


class DaemonConfig(BaseModel):
    """Daemon runtime configuration."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).",
    )
    log_file: Optional[Path] = Field(
        default=None, description="Optional custom log file path."
    )
    socket_path: Optional[Path] = Field(
        default=None, description="Optional custom socket path for IPC."
    )
    language: Literal["en", "zh"] = Field(
        default="zh", description="Default transcription language."
    )

    @field_validator("log_level")
    @classmethod
    def check_log_level(cls, v: str) -> str:
        allowed_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in allowed_levels:
            raise ValueError(f"Invalid log level. Choose from {allowed_levels}")
        return upper_v

    @property
    def computed_log_file(self) -> Path:
        return self.log_file or get_default_log_path()

    @property
    def computed_socket_path(self) -> Path:
        return self.socket_path or get_default_socket_path()


class AppConfig(BaseModel):
    """Root configuration."""

    audio: AudioConfig = Field(default_factory=AudioConfig)
    whisper: WhisperConfig = Field(default_factory=WhisperConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load and validate configuration.

    If path is not provided, looks for config in standard locations.
    If no config file is found, returns default configuration.

    Args:
        path: Optional path to config file.

    Returns:
        Validated AppConfig instance.

    Raises:
        ValueError: If config file exists but has invalid format/content.
        OSError: If config file exists but can't be read.
    """
    if path is None:
        path = get_default_config_path()

    if not path.exists():
        return AppConfig()

    try:
        with open(path, "rb") as f:
            config_data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Error decoding TOML file: {path}\n{e}") from e
    except OSError as e:
        raise OSError(f"Error reading file: {path}\n{e}") from e

    try:
        return AppConfig(**config_data)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}") from e
