"""Configuration handling for speechcmd."""

import os
import sys
import tomllib
from pathlib import Path
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


def get_default_config_path() -> Path:
    """Get the default config file path following XDG spec."""
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base_dir = Path(xdg_config)
    else:
        base_dir = Path.home() / ".config"

    return base_dir / "speechcmd" / "config.toml"


def get_default_data_dir() -> Path:
    """Get the platform data directory that holds the Whisper/ model folder."""
    if sys.platform == "win32":
        local_app_data = os.environ.get("LOCALAPPDATA")
        if local_app_data:
            return Path(local_app_data) / "speechcmd"
        return Path.home() / "AppData" / "Local" / "speechcmd"

    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        base_dir = Path(xdg_data)
    else:
        base_dir = Path.home() / ".local" / "share"

    return base_dir / "speechcmd"


def get_default_fifo_path() -> Path:
    """Get the default named pipe path for the audio transport."""
    xdg_runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if xdg_runtime_dir:
        return Path(xdg_runtime_dir) / "speechcmd" / "audio.pipe"
    return Path(f"/tmp/speechcmd-{os.getpid()}.pipe")


def get_default_log_path() -> Path:
    """Get the default log file path following XDG spec."""
    xdg_state = os.environ.get("XDG_STATE_HOME")
    if xdg_state:
        base_dir = Path(xdg_state)
    else:
        base_dir = Path.home() / ".local" / "state"

    log_dir = base_dir / "speechcmd"
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / "speechcmd.log"


class AudioConfig(BaseModel):
    """Microphone capture configuration."""

    enabled: bool = Field(
        default=True, description="Start the speech pipeline at all."
    )
    device_index: int = Field(
        default=0, description="Index into the list of input devices."
    )
    sample_rate: int = Field(default=48000, gt=0, description="Capture rate (Hz).")
    channels: int = Field(default=2, ge=1, le=2, description="Capture channels.")
    buffer_seconds: int = Field(
        default=10, gt=0, description="Length of the looping capture buffer (s)."
    )
    chunk_frames: int = Field(
        default=1024, gt=0, description="Frames per transport write."
    )
    first_sample_timeout_s: float = Field(
        default=2.0,
        ge=0,
        description="How long to wait for the device to deliver its first samples.",
    )

    @model_validator(mode="after")
    def check_chunk_fits_buffer(self) -> "AudioConfig":
        if self.chunk_frames >= self.buffer_seconds * self.sample_rate:
            raise ValueError("chunk_frames must be smaller than the capture buffer")
        return self


class WhisperConfig(BaseModel):
    """External ffmpeg/whisper process configuration."""

    binary: str = Field(default="ffmpeg", description="ffmpeg executable.")
    model_file: str = Field(
        default="ggml-medium.en.bin", description="Whisper model file name."
    )
    model_dir: Optional[Path] = Field(
        default=None,
        description="Directory containing the Whisper/ model folder.",
    )
    model_source_dir: Optional[Path] = Field(
        default=None,
        description="Optional Whisper/ folder to copy the model from when missing.",
    )
    language: str = Field(default="en", description="Recognition language.")
    queue_seconds: int = Field(
        default=3, ge=1, description="Seconds of audio the filter queues per pass."
    )
    version_timeout_s: float = Field(
        default=5.0, gt=0, description="Timeout for the '-version' preflight query."
    )

    @field_validator("binary", "model_file")
    @classmethod
    def check_not_empty(cls, v: str) -> str:
        if not v:
            raise ValueError("Value cannot be empty")
        return v

    @property
    def computed_model_dir(self) -> Path:
        return self.model_dir or get_default_data_dir()

    @property
    def model_path(self) -> Path:
        return self.computed_model_dir / "Whisper" / self.model_file


class TransportConfig(BaseModel):
    """How encoded audio reaches the external process."""

    kind: Literal["stdin", "fifo"] = Field(
        default="stdin", description="Write to process stdin or to a named pipe."
    )
    fifo_path: Optional[Path] = Field(
        default=None, description="Optional custom named pipe path."
    )
    open_timeout_s: float = Field(
        default=5.0, gt=0, description="Timeout for the reader to open the pipe."
    )

    @property
    def computed_fifo_path(self) -> Path:
        return self.fifo_path or get_default_fifo_path()


class PipelineConfig(BaseModel):
    """Capture loop and shutdown timing."""

    tick_interval_s: float = Field(
        default=0.01, gt=0, description="Sleep between capture loop ticks (s)."
    )
    max_chunks_per_tick: int = Field(
        default=1, ge=1, description="Upper bound on chunks drained per tick."
    )
    shutdown_grace_s: float = Field(
        default=3.0, ge=0, description="Grace period before force-killing ffmpeg."
    )


class VocabularyConfig(BaseModel):
    """Word lists that turn transcriptions into commands.

    The homophone lists are tuned to one deployment. Change them only
    against a set of labelled recordings.
    """

    affirmative_exact: List[str] = Field(default_factory=lambda: ["one", "1"])
    affirmative_contains: List[str] = Field(
        default_factory=lambda: ["one", "won", "want", "juan", "bye"]
    )
    negative_exact: List[str] = Field(default_factory=lambda: ["two", "2"])
    negative_contains: List[str] = Field(
        default_factory=lambda: ["two", "too", "thank you"]
    )
    denylist: List[str] = Field(
        default_factory=lambda: [
            "static",
            "noise",
            "breathing",
            "silence",
            "clicking",
            "crackling",
            "blank_audio",
            "music",
            "inaudible",
        ]
    )

    @field_validator(
        "affirmative_exact",
        "affirmative_contains",
        "negative_exact",
        "negative_contains",
        "denylist",
    )
    @classmethod
    def lowercase_entries(cls, v: List[str]) -> List[str]:
        return [entry.lower() for entry in v if entry]


class DaemonConfig(BaseModel):
    """Daemon runtime configuration."""

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).",
    )
    log_file: Optional[Path] = Field(
        default=None, description="Optional custom log file path."
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


class AppConfig(BaseModel):
    """Root configuration."""

    audio: AudioConfig = Field(default_factory=AudioConfig)
    whisper: WhisperConfig = Field(default_factory=WhisperConfig)
    transport: TransportConfig = Field(default_factory=TransportConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    vocabulary: VocabularyConfig = Field(default_factory=VocabularyConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)


def load_config(path: Optional[Path] = None) -> AppConfig:
    """Load and validate configuration.

    If path is not provided, looks for config in the standard location.
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
        raise ValueError(f"Configuration validation failed: {e}")
