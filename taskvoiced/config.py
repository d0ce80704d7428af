"""Configuration handling for taskvoiced daemon."""

import getpass
import os
import tomllib
from pathlib import Path
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

from .models import ModelSize

APP_DIR_NAME = "taskvoice"


def get_default_config_path() -> Path:
    """Get the default config file path following XDG spec."""
    xdg_config = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config:
        base_dir = Path(xdg_config)
    else:
        base_dir = Path.home() / ".config"

    return base_dir / APP_DIR_NAME / "config.toml"


def get_default_socket_path() -> Path:
    """Get the default socket path following XDG spec."""
    xdg_runtime_dir = os.environ.get("XDG_RUNTIME_DIR")
    if xdg_runtime_dir:
        sock_dir = Path(xdg_runtime_dir) / APP_DIR_NAME
        try:
            sock_dir.mkdir(parents=True, exist_ok=True)
            if not os.access(sock_dir, os.W_OK | os.X_OK):
                raise OSError("Insufficient permissions for XDG runtime dir.")
            return sock_dir / "daemon.sock"
        except (OSError, PermissionError) as e:
            print(
                f"Warning: Could not use XDG_RUNTIME_DIR ({e}), falling back to /tmp."
            )

    # Fallback if XDG_RUNTIME_DIR not set or unusable
    uid = getpass.getuser()
    return Path(f"/tmp/{APP_DIR_NAME}-{uid}.sock")


def get_default_log_path() -> Path:
    """Get the default log file path following XDG spec."""
    xdg_state = os.environ.get("XDG_STATE_HOME")
    if xdg_state:
        base_dir = Path(xdg_state)
    else:
        base_dir = Path.home() / ".local" / "state"

    log_dir = base_dir / APP_DIR_NAME
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir / "taskvoiced.log"


def get_default_data_dir() -> Path:
    """Get the default data directory following XDG spec."""
    xdg_data = os.environ.get("XDG_DATA_HOME")
    if xdg_data:
        base_dir = Path(xdg_data)
    else:
        base_dir = Path.home() / ".local" / "share"

    return base_dir / APP_DIR_NAME


class AudioConfig(BaseModel):
    """Audio capture configuration."""

    device: Optional[Union[int, str]] = Field(
        default=None,
        description="Input device index or name substring (empty for system default).",
    )
    min_duration_s: float = Field(
        default=0.3, ge=0, description="Recordings shorter than this are rejected."
    )
    min_peak: float = Field(
        default=0.01,
        ge=0.0,
        le=1.0,
        description="Recordings whose peak amplitude stays below this are rejected.",
    )


class WhisperConfig(BaseModel):
    """Whisper model configuration."""

    model: ModelSize = Field(
        default=ModelSize.BASE,
        description="Model size (tiny, base, small, medium, large).",
    )
    device: str = Field(
        default="auto", description="Device for inference (auto, cpu, cuda)."
    )
    compute_type: str = Field(
        default="auto",
        description="Compute type for inference (auto, float32, float16, int8).",
    )
    language: Optional[str] = Field(
        default="en", description="Language hint passed to Whisper (empty for auto-detect)."
    )
    beam_size: int = Field(
        default=5,
        ge=1,
        description="Beam size for search (1-10, higher is slower but more accurate).",
    )
    cpu_threads: int = Field(
        default=0, ge=0, description="Number of CPU threads for inference (0 = auto)."
    )
    vad_filter: bool = Field(
        default=True, description="Let faster-whisper drop silent stretches."
    )

    @field_validator("model", mode="before")
    @classmethod
    def parse_model(cls, v):
        if isinstance(v, str):
            return ModelSize.parse(v)
        return v

    @field_validator("language")
    @classmethod
    def empty_language_is_auto(cls, v: Optional[str]) -> Optional[str]:
        return v or None


class SmartParserConfig(BaseModel):
    """Optional Ollama-backed transcript parser."""

    enabled: bool = Field(default=False, description="Consult Ollama before the local parser.")
    base_url: str = Field(
        default="http://localhost:11434", description="Ollama server URL."
    )
    model: str = Field(default="llama3.2", description="Ollama model name.")
    connect_timeout_s: float = Field(
        default=3.0, gt=0, description="Timeout for the availability check (s)."
    )
    request_timeout_s: float = Field(
        default=15.0, gt=0, description="Timeout for the generation request (s)."
    )


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
    models_dir: Optional[Path] = Field(
        default=None, description="Optional directory holding downloaded models."
    )
    database_path: Optional[Path] = Field(
        default=None, description="Optional path of the task database."
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

    @property
    def computed_models_dir(self) -> Path:
        return self.models_dir or get_default_data_dir() / "models"

    @property
    def computed_database_path(self) -> Path:
        return self.database_path or get_default_data_dir() / "tasks.db"


class AppConfig(BaseModel):
    """Root configuration."""

    audio: AudioConfig = Field(default_factory=AudioConfig)
    whisper: WhisperConfig = Field(default_factory=WhisperConfig)
    smart_parser: SmartParserConfig = Field(default_factory=SmartParserConfig)
    daemon: DaemonConfig = Field(default_factory=DaemonConfig)


def apply_env_overrides(config: AppConfig) -> AppConfig:
    """Apply the Ollama environment variables on top of file settings."""
    use_ollama = os.environ.get("USE_OLLAMA")
    if use_ollama is not None:
        config.smart_parser.enabled = use_ollama.strip().lower() in ("1", "true", "yes")

    ollama_url = os.environ.get("OLLAMA_URL")
    if ollama_url:
        config.smart_parser.base_url = ollama_url

    ollama_model = os.environ.get("OLLAMA_MODEL")
    if ollama_model:
        config.smart_parser.model = ollama_model

    return config


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
        return apply_env_overrides(AppConfig())  # Use defaults

    try:
        with open(path, "rb") as f:
            config_data = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Error decoding TOML file: {path}\n{e}") from e
    except OSError as e:
        raise OSError(f"Error reading file: {path}\n{e}") from e

    try:
        config = AppConfig(**config_data)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}")

    return apply_env_overrides(config)
