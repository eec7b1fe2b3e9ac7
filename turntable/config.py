"""
Configuration management for turntable.

Reads configuration from an optional .env file and TURNTABLE_* environment
variables, with defaults suited to a desktop player driving a local mpv.
"""

import logging
import os
import shlex
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv


# Default .env file location
DEFAULT_ENV_FILE = Path("~/.config/turntable/turntable.env").expanduser()

logger = logging.getLogger(__name__)


def _load_env_file() -> None:
    """Load environment variables from .env file if it exists."""
    env_file = os.getenv("TURNTABLE_ENV_FILE", str(DEFAULT_ENV_FILE))
    env_path = Path(env_file).expanduser()

    if env_path.exists():
        load_dotenv(env_path, override=False)  # Don't override existing env vars
        logger.debug(f"Loaded environment from {env_path}")


def _parse_backoff_schedule(backoff_str: str) -> List[int]:
    """
    Parse a backoff schedule from a comma-separated string.

    Args:
        backoff_str: Comma-separated list of milliseconds (e.g., "1000,2000,4000")

    Returns:
        List of backoff delays in milliseconds

    Raises:
        ValueError: If parsing fails or values are invalid
    """
    if not backoff_str:
        raise ValueError("Backoff schedule cannot be empty")

    try:
        delays = [int(x.strip()) for x in backoff_str.split(",")]
        if not delays:
            raise ValueError("Backoff schedule must contain at least one value")
        if any(d <= 0 for d in delays):
            raise ValueError("All backoff delays must be positive")
        return delays
    except ValueError as e:
        if "invalid literal" in str(e) or "could not convert" in str(e):
            raise ValueError(f"Invalid backoff schedule format: {backoff_str} (must be comma-separated integers)")
        raise


def _env_int(name: str, default: str) -> int:
    value = os.getenv(name, default)
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value} (must be an integer)")


def _env_float(name: str, default: str) -> float:
    value = os.getenv(name, default)
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Invalid {name}: {value} (must be a number)")


@dataclass
class TurntableConfig:
    """turntable configuration loaded from .env file and environment variables."""

    # Engine process
    engine_binary: str = "mpv"
    engine_extra_args: List[str] = field(default_factory=list)
    socket_dir: Optional[str] = None  # None = system temp dir
    demuxer_max_bytes: str = "64MiB"
    demuxer_readahead_secs: int = 30
    kill_timeout_sec: float = 2.0

    # Control socket connection
    connect_initial_delay_sec: float = 0.2
    connect_max_backoff_sec: float = 8.0
    connect_max_retries: int = 15
    connect_timeout_sec: float = 1.0
    request_timeout_sec: float = 10.0

    # Health checks and watchdogs
    health_check_timeout_sec: float = 5.0
    health_retry_backoff_sec: float = 1.0
    file_load_timeout_sec: float = 20.0
    stall_check_interval_sec: float = 5.0
    stall_max_polls: int = 3

    # Recovery
    recovery_settle_sec: float = 0.5
    recovery_ready_timeout_sec: float = 10.0
    recovery_unpause_delay_sec: float = 0.2
    recovery_backoff_ms: List[int] = field(
        default_factory=lambda: [1000, 2000, 4000, 8000]
    )
    recovery_max_attempts: int = 5

    # Engine-native volume range (set_volume takes 0.0-1.0)
    volume_scale: float = 100.0

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def load_config(cls) -> "TurntableConfig":
        """
        Load configuration from environment variables.

        Returns:
            TurntableConfig instance with loaded values

        Raises:
            ValueError: If configuration is invalid
        """
        # Load .env file first (if it exists)
        _load_env_file()

        # Engine process
        engine_binary = os.getenv("TURNTABLE_ENGINE_BINARY", "mpv")
        engine_extra_args = shlex.split(os.getenv("TURNTABLE_ENGINE_EXTRA_ARGS", ""))
        socket_dir = os.getenv("TURNTABLE_SOCKET_DIR") or None
        demuxer_max_bytes = os.getenv("TURNTABLE_DEMUXER_MAX_BYTES", "64MiB")
        demuxer_readahead_secs = _env_int("TURNTABLE_DEMUXER_READAHEAD_SECS", "30")
        kill_timeout_sec = _env_float("TURNTABLE_KILL_TIMEOUT_SEC", "2.0")

        # Control socket connection
        connect_initial_delay_sec = _env_float("TURNTABLE_CONNECT_INITIAL_DELAY_SEC", "0.2")
        connect_max_backoff_sec = _env_float("TURNTABLE_CONNECT_MAX_BACKOFF_SEC", "8.0")
        connect_max_retries = _env_int("TURNTABLE_CONNECT_MAX_RETRIES", "15")
        connect_timeout_sec = _env_float("TURNTABLE_CONNECT_TIMEOUT_SEC", "1.0")
        request_timeout_sec = _env_float("TURNTABLE_REQUEST_TIMEOUT_SEC", "10.0")

        # Health checks and watchdogs
        health_check_timeout_sec = _env_float("TURNTABLE_HEALTH_CHECK_TIMEOUT_SEC", "5.0")
        health_retry_backoff_sec = _env_float("TURNTABLE_HEALTH_RETRY_BACKOFF_SEC", "1.0")
        file_load_timeout_sec = _env_float("TURNTABLE_FILE_LOAD_TIMEOUT_SEC", "20.0")
        stall_check_interval_sec = _env_float("TURNTABLE_STALL_CHECK_INTERVAL_SEC", "5.0")
        stall_max_polls = _env_int("TURNTABLE_STALL_MAX_POLLS", "3")

        # Recovery
        recovery_settle_sec = _env_float("TURNTABLE_RECOVERY_SETTLE_SEC", "0.5")
        recovery_ready_timeout_sec = _env_float("TURNTABLE_RECOVERY_READY_TIMEOUT_SEC", "10.0")
        recovery_unpause_delay_sec = _env_float("TURNTABLE_RECOVERY_UNPAUSE_DELAY_SEC", "0.2")
        recovery_backoff_ms_str = os.getenv("TURNTABLE_RECOVERY_BACKOFF_MS", "1000,2000,4000,8000")
        try:
            recovery_backoff_ms = _parse_backoff_schedule(recovery_backoff_ms_str)
        except ValueError as e:
            raise ValueError(f"Invalid TURNTABLE_RECOVERY_BACKOFF_MS: {e}")
        recovery_max_attempts = _env_int("TURNTABLE_RECOVERY_MAX_ATTEMPTS", "5")

        volume_scale = _env_float("TURNTABLE_VOLUME_SCALE", "100")

        # Logging
        log_level = os.getenv("TURNTABLE_LOG_LEVEL", "INFO").upper()
        log_file = os.getenv("TURNTABLE_LOG_FILE") or None

        config = cls(
            engine_binary=engine_binary,
            engine_extra_args=engine_extra_args,
            socket_dir=socket_dir,
            demuxer_max_bytes=demuxer_max_bytes,
            demuxer_readahead_secs=demuxer_readahead_secs,
            kill_timeout_sec=kill_timeout_sec,
            connect_initial_delay_sec=connect_initial_delay_sec,
            connect_max_backoff_sec=connect_max_backoff_sec,
            connect_max_retries=connect_max_retries,
            connect_timeout_sec=connect_timeout_sec,
            request_timeout_sec=request_timeout_sec,
            health_check_timeout_sec=health_check_timeout_sec,
            health_retry_backoff_sec=health_retry_backoff_sec,
            file_load_timeout_sec=file_load_timeout_sec,
            stall_check_interval_sec=stall_check_interval_sec,
            stall_max_polls=stall_max_polls,
            recovery_settle_sec=recovery_settle_sec,
            recovery_ready_timeout_sec=recovery_ready_timeout_sec,
            recovery_unpause_delay_sec=recovery_unpause_delay_sec,
            recovery_backoff_ms=recovery_backoff_ms,
            recovery_max_attempts=recovery_max_attempts,
            volume_scale=volume_scale,
            log_level=log_level,
            log_file=log_file,
        )
        config.validate()
        return config

    def validate(self) -> None:
        """
        Validate configuration values.

        Raises:
            ValueError: If any value is out of range
        """
        if not self.engine_binary:
            raise ValueError("Engine binary cannot be empty")

        if self.connect_max_retries < 0:
            raise ValueError(f"Invalid connect_max_retries: {self.connect_max_retries} (must be >= 0)")

        if self.connect_max_backoff_sec < self.connect_initial_delay_sec:
            raise ValueError(
                f"connect_max_backoff_sec ({self.connect_max_backoff_sec}) must be >= "
                f"connect_initial_delay_sec ({self.connect_initial_delay_sec})"
            )

        for name in (
            "connect_timeout_sec",
            "request_timeout_sec",
            "health_check_timeout_sec",
            "file_load_timeout_sec",
            "stall_check_interval_sec",
            "recovery_ready_timeout_sec",
            "kill_timeout_sec",
            "volume_scale",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"Invalid {name}: {value} (must be > 0)")

        if self.stall_max_polls < 1:
            raise ValueError(f"Invalid stall_max_polls: {self.stall_max_polls} (must be >= 1)")

        if self.recovery_max_attempts < 1:
            raise ValueError(f"Invalid recovery_max_attempts: {self.recovery_max_attempts} (must be >= 1)")

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.log_level.upper() not in valid_log_levels:
            raise ValueError(f"Invalid log_level: {self.log_level} (must be one of {valid_log_levels})")

        if not self.recovery_backoff_ms:
            raise ValueError("Recovery backoff schedule cannot be empty")
        if any(d <= 0 for d in self.recovery_backoff_ms):
            raise ValueError("All recovery backoff delays must be positive")


def load_config() -> TurntableConfig:
    """
    Load and validate turntable configuration from environment variables.

    Returns:
        TurntableConfig instance with loaded and validated values

    Raises:
        ValueError: If configuration is invalid
    """
    try:
        return TurntableConfig.load_config()
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        raise
