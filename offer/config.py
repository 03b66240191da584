import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from .errors import ConfigError

PROG_NAME = "offer"
__version__ = "1.0.0"

BASE_DIR = Path(__file__).resolve().parent
UPLOAD_PAGE_PATH = BASE_DIR / "templates" / "upload.html"

# Reserved request budget that disables admission accounting.
UNLIMITED = -1

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
BYTES_PER_MB = 1024 * 1024
DEFAULT_PORT = 8080
DEFAULT_MAX_BYTES = 20 * BYTES_PER_MB
MAX_RENAME_ATTEMPTS = 1000

config_logger = logging.getLogger("offer.config")


def _safe_int_env(key: str, default: int, min_value: int = 0) -> int:
    """Safely parse integer environment variable with error handling."""
    raw_value = os.environ.get(key)
    if raw_value is None or raw_value == "":
        return default
    try:
        return max(min_value, int(raw_value))
    except (TypeError, ValueError):
        config_logger.warning(
            "Invalid value for %s: %s. Using default: %d", key, raw_value, default
        )
        return default


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def default_port() -> int:
    return _safe_int_env("OFFER_PORT", DEFAULT_PORT)


def default_max_bytes() -> int:
    return _safe_int_env("OFFER_MAX_BYTES", DEFAULT_MAX_BYTES)


def default_temp_dir() -> Path:
    return _resolve_env_path("OFFER_TEMP_DIR", Path(tempfile.gettempdir()))


def default_log_file() -> Optional[Path]:
    value = os.environ.get("OFFER_LOG_FILE")
    if not value:
        return None
    return Path(value).expanduser()


def parse_credentials(value: Optional[str]) -> Optional[Tuple[str, str]]:
    """Split a ``user:password`` pair; the password may itself contain colons."""

    if value is None:
        return None
    user, sep, password = value.partition(":")
    if not sep or not user:
        raise ConfigError("credentials must be given as USER:PASSWORD")
    return user, password


@dataclass
class OfferConfig:
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    source: Optional[str] = None
    max_bytes: int = DEFAULT_MAX_BYTES
    keep: bool = False
    temp_dir: Path = Path(tempfile.gettempdir())
    filename: Optional[str] = None
    count: int = UNLIMITED
    stream: bool = False
    receive: bool = False
    output: str = "-"
    timeout: float = 0.0
    credentials: Optional[Tuple[str, str]] = None
    verbose: bool = False
    log_file: Optional[Path] = None

    @property
    def reads_stdin(self) -> bool:
        return self.source is None or self.source == "-"

    @property
    def tracked_method(self) -> str:
        """HTTP method whose budget drives shutdown."""

        return "POST" if self.receive else "GET"

    def validate(self) -> "OfferConfig":
        if self.max_bytes < 0:
            raise ConfigError(f"{self.max_bytes}: invalid buffer size")
        if self.count != UNLIMITED and self.count <= 0:
            raise ConfigError(f"{self.count}: invalid request count")
        if self.timeout < 0:
            raise ConfigError(f"{self.timeout}: invalid timeout")
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"{self.port}: invalid port")
        if self.stream and self.receive:
            raise ConfigError("stream mode cannot be combined with receive mode")
        if self.stream and not self.reads_stdin:
            raise ConfigError("stream mode only applies to standard input")
        if self.receive and self.source is not None:
            raise ConfigError("receive mode does not take a source file, use --output")
        return self
