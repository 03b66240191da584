"""Error types raised while resolving, serving and receiving payloads."""

from typing import Optional


class OfferError(Exception):
    """Base class for every error raised by offer."""


class ConfigError(OfferError, ValueError):
    """Raised when the run configuration is inconsistent."""


class IsDirectoryError(OfferError):
    """Raised when the offered source is a directory."""

    def __init__(self, path: str) -> None:
        super().__init__(f"{path}: is a directory")
        self.path = path


class TooBigError(OfferError):
    """Raised when a source does not fit in the buffering threshold.

    ``prefix`` holds the bytes consumed from the source before giving up so
    that callers can continue spooling without losing data.
    """

    def __init__(self, limit: int, prefix: bytes) -> None:
        super().__init__(f"source exceeds {limit} bytes")
        self.limit = limit
        self.prefix = prefix


class UnknownAlgorithmError(OfferError):
    def __init__(self, algorithm: str) -> None:
        super().__init__(f"{algorithm}: unknown hash algorithm")
        self.algorithm = algorithm


class ChecksumUnavailableError(OfferError):
    def __init__(self, algorithm: str, reason: Optional[str] = None) -> None:
        message = f"{algorithm}: checksum unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.algorithm = algorithm


class NameCollisionError(OfferError):
    def __init__(self, path: str, attempts: int) -> None:
        super().__init__(f"{path}: no free name after {attempts} attempts")
        self.path = path
        self.attempts = attempts


class MissingFilenameError(OfferError):
    """Raised when a multipart part does not declare the filename we need."""


class MalformedBodyError(OfferError):
    """Raised when a multipart request body cannot be parsed."""


class TransportError(OfferError):
    """Raised when the listener cannot start or stops abnormally."""
