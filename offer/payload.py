"""Resolution of the single payload offered for the lifetime of a run.

The payload is materialized once, before the listener starts, in one of
three shapes:

* ``memory``: small inputs are held as an immutable ``bytes`` buffer.
* ``disk-path``: large files are streamed from disk on every request; large
  standard input is spooled to a temporary file first.
* ``live-stream``: standard input is passed straight through to a single
  request without buffering.
"""

import io
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Optional

from .config import CHUNK_SIZE_BYTES, PROG_NAME, OfferConfig
from .errors import IsDirectoryError, TooBigError
from .logs import get_logger

logger = get_logger("offer.payload")


class Origin(str, Enum):
    MEMORY = "memory"
    DISK = "disk-path"
    STREAM = "live-stream"


@dataclass(frozen=True)
class Payload:
    name: str
    origin: Origin
    buffer: Optional[bytes] = None
    path: Optional[Path] = None
    stream: Optional[BinaryIO] = None
    temporary: bool = False

    def __post_init__(self) -> None:
        sources = {
            Origin.MEMORY: self.buffer,
            Origin.DISK: self.path,
            Origin.STREAM: self.stream,
        }
        if sources[self.origin] is None:
            raise ValueError(f"{self.origin.value} payload without a data source")

    @property
    def base_name(self) -> str:
        return os.path.basename(self.name)

    @property
    def replayable(self) -> bool:
        return self.origin is not Origin.STREAM

    @property
    def size(self) -> Optional[int]:
        """Size in bytes, or ``None`` when it cannot be known ahead of transfer."""

        if self.origin is Origin.MEMORY:
            return len(self.buffer)
        if self.origin is Origin.DISK:
            return self.path.stat().st_size
        return None

    def open(self) -> BinaryIO:
        """Return a fresh reader over the authoritative data source.

        Every call on a memory or disk payload yields an independent reader,
        so concurrent requests never share a file offset. A live stream is
        returned as is and can only be consumed once.
        """

        if self.origin is Origin.MEMORY:
            return io.BytesIO(self.buffer)
        if self.origin is Origin.DISK:
            return self.path.open("rb")
        return self.stream


def bounded_read(source: BinaryIO, limit: int) -> bytes:
    """Read *source* completely if it holds at most *limit* bytes.

    Raises :class:`TooBigError` carrying the ``limit + 1`` bytes read so far
    when the source is larger.
    """

    buf = bytearray()
    while len(buf) < limit:
        chunk = source.read(limit - len(buf))
        if not chunk:
            return bytes(buf)
        buf.extend(chunk)

    extra = source.read(1)
    if extra:
        buf.extend(extra)
        raise TooBigError(limit, bytes(buf))
    return bytes(buf)


def resolve_file(path: str, max_bytes: int) -> Payload:
    file_path = Path(path)
    stat = file_path.stat()
    if file_path.is_dir():
        raise IsDirectoryError(path)
    if stat.st_size > max_bytes:
        payload = Payload(name=path, origin=Origin.DISK, path=file_path.resolve())
    else:
        with file_path.open("rb") as handle:
            # the file may grow between stat and read
            payload = Payload(name=path, origin=Origin.MEMORY, buffer=bounded_read(handle, max_bytes))
    logger.info("payload_resolved origin=%s path=%s size=%d", payload.origin.value, path, payload.size)
    return payload


def resolve_stdin(stream: BinaryIO, max_bytes: int, temp_dir: Path) -> Payload:
    try:
        buf = bounded_read(stream, max_bytes)
    except TooBigError as error:
        return _spool(stream, error.prefix, temp_dir)

    payload = Payload(name=f"{PROG_NAME}-{int(time.time())}", origin=Origin.MEMORY, buffer=buf)
    logger.info("payload_resolved origin=memory name=%s size=%d", payload.name, payload.size)
    return payload


def _spool(stream: BinaryIO, prefix: bytes, temp_dir: Path) -> Payload:
    fd, temp_name = tempfile.mkstemp(prefix=f"{PROG_NAME}-", dir=temp_dir)
    temp_path = Path(temp_name).resolve()
    try:
        with os.fdopen(fd, "wb") as destination:
            destination.write(prefix)
            shutil.copyfileobj(stream, destination, CHUNK_SIZE_BYTES)
    except BaseException:
        # a partial spool never outlives the run, even on KeyboardInterrupt
        temp_path.unlink(missing_ok=True)
        raise

    payload = Payload(name=str(temp_path), origin=Origin.DISK, path=temp_path, temporary=True)
    logger.info("payload_spooled path=%s size=%d", temp_path, payload.size)
    return payload


def resolve_stream(stream: BinaryIO) -> Payload:
    name = f"{PROG_NAME}-{int(time.time())}"
    logger.info("payload_resolved origin=live-stream name=%s", name)
    return Payload(name=name, origin=Origin.STREAM, stream=stream)


def resolve_payload(config: OfferConfig, stdin: BinaryIO) -> Payload:
    """Produce the run's payload from *config*; *stdin* is used for ``-``."""

    if not config.reads_stdin:
        return resolve_file(config.source, config.max_bytes)
    if config.stream:
        return resolve_stream(stdin)
    return resolve_stdin(stdin, config.max_bytes, config.temp_dir)
