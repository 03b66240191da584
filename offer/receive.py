"""Receive mode: stream multipart uploads into their destination.

Parts are decoded incrementally with werkzeug's sans-io multipart decoder so
that uploads of any size go straight from the socket to disk (or standard
output) without being buffered by the form parser first.
"""

import os
import sys
import tempfile
from pathlib import Path
from typing import BinaryIO, List, Optional

from werkzeug.sansio.multipart import Data, Epilogue, Field, File, MultipartDecoder, NeedData
from werkzeug.utils import secure_filename

from .config import CHUNK_SIZE_BYTES, MAX_RENAME_ATTEMPTS
from .errors import MalformedBodyError, MissingFilenameError, NameCollisionError
from .logs import get_logger, sanitize_log_value

logger = get_logger("offer.receive")

STDOUT = "-"


def safe_rename(src: Path, dest: Path, attempts: int = MAX_RENAME_ATTEMPTS) -> Path:
    """Move *src* to *dest* without clobbering an existing file.

    When *dest* is taken the names ``stem-1.ext``, ``stem-2.ext`` ... are
    tried in turn. Linking fails atomically on an existing name, so two
    concurrent uploads can never claim the same final path.
    """

    name, ext = os.path.splitext(dest.name)
    candidate = dest
    counter = 1
    while True:
        try:
            os.link(src, candidate)
        except FileExistsError:
            if counter >= attempts:
                raise NameCollisionError(str(dest), attempts)
            candidate = dest.with_name(f"{name}-{counter}{ext}")
            counter += 1
            continue
        src.unlink()
        return candidate


class _Sink:
    """Destination of a single multipart part."""

    def __init__(self, handle: BinaryIO, temp_path: Optional[Path], final_path: Optional[Path]) -> None:
        self.handle = handle
        self.temp_path = temp_path
        self.final_path = final_path

    def write(self, data: bytes) -> None:
        self.handle.write(data)

    def finish(self) -> str:
        if self.temp_path is None:
            self.handle.flush()
            return STDOUT
        self.handle.close()
        saved = safe_rename(self.temp_path, self.final_path)
        logger.info("upload_saved path=%s", saved)
        return str(saved)

    def abort(self) -> None:
        if self.temp_path is None:
            return
        self.handle.close()
        logger.warning("upload_incomplete partial=%s", self.temp_path)


class UploadReceiver:
    """Write every part of a multipart body to the configured output.

    *output* is ``-`` for standard output, an existing directory (parts are
    named after their declared filename) or a file path (every part is stored
    there, safe-renamed on collision).
    """

    def __init__(self, output: str, stdout: Optional[BinaryIO] = None) -> None:
        self.output = output
        self._stdout = stdout

    @property
    def uses_part_filename(self) -> bool:
        return self.output != STDOUT and Path(self.output).is_dir()

    def receive(self, stream: BinaryIO, boundary: bytes) -> List[str]:
        """Decode the body read from *stream*; return the saved destinations."""

        decoder = MultipartDecoder(boundary)
        saved: List[str] = []
        sink: Optional[_Sink] = None
        complete = False
        try:
            while not complete:
                chunk = stream.read(CHUNK_SIZE_BYTES)
                decoder.receive_data(chunk or None)
                try:
                    event = decoder.next_event()
                    while not isinstance(event, (NeedData, Epilogue)):
                        if isinstance(event, (Field, File)):
                            filename = event.filename if isinstance(event, File) else None
                            sink = self._open_sink(filename)
                        elif isinstance(event, Data):
                            sink.write(event.data)
                            if not event.more_data:
                                saved.append(sink.finish())
                                sink = None
                        event = decoder.next_event()
                except ValueError as error:
                    raise MalformedBodyError(str(error)) from error
                if isinstance(event, Epilogue):
                    complete = True
                elif not chunk:
                    raise MalformedBodyError("unexpected end of multipart body")
        except Exception:
            if sink is not None:
                sink.abort()
            raise
        return saved

    def _open_sink(self, filename: Optional[str]) -> _Sink:
        if self.output == STDOUT:
            stdout = self._stdout if self._stdout is not None else sys.stdout.buffer
            return _Sink(stdout, None, None)

        if self.uses_part_filename:
            safe_name = secure_filename(filename or "")
            if not safe_name:
                logger.warning(
                    "upload_rejected reason=missing_filename declared=%s",
                    sanitize_log_value(filename),
                )
                raise MissingFilenameError("multipart part does not declare a filename")
            final_path = Path(self.output) / safe_name
        else:
            final_path = Path(self.output)

        fd, temp_name = tempfile.mkstemp(
            prefix=f".{final_path.name}.", suffix=".part", dir=final_path.parent
        )
        return _Sink(os.fdopen(fd, "wb"), Path(temp_name), final_path)
