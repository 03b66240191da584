import hashlib
import threading
from concurrent.futures import Future
from typing import Any, Callable, Dict

from .config import CHUNK_SIZE_BYTES
from .errors import ChecksumUnavailableError, UnknownAlgorithmError
from .logs import get_logger
from .payload import Payload

logger = get_logger("offer.checksums")

SUPPORTED_ALGORITHMS: Dict[str, Callable[[], Any]] = {
    "md5": hashlib.md5,
    "sha1": hashlib.sha1,
    "sha256": hashlib.sha256,
    "sha512": hashlib.sha512,
}

# Cache key of the concatenation of every algorithm's line.
ALL_ALGORITHMS = ""


def format_checksum(algorithm: str, hexdigest: str, name: str) -> str:
    return f"{algorithm} {hexdigest} {name}\n"


class ChecksumCache:
    """Compute-once table of formatted payload checksums.

    The first caller for a key computes it while concurrent callers for the
    same key wait on that computation. Completed entries are read without
    locking; failures are handed to the waiters and then forgotten so that a
    later request can retry.
    """

    def __init__(self, payload: Payload) -> None:
        self._payload = payload
        self._results: Dict[str, str] = {}
        self._pending: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self.computations = 0

    def get(self, algorithm: str) -> str:
        algorithm = algorithm.lower()
        if algorithm not in SUPPORTED_ALGORITHMS:
            raise UnknownAlgorithmError(algorithm)
        return self._single_flight(algorithm, lambda: self._compute(algorithm))

    def get_all(self) -> str:
        return self._single_flight(ALL_ALGORITHMS, self._compute_all)

    def cached(self, key: str) -> bool:
        return key in self._results

    def _single_flight(self, key: str, compute: Callable[[], str]) -> str:
        result = self._results.get(key)
        if result is not None:
            return result

        with self._lock:
            result = self._results.get(key)
            if result is not None:
                return result
            future = self._pending.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._pending[key] = future

        if not owner:
            return future.result()

        try:
            result = compute()
        except Exception as error:
            future.set_exception(error)
            raise
        else:
            self._results[key] = result
            future.set_result(result)
            return result
        finally:
            with self._lock:
                self._pending.pop(key, None)

    def _compute_all(self) -> str:
        return "".join(self.get(algorithm) for algorithm in sorted(SUPPORTED_ALGORITHMS))

    def _compute(self, algorithm: str) -> str:
        if not self._payload.replayable:
            raise ChecksumUnavailableError(algorithm, "payload is a live stream")

        digest = SUPPORTED_ALGORITHMS[algorithm]()
        try:
            with self._payload.open() as reader:
                for chunk in iter(lambda: reader.read(CHUNK_SIZE_BYTES), b""):
                    digest.update(chunk)
        except OSError as error:
            logger.warning("checksum_failed algorithm=%s error=%s", algorithm, error)
            raise ChecksumUnavailableError(algorithm, str(error)) from error

        with self._lock:
            self.computations += 1
        result = format_checksum(algorithm, digest.hexdigest(), self._payload.base_name)
        logger.info("checksum_computed algorithm=%s", algorithm)
        return result
