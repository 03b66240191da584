import threading
from typing import Callable, Optional

from werkzeug.exceptions import ServiceUnavailable

from .config import UNLIMITED
from .logs import get_logger

logger = get_logger("offer.admission")


class AdmissionGate:
    """Enforce a request budget for one HTTP method.

    ``admit`` and ``release`` bracket a request: ``admit`` consumes one unit of
    budget (or rejects with 503 once it is spent) and ``release`` runs after
    the response has been sent, firing ``on_exhausted`` exactly once when the
    last admitted request completes. Other methods pass through untouched.
    """

    def __init__(
        self,
        method: str,
        budget: int,
        on_exhausted: Optional[Callable[[], None]] = None,
    ) -> None:
        if budget != UNLIMITED and budget < 0:
            raise ValueError(f"invalid request budget {budget}")
        self.method = method.upper()
        self._remaining = budget
        self._on_exhausted = on_exhausted
        self._exhausted = False
        self._lock = threading.Lock()

    @property
    def unlimited(self) -> bool:
        return self._remaining == UNLIMITED

    @property
    def remaining(self) -> int:
        with self._lock:
            return self._remaining

    @property
    def exhausted(self) -> bool:
        with self._lock:
            return self._exhausted

    def admit(self, method: str) -> bool:
        """Consume budget for *method*; return False when it is not tracked."""

        if self.unlimited or method.upper() != self.method:
            return False
        with self._lock:
            if self._remaining == 0:
                rejected = True
            else:
                self._remaining -= 1
                rejected = False
                remaining = self._remaining
        if rejected:
            logger.info("request_rejected method=%s reason=budget_exhausted", self.method)
            raise ServiceUnavailable()
        logger.debug("request_admitted method=%s remaining=%d", self.method, remaining)
        return True

    def release(self) -> None:
        with self._lock:
            fire = self._remaining == 0 and not self._exhausted
            if fire:
                self._exhausted = True
        if not fire:
            return
        logger.info("request_budget_exhausted method=%s", self.method)
        if self._on_exhausted is not None:
            self._on_exhausted()
