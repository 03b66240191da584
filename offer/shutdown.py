import signal
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .logs import get_logger

logger = get_logger("offer.lifecycle")

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class ShutdownState(str, Enum):
    LISTENING = "listening"
    DRAINING = "draining"
    STOPPED = "stopped"


class ShutdownCoordinator:
    """Funnel independent shutdown sources into one "begin drain" event.

    Signals, the timeout job and request exhaustion all call :meth:`trigger`;
    only the first call moves the state to ``DRAINING`` and records its
    reason, later calls are ignored.
    """

    def __init__(self) -> None:
        self._drain = threading.Event()
        # signal handlers call trigger on the main thread, which may already hold it
        self._lock = threading.RLock()
        self._state = ShutdownState.LISTENING
        self._reason: Optional[str] = None
        self._scheduler: Optional[BackgroundScheduler] = None
        self._previous_handlers: Dict[int, object] = {}

    @property
    def state(self) -> ShutdownState:
        with self._lock:
            return self._state

    @property
    def reason(self) -> Optional[str]:
        with self._lock:
            return self._reason

    def trigger(self, reason: str) -> bool:
        with self._lock:
            if self._state is not ShutdownState.LISTENING:
                return False
            self._state = ShutdownState.DRAINING
            self._reason = reason
        logger.info("shutdown_requested reason=%s", reason)
        self._drain.set()
        return True

    def wait(self, timeout: Optional[float] = None) -> Optional[str]:
        """Block until draining starts; return the reason (``None`` on timeout)."""

        if not self._drain.wait(timeout):
            return None
        return self.reason

    def mark_stopped(self) -> None:
        with self._lock:
            self._state = ShutdownState.STOPPED
        logger.info("server_stopped reason=%s", self._reason)

    def install_signal_handlers(self, signals: Iterable[int] = DEFAULT_SIGNALS) -> None:
        """Route *signals* to :meth:`trigger`; must run in the main thread."""

        for signum in signals:
            self._previous_handlers[signum] = signal.signal(signum, self._handle_signal)

    def _handle_signal(self, signum: int, frame) -> None:
        self.trigger(f"signal {signal.Signals(signum).name}")

    def start_timer(self, seconds: float) -> None:
        """Begin draining after *seconds*; zero means never."""

        if seconds <= 0:
            return
        scheduler = BackgroundScheduler(daemon=True)
        scheduler.add_job(
            func=self.trigger,
            trigger="date",
            run_date=datetime.now() + timedelta(seconds=seconds),
            args=["timeout"],
            id="shutdown_timeout",
            name="Shut down after timeout",
        )
        scheduler.start()
        self._scheduler = scheduler

    def close(self) -> None:
        """Stop the timer and restore the signal handlers replaced earlier."""

        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        for signum, handler in self._previous_handlers.items():
            signal.signal(signum, handler)
        self._previous_handlers.clear()
