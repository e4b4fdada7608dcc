import threading
from contextlib import contextmanager
from typing import Iterator

from capture.core import GATE_ACQUIRE_TIMEOUT, MAX_RENDER_SESSIONS, logger
from rendering.engine import BrowserService, BrowserSession, RenderExecutionError


class RenderGate:
    """
    Bounds the number of simultaneous render sessions across all workers.
    INVARIANT: every session opened through the gate is closed exactly once and its
    slot is released on every exit path, including failures inside the with-block.
    """

    def __init__(self, browser: BrowserService, max_sessions: int = MAX_RENDER_SESSIONS,
                 acquire_timeout: float = GATE_ACQUIRE_TIMEOUT):
        if max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")
        self._browser = browser
        self._max_sessions = max_sessions
        self._acquire_timeout = acquire_timeout
        self._semaphore = threading.BoundedSemaphore(max_sessions)
        self._lock = threading.Lock()
        self._active = 0

    @property
    def max_sessions(self) -> int:
        return self._max_sessions

    @property
    def active_sessions(self) -> int:
        with self._lock:
            return self._active

    @contextmanager
    def session(self, width: int, height: int) -> Iterator[BrowserSession]:
        acquired = self._semaphore.acquire(timeout=self._acquire_timeout)
        if not acquired:
            logger.error(
                "[RENDER] Gate acquire timeout after "
                f"{self._acquire_timeout}s; all {self._max_sessions} sessions busy"
            )
            raise RenderExecutionError(
                "Render gate timeout: too many concurrent render sessions"
            )

        try:
            session = self._browser.open(width, height)
        except Exception:
            self._semaphore.release()
            raise

        with self._lock:
            self._active += 1
        try:
            yield session
        finally:
            try:
                session.close()
            except Exception as e:
                logger.error(f"[RENDER] Session close failed: {e}")
            finally:
                with self._lock:
                    self._active -= 1
                self._semaphore.release()
