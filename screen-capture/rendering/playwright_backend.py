"""
FILE DESCRIPTION: Playwright implementation of the browser automation contract.
KEY FUNCTIONS/CLASSES: PlaywrightBrowserService, PlaywrightSession

Playwright's sync API is bound to the thread that started it. Each render worker
is a DEDICATED THREAD owning its own Playwright/Browser instance; sessions are
pinned to an idle worker and every session command is marshalled onto that
thread through its command queue, so callers on any pool thread are safe.
"""

import queue
import threading
from typing import Any, Callable, Dict, List, Optional

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from capture.core import (
    INTERSTITIAL_WAIT,
    LAZY_LOAD_WAIT,
    MAX_RENDER_SESSIONS,
    USER_AGENT,
    logger,
)
from rendering.engine import (
    BrowserService,
    BrowserSession,
    RenderExecutionError,
    RenderTimeoutError,
)
from rendering.models import NavigationResult, PageSnapshot, StepOutcome

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
]

# Common cookie banner / consent prompt selectors
INTERSTITIAL_SELECTORS = [
    '[data-testid="cookie-banner"]',
    '.cookie-banner',
    '#cookie-banner',
    '[aria-label*="cookie"]',
    'button:has-text("Accept")',
    'button:has-text("OK")',
    'button:has-text("Got it")',
]

CACHE_VALIDATORS = ("etag", "last-modified")

# Extra time granted to the caller-side wait on top of the in-browser deadline
COMMAND_GRACE = 5.0
COMMAND_TIMEOUT = 30.0


class _RenderWorker(threading.Thread):
    """
    FLOW: Starts Playwright + Chromium on its own thread -> Signals readiness ->
    Executes queued commands against the browser -> Replies through per-command queues.
    """

    def __init__(self, worker_id: int):
        super().__init__(daemon=True, name=f"RenderWorker-{worker_id}")
        self.worker_id = worker_id
        self._commands: "queue.Queue" = queue.Queue()
        self.ready = threading.Event()
        self.startup_error: Optional[BaseException] = None
        # Set once a command overran its deadline; the thread may still be busy with it.
        self.poisoned = False

    def run(self):
        try:
            with sync_playwright() as p:
                browser = p.chromium.launch(headless=True, args=LAUNCH_ARGS)
                logger.info(f"[RENDER] Render Worker-{self.worker_id} ready.")
                self.ready.set()
                self._serve(browser)
                browser.close()
        except Exception as e:
            self.startup_error = e
            logger.critical(f"[RENDER] Worker-{self.worker_id} fatal error: {e}")
        finally:
            self.ready.set()

    def _serve(self, browser):
        while True:
            command = self._commands.get()
            if command is None:  # Poison pill
                break
            fn, reply = command
            try:
                reply.put((fn(browser), None))
            except Exception as e:
                reply.put((None, e))

    def call(self, fn: Callable[[Any], Any], timeout: float) -> Any:
        """Run fn(browser) on the worker thread and block until it returns or timeout elapses."""
        if not self.is_alive():
            raise RenderExecutionError(f"Render Worker-{self.worker_id} is not running")
        if self.poisoned:
            raise RenderExecutionError(f"Render Worker-{self.worker_id} is still busy with a timed-out command")
        reply: "queue.Queue" = queue.Queue(maxsize=1)
        self._commands.put((fn, reply))
        try:
            result, error = reply.get(timeout=timeout)
        except queue.Empty:
            self.poisoned = True
            raise RenderTimeoutError(
                f"Render Worker-{self.worker_id} command exceeded {timeout}s"
            ) from None
        if error is not None:
            raise error
        return result

    def stop(self):
        self._commands.put(None)


class PlaywrightSession(BrowserSession):
    """A browser context + page pinned to one render worker."""

    def __init__(self, worker: _RenderWorker, context, page, release: Callable[[], None]):
        self._worker = worker
        self._context = context
        self._page = page
        self._release = release
        self._headers: Dict[str, str] = {}
        self._closed = False

    def navigate(self, url: str, timeout: float) -> NavigationResult:
        page = self._page

        def _goto(_browser):
            try:
                response = page.goto(url, wait_until="networkidle", timeout=timeout * 1000)
            except PlaywrightTimeoutError as e:
                raise RenderTimeoutError(f"Navigation to {url} exceeded {timeout}s") from e
            if response is None:
                return 0, {}
            return response.status, dict(response.headers)

        try:
            status, headers = self._worker.call(_goto, timeout=timeout + COMMAND_GRACE)
        except (RenderTimeoutError, RenderExecutionError):
            raise
        except Exception as e:
            raise RenderExecutionError(f"Navigation to {url} failed: {e}") from e

        self._headers = {k.lower(): v for k, v in headers.items() if k.lower() in CACHE_VALIDATORS}
        return NavigationResult(status=status, headers=dict(self._headers))

    def dismiss_interstitials(self) -> StepOutcome:
        page = self._page

        def _dismiss(_browser):
            for selector in INTERSTITIAL_SELECTORS:
                try:
                    element = page.query_selector(selector)
                    if element:
                        element.click()
                        page.wait_for_timeout(INTERSTITIAL_WAIT * 1000)
                        return selector
                except Exception as e:
                    # Continue to next selector
                    logger.debug(f"[RENDER] Interstitial selector {selector} failed: {e}")
            return None

        try:
            self._worker.call(_dismiss, timeout=COMMAND_TIMEOUT)
        except Exception as e:
            return StepOutcome.failed("dismiss_interstitials", str(e))
        return StepOutcome.succeeded("dismiss_interstitials")

    def trigger_lazy_load(self) -> StepOutcome:
        page = self._page

        def _scroll(_browser):
            page.evaluate("() => window.scrollTo(0, document.body.scrollHeight)")
            page.wait_for_timeout(LAZY_LOAD_WAIT * 1000)
            page.evaluate("() => window.scrollTo(0, 0)")
            page.wait_for_timeout(500)

        try:
            self._worker.call(_scroll, timeout=COMMAND_TIMEOUT)
        except Exception as e:
            return StepOutcome.failed("trigger_lazy_load", str(e))
        return StepOutcome.succeeded("trigger_lazy_load")

    def settle(self, seconds: float) -> None:
        page = self._page
        self._worker.call(lambda _browser: page.wait_for_timeout(seconds * 1000),
                          timeout=seconds + COMMAND_GRACE)

    def capture(self) -> PageSnapshot:
        page = self._page

        def _capture(_browser):
            return page.screenshot(type="png", full_page=False), page.content()

        try:
            screenshot, dom = self._worker.call(_capture, timeout=COMMAND_TIMEOUT)
        except (RenderTimeoutError, RenderExecutionError):
            raise
        except Exception as e:
            raise RenderExecutionError(f"Capture failed: {e}") from e
        return PageSnapshot(screenshot=screenshot, dom=dom, headers=dict(self._headers))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        context = self._context
        try:
            # A poisoned worker is retired with its browser, context included.
            if not self._worker.poisoned:
                self._worker.call(lambda _browser: context.close(), timeout=COMMAND_TIMEOUT)
        finally:
            self._release()


class PlaywrightBrowserService(BrowserService):
    """
    FLOW: Spawns one dedicated Playwright thread per allowed session ->
    Hands out sessions bound to idle workers -> Returns workers to the idle pool on close.
    A worker whose command timed out is retired on release and replaced by a fresh one.
    Lifetime is explicit: use as a context manager or call start()/shutdown().
    """

    def __init__(self, workers: int = MAX_RENDER_SESSIONS, user_agent: str = USER_AGENT,
                 startup_timeout: float = 60.0, open_timeout: float = 30.0,
                 worker_factory: Callable[[int], _RenderWorker] = _RenderWorker):
        self._size = workers
        self._user_agent = user_agent
        self._startup_timeout = startup_timeout
        self._open_timeout = open_timeout
        self._workers: List[_RenderWorker] = []
        self._idle: "queue.Queue" = queue.Queue()
        self._init_lock = threading.Lock()
        self._worker_factory = worker_factory
        self._next_id = 0

    def start(self) -> "PlaywrightBrowserService":
        with self._init_lock:
            if self._workers:
                return self
            for _ in range(self._size):
                self._workers.append(self._spawn_worker())
            for worker in self._workers:
                if self._wait_ready(worker):
                    self._idle.put(worker)
        return self

    def _spawn_worker(self) -> _RenderWorker:
        worker = self._worker_factory(self._next_id)
        self._next_id += 1
        worker.start()
        return worker

    def _wait_ready(self, worker: _RenderWorker) -> bool:
        worker.ready.wait(timeout=self._startup_timeout)
        if worker.startup_error is not None or not worker.is_alive():
            logger.error(f"[RENDER] Worker-{worker.worker_id} failed to start: {worker.startup_error}")
            return False
        return True

    def _release(self, worker: _RenderWorker) -> None:
        if not worker.poisoned:
            self._idle.put(worker)
            return

        # The stop pill queues behind the stuck command, so the old thread exits once it returns.
        worker.stop()
        with self._init_lock:
            if worker not in self._workers:
                return  # shut down meanwhile
            self._workers.remove(worker)
            replacement = self._spawn_worker()
            self._workers.append(replacement)
        logger.warning(
            f"[RENDER] Retired Worker-{worker.worker_id} after a command timeout; "
            f"started Worker-{replacement.worker_id}"
        )
        if self._wait_ready(replacement):
            self._idle.put(replacement)

    def open(self, width: int, height: int) -> BrowserSession:
        if not self._workers:
            self.start()
        try:
            worker = self._idle.get(timeout=self._open_timeout)
        except queue.Empty:
            raise RenderExecutionError("No idle render worker available") from None

        user_agent = self._user_agent

        def _new_page(browser):
            context = browser.new_context(
                viewport={"width": width, "height": height},
                user_agent=user_agent,
            )
            return context, context.new_page()

        try:
            context, page = worker.call(_new_page, timeout=COMMAND_TIMEOUT)
        except Exception as e:
            self._release(worker)
            if isinstance(e, (RenderTimeoutError, RenderExecutionError)):
                raise
            raise RenderExecutionError(f"Failed to open render session: {e}") from e

        return PlaywrightSession(worker, context, page, release=lambda: self._release(worker))

    def shutdown(self) -> None:
        with self._init_lock:
            for worker in self._workers:
                worker.stop()
            for worker in self._workers:
                worker.join(timeout=10)
            self._workers = []
            self._idle = queue.Queue()

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False
