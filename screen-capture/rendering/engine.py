from abc import ABC, abstractmethod

from rendering.models import NavigationResult, PageSnapshot, StepOutcome


class RenderError(Exception):
    """Base rendering exception."""
    pass


class RenderTimeoutError(RenderError):
    """Raised when navigation or a session command exceeds its deadline."""
    pass


class RenderExecutionError(RenderError):
    """Raised on critical browser/session failures."""
    pass


class BrowserSession(ABC):
    """
    One live automated browsing context at a fixed viewport.
    Contractual Requirements for Implementers:
    - navigate MUST enforce the given timeout and raise RenderTimeoutError past it.
    - dismiss_interstitials / trigger_lazy_load MUST NOT raise; they report a StepOutcome.
    - close MUST be safe to call on a session whose navigation failed.
    """

    @abstractmethod
    def navigate(self, url: str, timeout: float) -> NavigationResult:
        """Load url as the main document. Raises RenderTimeoutError or RenderExecutionError."""
        pass

    @abstractmethod
    def dismiss_interstitials(self) -> StepOutcome:
        """Best-effort cookie/consent prompt dismissal."""
        pass

    @abstractmethod
    def trigger_lazy_load(self) -> StepOutcome:
        """Best-effort scroll to the bottom and back to the top."""
        pass

    @abstractmethod
    def settle(self, seconds: float) -> None:
        """Wait for the page to reach quiescence."""
        pass

    @abstractmethod
    def capture(self) -> PageSnapshot:
        """Screenshot (PNG bytes), serialized DOM and cache validators of the navigation."""
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class BrowserService(ABC):
    """
    Abstraction for the underlying browser driver.
    Each open() returns a heavyweight session; callers bound concurrency with a RenderGate.
    """

    @abstractmethod
    def open(self, width: int, height: int) -> BrowserSession:
        """Open a session with the given viewport. Raises RenderError on failure."""
        pass
