from dataclasses import dataclass, field
from typing import Dict, Optional

from capture.errors import RecoverableStepFailure


@dataclass(frozen=True)
class NavigationResult:
    """Response of the main document navigation."""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def etag(self) -> Optional[str]:
        return self.headers.get("etag")

    @property
    def last_modified(self) -> Optional[str]:
        return self.headers.get("last-modified")


@dataclass(frozen=True)
class PageSnapshot:
    """
    Captured state of the loaded page.
    headers are the cache validators of the navigated response and may be empty.
    """
    screenshot: bytes
    dom: str
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def etag(self) -> Optional[str]:
        return self.headers.get("etag")

    @property
    def last_modified(self) -> Optional[str]:
        return self.headers.get("last-modified")


@dataclass(frozen=True)
class StepOutcome:
    """
    Result of a best-effort session step (interstitial dismissal, lazy-load trigger).
    A failed outcome never aborts a capture; the caller decides to log and discard it.
    """
    step: str
    ok: bool
    error: Optional[RecoverableStepFailure] = None

    @classmethod
    def succeeded(cls, step: str) -> "StepOutcome":
        return cls(step=step, ok=True)

    @classmethod
    def failed(cls, step: str, reason: str) -> "StepOutcome":
        return cls(step=step, ok=False, error=RecoverableStepFailure(f"{step}: {reason}"))
