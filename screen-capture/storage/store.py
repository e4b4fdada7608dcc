from abc import ABC, abstractmethod
from datetime import datetime
from typing import FrozenSet, List, Optional

from capture.models import (
    ArtifactSet,
    CaptureRecord,
    MonitoredPage,
    PageStatus,
    Site,
    ViewportClass,
)


class CaptureStore(ABC):
    """
    Abstract interface for monitored pages and their immutable capture history.
    Single-record writes are atomic; save_capture is the only multi-record transaction.
    """

    @abstractmethod
    def get_or_create_site(self, domain: str, name: Optional[str] = None) -> Site:
        """Return the site for a domain, creating it on first use."""
        pass

    @abstractmethod
    def upsert_page(self, site_id: str, url: str, viewport: ViewportClass) -> MonitoredPage:
        """
        Create the page for (site_id, url, viewport) with version 1 and status PENDING,
        or, if it exists, increment its version and reset status to PENDING.
        """
        pass

    @abstractmethod
    def get_page(self, page_id: str) -> Optional[MonitoredPage]:
        pass

    @abstractmethod
    def set_status(self, page_id: str, status: PageStatus) -> None:
        """Atomic single-field status write (last writer wins)."""
        pass

    @abstractmethod
    def complete_page(
        self,
        page_id: str,
        extracted_text: Optional[str],
        tags: FrozenSet[str],
        pii_flag: bool,
        last_seen_at: datetime,
    ) -> None:
        """Atomic single-record write: status CAPTURED plus capture metadata."""
        pass

    @abstractmethod
    def latest_capture(self, page_id: str) -> Optional[CaptureRecord]:
        """Most recent CaptureRecord for the page by created_at, or None."""
        pass

    @abstractmethod
    def save_capture(self, record: CaptureRecord, artifacts: ArtifactSet) -> None:
        """Persist record and artifacts together: both or neither become visible."""
        pass

    @abstractmethod
    def list_captures(self, page_id: str, limit: Optional[int] = None) -> List[CaptureRecord]:
        """Capture history, newest first."""
        pass

    @abstractmethod
    def get_artifacts(self, capture_id: str) -> Optional[ArtifactSet]:
        pass
