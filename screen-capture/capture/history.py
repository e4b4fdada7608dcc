from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from capture.models import ArtifactSet, CaptureRecord, MonitoredPage
from storage.store import CaptureStore


@dataclass(frozen=True)
class HistoryEntry:
    capture: CaptureRecord
    artifacts: Optional[ArtifactSet]


@dataclass(frozen=True)
class PageHistory:
    """
    Version history of a page, newest first, with summary statistics.
    """
    page: MonitoredPage
    entries: List[HistoryEntry]
    total_captures: int
    last_change_at: Optional[datetime]
    average_diff_score: float

    @property
    def current(self) -> Optional[HistoryEntry]:
        return self.entries[0] if self.entries else None


def page_history(store: CaptureStore, page_id: str, limit: Optional[int] = None) -> Optional[PageHistory]:
    """Load a page's captures and summarise them. Returns None for an unknown page."""
    page = store.get_page(page_id)
    if page is None:
        return None

    captures = store.list_captures(page_id, limit=limit)
    entries = [HistoryEntry(capture, store.get_artifacts(capture.capture_id)) for capture in captures]
    last_change = next((c.created_at for c in captures if c.changed), None)
    average = sum(c.diff_score for c in captures) / len(captures) if captures else 0.0

    return PageHistory(
        page=page,
        entries=entries,
        total_captures=len(captures),
        last_change_at=last_change,
        average_diff_score=average,
    )
