from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import FrozenSet, Optional, Tuple


def utc_now() -> datetime:
    """Timezone-aware current time in UTC."""
    return datetime.now(timezone.utc)


class ViewportClass(Enum):
    DESKTOP = "desktop"
    MOBILE = "mobile"

    @property
    def dimensions(self) -> Tuple[int, int]:
        """Fixed (width, height) in CSS pixels for this viewport class."""
        return VIEWPORT_DIMENSIONS[self]


VIEWPORT_DIMENSIONS = {
    ViewportClass.DESKTOP: (1440, 900),
    ViewportClass.MOBILE: (390, 844),
}


class PageStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    CAPTURED = "captured"
    FAILED = "failed"


class ComparisonMode(Enum):
    """How the diff score of a CaptureRecord was obtained."""
    BASELINE = "baseline"
    IDENTICAL = "identical"
    VISUAL = "visual"
    STRUCTURAL = "structural"


@dataclass(frozen=True)
class Site:
    site_id: str
    name: str
    domain: str


@dataclass(frozen=True)
class MonitoredPage:
    """
    One (site, URL, viewport class) target under tracking.
    Invariant: (site_id, url, viewport) is unique in the store.
    """
    page_id: str
    site_id: str
    url: str
    viewport: ViewportClass
    status: PageStatus = PageStatus.PENDING
    version: int = 1
    last_seen_at: Optional[datetime] = None
    extracted_text: Optional[str] = None
    tags: FrozenSet[str] = frozenset()
    pii_flag: bool = False
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class CaptureRecord:
    """
    Immutable snapshot event for a MonitoredPage.
    Invariant: diff_score/changed are relative to the immediately preceding record.
    """
    capture_id: str
    page_id: str
    dom_hash: str
    content_hash: str
    perceptual_hash: str
    image_width: int
    image_height: int
    diff_score: float
    changed: bool
    comparison: ComparisonMode
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class ArtifactSet:
    """
    Stored renditions of one capture.
    Invariant: hashes agree with the CaptureRecord identified by capture_id.
    """
    artifact_id: str
    capture_id: str
    page_id: str
    lossless_uri: str
    compressed_uri: str
    thumbnail_uri: str
    content_hash: str
    perceptual_hash: str
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class CaptureJob:
    """
    Unit of work for the orchestrator. Transient, never persisted.
    """
    job_id: str
    url: str
    viewport: ViewportClass
    width: int
    height: int
    site_id: str
    page_id: str
    with_content: bool = False
    priority: int = 5

    @classmethod
    def for_page(cls, page: MonitoredPage, with_content: bool = False, priority: int = 5,
                 job_id: Optional[str] = None) -> "CaptureJob":
        width, height = page.viewport.dimensions
        return cls(
            job_id=job_id or page.page_id,
            url=page.url,
            viewport=page.viewport,
            width=width,
            height=height,
            site_id=page.site_id,
            page_id=page.page_id,
            with_content=with_content,
            priority=priority,
        )


@dataclass(frozen=True)
class Renditions:
    """
    Encoded outputs of one screenshot before upload.
    lossless is the stored full-fidelity PNG: the raw screenshot, or its redacted
    replacement. Its SHA-256 is always the capture's content hash.
    """
    lossless: bytes
    compressed: bytes
    thumbnail: bytes


@dataclass(frozen=True)
class CaptureResult:
    """Outcome of one successful capture job."""
    job_id: str
    page_id: str
    capture: CaptureRecord
    artifacts: ArtifactSet
    tags: FrozenSet[str]
    pii_flag: bool
    text: Optional[str] = None
