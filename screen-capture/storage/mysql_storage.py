import hashlib
import json
import threading
import uuid
from datetime import datetime, timezone
from typing import FrozenSet, List, Optional

from capture.core import logger
from capture.models import (
    ArtifactSet,
    CaptureRecord,
    ComparisonMode,
    MonitoredPage,
    PageStatus,
    Site,
    ViewportClass,
    utc_now,
)
from storage.store import CaptureStore

PAGE_COLUMNS = """
    page_id, site_id, url, viewport, status, version,
    last_seen_at, extracted_text, tags, pii_flag, created_at
"""

CAPTURE_COLUMNS = """
    capture_id, page_id, dom_hash, content_hash, perceptual_hash,
    image_width, image_height, diff_score, changed, comparison,
    etag, last_modified, created_at
"""

ARTIFACT_COLUMNS = """
    artifact_id, capture_id, page_id, lossless_uri, compressed_uri,
    thumbnail_uri, content_hash, perceptual_hash, created_at
"""


def url_hash(url: str) -> str:
    """Fixed-width key for the (site, url, viewport) unique index."""
    return hashlib.sha256(url.encode('utf-8')).hexdigest()


def to_db_time(value: Optional[datetime]) -> Optional[datetime]:
    """DATETIME columns hold naive UTC; aware values are converted, naive ones are taken as UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class MySQLCaptureStore(CaptureStore):
    """
    MySQL implementation of CaptureStore (schema: database/init.sql).
    The connection is shared by all pool workers; access is serialised with a lock.
    """

    def __init__(self, connection):
        self._conn = connection
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Sites & pages
    # ------------------------------------------------------------------

    def get_or_create_site(self, domain: str, name: Optional[str] = None) -> Site:
        insert_sql = """
            INSERT INTO sites (site_id, name, domain)
            VALUES (%s, %s, %s)
            ON DUPLICATE KEY UPDATE site_id=site_id
        """
        select_sql = "SELECT site_id, name, domain FROM sites WHERE domain = %s"
        with self._lock, self._conn.cursor() as cursor:
            cursor.execute(insert_sql, (str(uuid.uuid4()), name or domain, domain))
            cursor.execute(select_sql, (domain,))
            row = cursor.fetchone()
            self._conn.commit()
        return Site(site_id=row[0], name=row[1], domain=row[2])

    def upsert_page(self, site_id: str, url: str, viewport: ViewportClass) -> MonitoredPage:
        # INVARIANT: (site_id, url_hash, viewport) is a unique key, so re-submission
        # updates the existing row instead of duplicating it.
        upsert_sql = """
            INSERT INTO monitored_pages (
                page_id, site_id, url, url_hash, viewport, status, version, created_at
            ) VALUES (%s, %s, %s, %s, %s, %s, 1, %s)
            ON DUPLICATE KEY UPDATE version = version + 1, status = VALUES(status)
        """
        select_sql = f"""
            SELECT {PAGE_COLUMNS} FROM monitored_pages
            WHERE site_id = %s AND url_hash = %s AND viewport = %s
        """
        key = url_hash(url)
        with self._lock, self._conn.cursor() as cursor:
            cursor.execute(upsert_sql, (
                str(uuid.uuid4()), site_id, url, key, viewport.value,
                PageStatus.PENDING.value, to_db_time(utc_now())
            ))
            cursor.execute(select_sql, (site_id, key, viewport.value))
            row = cursor.fetchone()
            self._conn.commit()
        return self._row_to_page(row)

    def get_page(self, page_id: str) -> Optional[MonitoredPage]:
        sql = f"SELECT {PAGE_COLUMNS} FROM monitored_pages WHERE page_id = %s"
        with self._lock, self._conn.cursor() as cursor:
            cursor.execute(sql, (page_id,))
            row = cursor.fetchone()
        return self._row_to_page(row) if row else None

    def set_status(self, page_id: str, status: PageStatus) -> None:
        sql = "UPDATE monitored_pages SET status = %s WHERE page_id = %s"
        with self._lock, self._conn.cursor() as cursor:
            cursor.execute(sql, (status.value, page_id))
            self._conn.commit()

    def complete_page(
        self,
        page_id: str,
        extracted_text: Optional[str],
        tags: FrozenSet[str],
        pii_flag: bool,
        last_seen_at: datetime,
    ) -> None:
        sql = """
            UPDATE monitored_pages
            SET status = %s, extracted_text = %s, tags = %s, pii_flag = %s, last_seen_at = %s
            WHERE page_id = %s
        """
        with self._lock, self._conn.cursor() as cursor:
            cursor.execute(sql, (
                PageStatus.CAPTURED.value, extracted_text, json.dumps(sorted(tags)),
                1 if pii_flag else 0, to_db_time(last_seen_at), page_id
            ))
            self._conn.commit()

    # ------------------------------------------------------------------
    # Capture history
    # ------------------------------------------------------------------

    def latest_capture(self, page_id: str) -> Optional[CaptureRecord]:
        captures = self.list_captures(page_id, limit=1)
        return captures[0] if captures else None

    def list_captures(self, page_id: str, limit: Optional[int] = None) -> List[CaptureRecord]:
        sql = f"""
            SELECT {CAPTURE_COLUMNS} FROM capture_records
            WHERE page_id = %s
            ORDER BY created_at DESC, seq DESC
        """
        params = [page_id]
        if limit is not None:
            sql += " LIMIT %s"
            params.append(int(limit))
        with self._lock, self._conn.cursor() as cursor:
            cursor.execute(sql, tuple(params))
            rows = cursor.fetchall()
        return [self._row_to_capture(row) for row in rows]

    def get_artifacts(self, capture_id: str) -> Optional[ArtifactSet]:
        sql = f"SELECT {ARTIFACT_COLUMNS} FROM artifact_sets WHERE capture_id = %s"
        with self._lock, self._conn.cursor() as cursor:
            cursor.execute(sql, (capture_id,))
            row = cursor.fetchone()
        if not row:
            return None
        return ArtifactSet(
            artifact_id=row[0],
            capture_id=row[1],
            page_id=row[2],
            lossless_uri=row[3],
            compressed_uri=row[4],
            thumbnail_uri=row[5],
            content_hash=row[6],
            perceptual_hash=row[7],
            created_at=from_db_time(row[8])
        )

    def save_capture(self, record: CaptureRecord, artifacts: ArtifactSet) -> None:
        """
        Atomically persist a CaptureRecord and its ArtifactSet.
        Ensures strict transaction boundaries: both rows or neither.
        """
        if artifacts.capture_id != record.capture_id:
            raise ValueError(f"ArtifactSet {artifacts.artifact_id} does not belong to capture {record.capture_id}")
        if (artifacts.content_hash, artifacts.perceptual_hash) != (record.content_hash, record.perceptual_hash):
            raise ValueError(f"Hash mismatch between capture {record.capture_id} and its artifacts")

        record_sql = f"INSERT INTO capture_records ({CAPTURE_COLUMNS}) VALUES ({', '.join(['%s'] * 13)})"
        artifact_sql = f"INSERT INTO artifact_sets ({ARTIFACT_COLUMNS}) VALUES ({', '.join(['%s'] * 9)})"

        with self._lock, self._conn.cursor() as cursor:
            try:
                self._conn.begin()
                cursor.execute(record_sql, (
                    record.capture_id, record.page_id, record.dom_hash, record.content_hash,
                    record.perceptual_hash, record.image_width, record.image_height,
                    record.diff_score, 1 if record.changed else 0, record.comparison.value,
                    record.etag, record.last_modified, to_db_time(record.created_at)
                ))
                cursor.execute(artifact_sql, (
                    artifacts.artifact_id, artifacts.capture_id, artifacts.page_id,
                    artifacts.lossless_uri, artifacts.compressed_uri, artifacts.thumbnail_uri,
                    artifacts.content_hash, artifacts.perceptual_hash, to_db_time(artifacts.created_at)
                ))
                self._conn.commit()
            except Exception as e:
                self._conn.rollback()
                logger.error(f"[STORE] Rolled back capture {record.capture_id}: {e}")
                raise RuntimeError(f"Failed to save capture {record.capture_id}: {str(e)}") from e

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_page(row) -> MonitoredPage:
        return MonitoredPage(
            page_id=row[0],
            site_id=row[1],
            url=row[2],
            viewport=ViewportClass(row[3]),
            status=PageStatus(row[4]),
            version=row[5],
            last_seen_at=from_db_time(row[6]),
            extracted_text=row[7],
            tags=frozenset(json.loads(row[8])) if row[8] else frozenset(),
            pii_flag=bool(row[9]),
            created_at=from_db_time(row[10])
        )

    @staticmethod
    def _row_to_capture(row) -> CaptureRecord:
        return CaptureRecord(
            capture_id=row[0],
            page_id=row[1],
            dom_hash=row[2],
            content_hash=row[3],
            perceptual_hash=row[4],
            image_width=row[5],
            image_height=row[6],
            diff_score=float(row[7]),
            changed=bool(row[8]),
            comparison=ComparisonMode(row[9]),
            etag=row[10],
            last_modified=row[11],
            created_at=from_db_time(row[12])
        )
