import sys
import os
import time
import argparse
from concurrent.futures import wait

import pymysql

# Inject the screen-capture directory into sys.path
# so the sub-packages (capture, rendering, fingerprint, ...) are resolvable.
sys.path.append(os.path.join(os.path.dirname(__file__), "screen-capture"))

from capture.core import DB_CONFIG, MAX_RENDER_SESSIONS, MAX_WORKERS, logger
from capture.errors import CaptureError
from capture.history import page_history
from capture.models import ViewportClass
from capture.orchestrator import CaptureOrchestrator
from capture.pool import CapturePool
from capture.registration import register_capture
from media import PillowImageCodec, TesseractTextRecognizer
from rendering import RenderGate
from rendering.playwright_backend import PlaywrightBrowserService
from storage import MySQLCaptureStore, S3ObjectStorage


def verify_schema_or_exit(connection):
    """
    Startup Guard: Verify all required database tables exist.
    If any table is missing, print clear error and exit cleanly.
    """
    required_tables = [
        'sites',
        'monitored_pages',
        'capture_records',
        'artifact_sets',
    ]

    try:
        with connection.cursor() as cursor:
            cursor.execute("SHOW TABLES")
            existing_tables = {row[0] for row in cursor.fetchall()}
    except Exception as e:
        print(f"SCHEMA_VERIFICATION_ERROR: {e}")
        sys.exit(1)

    missing_tables = [table for table in required_tables if table not in existing_tables]
    if missing_tables:
        print("\n" + "=" * 60)
        print("DATABASE NOT INITIALIZED")
        print("=" * 60)
        print("\nThe following required tables are missing:")
        for table in missing_tables:
            print(f"  - {table}")
        print("\nPlease run the database initialization script: database/init.sql")
        print("=" * 60 + "\n")
        sys.exit(1)


def get_db_connection():
    """Creates connection using authoritative DB_CONFIG."""
    try:
        conn = pymysql.connect(**DB_CONFIG)
    except Exception as e:
        print(f"DATABASE_ERROR: Failed to connect to MySQL: {e}")
        sys.exit(1)
    verify_schema_or_exit(conn)
    return conn


class CaptureSessionManager:
    """
    Wires the concrete collaborators (MySQL, Playwright, Pillow, Tesseract, S3)
    and runs one batch of capture jobs to completion.
    """

    def __init__(self, workers=MAX_WORKERS, render_sessions=MAX_RENDER_SESSIONS):
        self.connection = get_db_connection()
        self.store = MySQLCaptureStore(self.connection)
        self.workers = workers
        self.render_sessions = render_sessions
        self.start_time = time.time()

    def run(self, urls, viewports, with_content=False, priority=5):
        jobs = []
        for url in urls:
            try:
                jobs.extend(register_capture(self.store, url, viewports,
                                             with_content=with_content, priority=priority))
            except ValueError as e:
                logger.error(f"[REGISTER] Skipping {url}: {e}")

        if not jobs:
            print("SESSION_ABORT: Nothing to capture.")
            return []

        results, failures = [], []
        with PlaywrightBrowserService(workers=self.render_sessions) as browser:
            gate = RenderGate(browser, max_sessions=self.render_sessions)
            orchestrator = CaptureOrchestrator(
                store=self.store,
                gate=gate,
                codec=PillowImageCodec(),
                recognizer=TesseractTextRecognizer(),
                storage=S3ObjectStorage.from_env(),
            )
            with orchestrator, CapturePool(orchestrator, max_workers=self.workers) as pool:
                handles = pool.submit_all(jobs)
                try:
                    wait([handle.future for handle in handles])
                except KeyboardInterrupt:
                    logger.warning("[POOL] Interrupted, cancelling outstanding jobs")
                    pool.cancel_all()
                    raise

                for handle in handles:
                    try:
                        results.append(handle.result())
                    except CaptureError as e:
                        failures.append((handle.job, e))

        self._print_summary(results, failures)
        return results

    def print_history(self, page_id, limit=None):
        history = page_history(self.store, page_id, limit=limit)
        if history is None:
            print(f"Unknown page: {page_id}")
            return

        page = history.page
        print("\n==============================")
        print("PAGE HISTORY")
        print("==============================")
        print(f"URL:              {page.url} ({page.viewport.value})")
        print(f"Status:           {page.status.value} (version {page.version})")
        print(f"Captures:         {history.total_captures}")
        print(f"Last change:      {history.last_change_at or '-'}")
        print(f"Avg diff score:   {history.average_diff_score:.4f}")
        for entry in history.entries:
            record = entry.capture
            location = entry.artifacts.compressed_uri if entry.artifacts else "-"
            marker = "*" if record.changed else " "
            print(f" {marker} {record.created_at}  {record.diff_score:.4f}  "
                  f"{record.comparison.value:<10}  {location}")
        print("==============================\n")

    def _print_summary(self, results, failures):
        duration = time.time() - self.start_time
        changed = sum(1 for result in results if result.capture.changed)
        flagged = sum(1 for result in results if result.pii_flag)

        print("\n==============================")
        print("CAPTURE SESSION SUMMARY")
        print("==============================")
        print(f"Duration:         {duration:.2f} seconds")
        print(f"Captured:         {len(results)}")
        print(f"Changed:          {changed}")
        print(f"PII flagged:      {flagged}")
        print(f"Failed:           {len(failures)}")
        for job, error in failures:
            print(f"  - {job.url} ({job.viewport.value}): {type(error).__name__} at {error.stage}")
        print("==============================\n")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Screen Capture CLI")
    parser.add_argument("urls", nargs="*", help="URLs to capture")
    parser.add_argument("--viewport", choices=[v.value for v in ViewportClass], action="append",
                        help="Viewport class to capture (repeatable, default: all)")
    parser.add_argument("--with-content", action="store_true", help="Extract page text via OCR")
    parser.add_argument("--priority", type=int, default=5, help="Job priority (higher runs first)")
    parser.add_argument("--workers", type=int, default=MAX_WORKERS, help="Concurrent capture jobs")
    parser.add_argument("--history", metavar="PAGE_ID", help="Print the capture history of a page and exit")
    parser.add_argument("--limit", type=int, default=None, help="Max history entries to print")
    args = parser.parse_args()

    manager = CaptureSessionManager(workers=args.workers)
    if args.history:
        manager.print_history(args.history, limit=args.limit)
    elif not args.urls:
        parser.error("at least one URL is required")
    else:
        viewports = [ViewportClass(v) for v in args.viewport] if args.viewport else list(ViewportClass)
        manager.run(args.urls, viewports, with_content=args.with_content, priority=args.priority)
