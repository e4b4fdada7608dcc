"""
Verification Scenarios for the capture pipeline
"""

import hashlib
import time
import unittest
from unittest.mock import MagicMock

from capture.cancellation import CancellationToken
from capture.errors import (
    CaptureCancelled,
    EncodingFailure,
    PersistenceFailure,
    RenderFailure,
    RenderTimeout,
    TextRecognitionFailure,
    UploadFailure,
)
from capture.models import ComparisonMode, PageStatus, Renditions, ViewportClass
from capture.orchestrator import CaptureOrchestrator
from capture.pool import CapturePool
from capture.registration import register_capture
from detection import ChangeDetector
from fakes import (
    DEFAULT_DOM,
    FakeBrowser,
    FakeCodec,
    FakeObjectStorage,
    FakeRecognizer,
    InMemoryCaptureStore,
    make_png,
)
from rendering import PageSnapshot, RenderGate, RenderTimeoutError, StepOutcome

URL = "https://www.example.com/rooms"


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self):
        self.store = InMemoryCaptureStore()
        self.storage = FakeObjectStorage()
        self.recognizer = FakeRecognizer()
        self.codec = FakeCodec()
        self.browser = FakeBrowser()
        self.orchestrators = []

    def tearDown(self):
        for orchestrator in self.orchestrators:
            orchestrator.close()

    def build(self, **options):
        gate = RenderGate(self.browser, max_sessions=options.pop("max_sessions", 2), acquire_timeout=1)
        options.setdefault("settle_seconds", 0)
        options.setdefault("pii_independent_pass", False)
        options.setdefault("detector", ChangeDetector(threshold=0.1))
        orchestrator = CaptureOrchestrator(
            store=self.store,
            gate=gate,
            codec=self.codec,
            recognizer=self.recognizer,
            storage=self.storage,
            **options
        )
        self.orchestrators.append(orchestrator)
        return orchestrator

    def job(self, with_content=False, url=URL):
        return register_capture(self.store, url, [ViewportClass.DESKTOP], with_content=with_content)[0]

    def page(self, job):
        return self.store.get_page(job.page_id)


class TestSuccessfulCapture(OrchestratorTestCase):
    def test_first_capture_is_baseline(self):
        job = self.job()
        result = self.build().process(job)

        self.assertEqual(result.capture.comparison, ComparisonMode.BASELINE)
        self.assertEqual(result.capture.diff_score, 0.0)
        self.assertFalse(result.capture.changed)

        page = self.page(job)
        self.assertEqual(page.status, PageStatus.CAPTURED)
        self.assertEqual(page.version, 1)
        self.assertIsNotNone(page.last_seen_at)
        self.assertEqual(self.store.status_history[job.page_id], [PageStatus.PROCESSING, PageStatus.CAPTURED])

    def test_session_steps_run_in_order_and_release_once(self):
        job = self.job()
        self.build().process(job)

        session = self.browser.sessions[0]
        self.assertEqual(
            session.calls,
            ["navigate", "dismiss_interstitials", "trigger_lazy_load", "settle", "capture"],
        )
        self.assertEqual((session.width, session.height), (1440, 900))
        self.assertEqual(session.close_calls, 1)

    def test_renditions_uploaded_under_capture_folder(self):
        job = self.job()
        result = self.build().process(job)
        capture_id = result.capture.capture_id

        prefix = f"screenshots/{job.site_id}/{job.page_id}/{capture_id}/"
        self.assertEqual(
            sorted(self.storage.objects),
            sorted(prefix + name for name in ("original.png", "original.webp", "thumb.webp")),
        )
        self.assertEqual(result.artifacts.lossless_uri, f"https://cdn.test/{prefix}original.png")
        self.assertEqual(result.artifacts.compressed_uri, f"https://cdn.test/{prefix}original.webp")
        self.assertEqual(result.artifacts.thumbnail_uri, f"https://cdn.test/{prefix}thumb.webp")
        self.assertTrue(self.storage.objects[prefix + "original.webp"].startswith(b"webp:85:"))
        self.assertTrue(self.storage.objects[prefix + "thumb.webp"].startswith(b"webp:80:resized:300x200:"))

    def test_artifact_hashes_agree_with_record(self):
        job = self.job()
        result = self.build().process(job)

        lossless = self.storage.objects[
            f"screenshots/{job.site_id}/{job.page_id}/{result.capture.capture_id}/original.png"
        ]
        self.assertEqual(result.capture.content_hash, hashlib.sha256(lossless).hexdigest())
        self.assertEqual(result.artifacts.content_hash, result.capture.content_hash)
        self.assertEqual(result.artifacts.perceptual_hash, result.capture.perceptual_hash)
        self.assertEqual(result.artifacts.capture_id, result.capture.capture_id)
        self.assertIs(self.store.get_artifacts(result.capture.capture_id), result.artifacts)

    def test_url_tags_without_content(self):
        job = self.job()
        result = self.build().process(job)

        self.assertIsNone(result.text)
        self.assertEqual(result.tags, frozenset({"accommodation"}))
        self.assertEqual(self.recognizer.inputs, [])

    def test_cache_validators_recorded(self):
        self.browser.snapshots = [
            PageSnapshot(make_png(144, 90), DEFAULT_DOM, {"etag": '"v1"', "last-modified": "Tue, 06 Jan 2026 05:32:41 GMT"})
        ]
        result = self.build().process(self.job())
        self.assertEqual(result.capture.etag, '"v1"')
        self.assertEqual(result.capture.last_modified, "Tue, 06 Jan 2026 05:32:41 GMT")

    def test_best_effort_failures_do_not_abort(self):
        self.browser.session_options = {
            "status": 404,
            "dismiss_outcome": StepOutcome.failed("dismiss_interstitials", "no banner found"),
            "lazy_outcome": StepOutcome.failed("trigger_lazy_load", "scroll blocked"),
        }
        job = self.job()
        self.build().process(job)
        self.assertEqual(self.page(job).status, PageStatus.CAPTURED)


class TestChangeTracking(OrchestratorTestCase):
    def test_second_identical_capture_scores_zero(self):
        orchestrator = self.build()
        job = self.job()
        orchestrator.process(job)

        again = self.job()
        self.assertEqual(again.page_id, job.page_id)
        self.assertEqual(self.page(again).version, 2)
        self.assertEqual(self.page(again).status, PageStatus.PENDING)

        result = orchestrator.process(again)
        self.assertEqual(result.capture.comparison, ComparisonMode.IDENTICAL)
        self.assertEqual(result.capture.diff_score, 0.0)
        self.assertFalse(result.capture.changed)
        self.assertEqual(len(self.store.list_captures(job.page_id)), 2)

    def test_visual_change_is_detected(self):
        self.browser.snapshots = [
            PageSnapshot(make_png(144, 90), DEFAULT_DOM),
            PageSnapshot(make_png(144, 90, flipped=True), DEFAULT_DOM),
        ]
        orchestrator = self.build()
        job = self.job()
        orchestrator.process(job)
        result = orchestrator.process(job)

        self.assertEqual(result.capture.comparison, ComparisonMode.VISUAL)
        self.assertGreater(result.capture.diff_score, 0.5)
        self.assertTrue(result.capture.changed)

    def test_resized_rendition_falls_back_to_dom(self):
        self.browser.snapshots = [
            PageSnapshot(make_png(144, 90), DEFAULT_DOM),
            PageSnapshot(make_png(39, 84), "<html><body><h1>Sold out</h1></body></html>"),
        ]
        orchestrator = self.build()
        job = self.job()
        orchestrator.process(job)
        result = orchestrator.process(job)

        self.assertEqual(result.capture.comparison, ComparisonMode.STRUCTURAL)
        self.assertEqual(result.capture.diff_score, 0.5)
        self.assertTrue(result.capture.changed)


class TestFailureContainment(OrchestratorTestCase):
    def assertFailedCleanly(self, job, sessions=1):
        self.assertEqual(self.page(job).status, PageStatus.FAILED)
        self.assertEqual(self.store.list_captures(job.page_id), [])
        self.assertEqual(len(self.browser.sessions), sessions)
        for session in self.browser.sessions:
            self.assertEqual(session.close_calls, 1)

    def test_upload_failure_leaves_no_record(self):
        self.storage.fail_on = "thumb.webp"
        job = self.job()

        with self.assertRaises(UploadFailure) as cm:
            self.build().process(job)

        self.assertEqual(cm.exception.stage, "upload")
        self.assertEqual(cm.exception.job_id, job.job_id)
        self.assertEqual(cm.exception.url, URL)
        self.assertFailedCleanly(job)

    def test_render_timeout(self):
        self.browser.session_options = {"navigate_error": RenderTimeoutError("navigation exceeded 30s")}
        job = self.job()

        with self.assertRaises(RenderTimeout) as cm:
            self.build().process(job)

        self.assertIsInstance(cm.exception, RenderFailure)
        self.assertEqual(cm.exception.stage, "render")
        self.assertFailedCleanly(job)
        self.assertEqual(self.storage.objects, {})

    def test_browser_open_failure(self):
        self.browser.open_error = RuntimeError("chromium missing")
        job = self.job()

        with self.assertRaises(RenderFailure) as cm:
            self.build().process(job)

        self.assertNotIsInstance(cm.exception, RenderTimeout)
        self.assertFailedCleanly(job, sessions=0)

    def test_encoding_failure(self):
        self.codec.fail = True
        job = self.job()

        with self.assertRaises(EncodingFailure):
            self.build().process(job)
        self.assertFailedCleanly(job)

    def test_ocr_timeout(self):
        self.recognizer.delay = 0.5
        job = self.job(with_content=True)

        with self.assertRaises(TextRecognitionFailure) as cm:
            self.build(ocr_timeout=0.05).process(job)

        self.assertEqual(cm.exception.stage, "ocr")
        self.assertFailedCleanly(job)

    def test_persist_failure_marks_page_failed(self):
        self.store.fail_save = True
        job = self.job()

        with self.assertRaises(PersistenceFailure) as cm:
            self.build().process(job)

        self.assertEqual(cm.exception.stage, "persist")
        self.assertFailedCleanly(job)

    def test_original_error_survives_failed_status_write(self):
        self.codec.fail = True
        self.store.fail_status = PageStatus.FAILED
        job = self.job()

        with self.assertRaises(EncodingFailure):
            self.build().process(job)
        self.assertEqual(self.page(job).status, PageStatus.PROCESSING)

    def test_status_write_failure_never_opens_a_session(self):
        self.store.fail_status = PageStatus.PROCESSING
        job = self.job()

        with self.assertRaises(PersistenceFailure) as cm:
            self.build().process(job)

        self.assertEqual(cm.exception.stage, "status")
        self.assertEqual(self.browser.sessions, [])

    def test_unexpected_detector_error_is_wrapped(self):
        job = self.job()
        detector = MagicMock()
        detector.compare.side_effect = KeyError("boom")
        with self.assertRaises(PersistenceFailure) as cm:
            self.build(detector=detector).process(job)
        self.assertEqual(cm.exception.stage, "detect")
        self.assertIsInstance(cm.exception.__cause__, KeyError)


class TestCancellation(OrchestratorTestCase):
    def test_cancel_during_render_releases_session(self):
        token = CancellationToken()
        self.browser.session_options = {"on_settle": token.cancel}
        job = self.job()

        with self.assertRaises(CaptureCancelled) as cm:
            self.build().process(job, token)

        self.assertEqual(cm.exception.stage, "fingerprint")
        self.assertEqual(self.browser.sessions[0].close_calls, 1)
        self.assertEqual(self.store.list_captures(job.page_id), [])
        self.assertEqual(self.storage.objects, {})
        self.assertEqual(self.page(job).status, PageStatus.FAILED)

    def test_cancel_before_start(self):
        token = CancellationToken()
        token.cancel()
        job = self.job()

        with self.assertRaises(CaptureCancelled):
            self.build().process(job, token)
        self.assertEqual(self.browser.sessions, [])
        self.assertEqual(self.page(job).status, PageStatus.FAILED)


class TestPIIHandling(OrchestratorTestCase):
    def test_shared_extraction_flags_pii(self):
        self.recognizer.text = "Questions? Email bookings@example.com to reserve a room"
        job = self.job(with_content=True, url="https://www.example.com/")
        result = self.build().process(job)

        self.assertTrue(result.pii_flag)
        page = self.page(job)
        self.assertTrue(page.pii_flag)
        self.assertEqual(page.extracted_text, self.recognizer.text)
        self.assertEqual(page.tags, frozenset({"accommodation"}))
        self.assertEqual(len(self.recognizer.inputs), 1)

    def test_clean_text_not_flagged(self):
        self.recognizer.text = "Spacious rooms with a view"
        result = self.build().process(self.job(with_content=True))
        self.assertFalse(result.pii_flag)

    def test_independent_pass_scans_lossless_rendition(self):
        screenshot = make_png(144, 90)
        self.browser.snapshots = [PageSnapshot(screenshot, DEFAULT_DOM)]
        self.recognizer.text = "Applicant SSN 123-45-6789"
        job = self.job(with_content=False)

        result = self.build(pii_independent_pass=True).process(job)

        self.assertTrue(result.pii_flag)
        self.assertIsNone(result.text)
        self.assertEqual(self.recognizer.inputs, [screenshot])
        self.assertIsNone(self.page(job).extracted_text)

    def test_redaction_hook_replaces_renditions_before_upload(self):
        self.recognizer.text = "Card 4111 1111 1111 1111"
        redacted_png = make_png(144, 90, flipped=True)
        redacted = Renditions(lossless=redacted_png, compressed=b"redacted-webp", thumbnail=b"redacted-thumb")
        hook = MagicMock(return_value=redacted)
        job = self.job(with_content=True)

        result = self.build(redaction_hook=hook).process(job)

        hook.assert_called_once()
        self.assertEqual(hook.call_args[0][1], self.recognizer.text)
        prefix = f"screenshots/{job.site_id}/{job.page_id}/{result.capture.capture_id}/"
        self.assertEqual(self.storage.objects[prefix + "original.png"], redacted_png)
        self.assertEqual(self.storage.objects[prefix + "thumb.webp"], b"redacted-thumb")

    def test_hashes_follow_redacted_original(self):
        screenshot = make_png(144, 90)
        redacted_png = make_png(144, 90, flipped=True)
        self.browser.snapshots = [PageSnapshot(screenshot, DEFAULT_DOM)]
        self.recognizer.text = "Card 4111 1111 1111 1111"
        hook = MagicMock(return_value=Renditions(redacted_png, b"redacted-webp", b"redacted-thumb"))
        job = self.job(with_content=True)

        result = self.build(redaction_hook=hook).process(job)

        prefix = f"screenshots/{job.site_id}/{job.page_id}/{result.capture.capture_id}/"
        stored = hashlib.sha256(self.storage.objects[prefix + "original.png"]).hexdigest()
        self.assertEqual(stored, result.artifacts.content_hash)
        self.assertEqual(stored, result.capture.content_hash)
        self.assertNotEqual(stored, hashlib.sha256(screenshot).hexdigest())
        self.assertEqual(self.store.get_artifacts(result.capture.capture_id).content_hash, stored)

    def test_unreadable_redaction_fails_job(self):
        self.recognizer.text = "Card 4111 1111 1111 1111"
        hook = MagicMock(return_value=Renditions(b"not-an-image", b"redacted-webp", b"redacted-thumb"))
        job = self.job(with_content=True)

        with self.assertRaises(EncodingFailure) as cm:
            self.build(redaction_hook=hook).process(job)

        self.assertEqual(cm.exception.stage, "pii")
        self.assertEqual(self.store.list_captures(job.page_id), [])
        self.assertEqual(self.storage.objects, {})

    def test_redaction_hook_not_called_without_pii(self):
        hook = MagicMock()
        self.build(redaction_hook=hook).process(self.job(with_content=True))
        hook.assert_not_called()


class TestStageDeadlines(OrchestratorTestCase):
    def test_deadline_counts_only_the_call_itself(self):
        # More concurrent jobs than any shared stage pool would have threads.
        self.recognizer.delay = 0.2
        jobs = [self.job(with_content=True, url=f"{URL}/{i}") for i in range(16)]
        orchestrator = self.build(ocr_timeout=0.8, max_sessions=16)

        with CapturePool(orchestrator, max_workers=16) as pool:
            handles = pool.submit_all(jobs)
            results = [handle.result(timeout=10) for handle in handles]

        self.assertEqual(len(results), 16)
        for job in jobs:
            self.assertEqual(self.page(job).status, PageStatus.CAPTURED)
        self.assertEqual(orchestrator.overrunning_calls, 0)

    def test_overrunning_call_is_tracked_until_it_returns(self):
        self.recognizer.delay = 0.3
        orchestrator = self.build(ocr_timeout=0.05)

        with self.assertRaises(TextRecognitionFailure):
            orchestrator.process(self.job(with_content=True))
        self.assertEqual(orchestrator.overrunning_calls, 1)

        deadline = time.monotonic() + 5
        while orchestrator.overrunning_calls and time.monotonic() < deadline:
            time.sleep(0.02)
        self.assertEqual(orchestrator.overrunning_calls, 0)


if __name__ == '__main__':
    unittest.main()
