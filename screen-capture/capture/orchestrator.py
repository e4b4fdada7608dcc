"""
FILE DESCRIPTION: Capture pipeline for one CaptureJob.
KEY FUNCTIONS/CLASSES: CaptureOrchestrator

FLOW: status -> processing -> render session (navigate, dismiss interstitials,
lazy load, settle, capture) -> fingerprint -> encode renditions -> OCR (optional)
-> tags -> PII -> upload -> change detection -> persist record + artifacts ->
status -> captured -> release session.
Any stage failure sets the page to FAILED and re-raises a CaptureError with job context.
"""

import threading
import uuid
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FuturesTimeoutError
from contextlib import ExitStack, contextmanager
from typing import Callable, Dict, Optional, Type

from analysis import PIIScanner, TagClassifier
from capture.cancellation import CancellationToken
from capture.core import (
    ENCODE_TIMEOUT,
    OCR_TIMEOUT,
    PII_INDEPENDENT_PASS,
    RENDER_TIMEOUT,
    SETTLE_SECONDS,
    THUMB_QUALITY,
    THUMB_SIZE,
    UPLOAD_TIMEOUT,
    WEBP_QUALITY,
    logger,
)
from capture.errors import (
    CaptureCancelled,
    CaptureError,
    EncodingFailure,
    PersistenceFailure,
    RenderFailure,
    RenderTimeout,
    TextRecognitionFailure,
    UploadFailure,
)
from capture.models import (
    ArtifactSet,
    CaptureJob,
    CaptureRecord,
    CaptureResult,
    PageStatus,
    Renditions,
    utc_now,
)
from detection import ChangeDetector
from fingerprint import compute_fingerprint
from media import FIT_COVER, ImageCodec, TextRecognizer
from rendering import BrowserSession, PageSnapshot, RenderGate, RenderTimeoutError, StepOutcome
from storage import CaptureStore, ObjectStorage, rendition_key

STAGE_STATUS = "status"
STAGE_RENDER = "render"
STAGE_FINGERPRINT = "fingerprint"
STAGE_ENCODE = "encode"
STAGE_OCR = "ocr"
STAGE_TAGS = "tags"
STAGE_PII = "pii"
STAGE_UPLOAD = "upload"
STAGE_DETECT = "detect"
STAGE_PERSIST = "persist"
STAGE_FINALIZE = "finalize"

# (rendition attribute, object name, content type)
UPLOAD_LAYOUT = (
    ("lossless", "original.png", "image/png"),
    ("compressed", "original.webp", "image/webp"),
    ("thumbnail", "thumb.webp", "image/webp"),
)

RedactionHook = Callable[[Renditions, Optional[str]], Renditions]


class StageTimeout(TimeoutError):
    """A bounded collaborator call exceeded its deadline."""
    pass


class CaptureOrchestrator:
    """
    Drives one CaptureJob through the capture pipeline.
    Invariants:
    - Stages run strictly in order; no two stages of one job run concurrently.
    - The render session is released exactly once on every exit path.
    - A failed or cancelled job never leaves its page in PROCESSING and never
      persists a record that references partially uploaded renditions.
    """

    def __init__(
        self,
        store: CaptureStore,
        gate: RenderGate,
        codec: ImageCodec,
        recognizer: TextRecognizer,
        storage: ObjectStorage,
        detector: Optional[ChangeDetector] = None,
        tagger: Optional[TagClassifier] = None,
        pii_scanner: Optional[PIIScanner] = None,
        redaction_hook: Optional[RedactionHook] = None,
        render_timeout: float = RENDER_TIMEOUT,
        settle_seconds: float = SETTLE_SECONDS,
        encode_timeout: float = ENCODE_TIMEOUT,
        ocr_timeout: float = OCR_TIMEOUT,
        upload_timeout: float = UPLOAD_TIMEOUT,
        pii_independent_pass: bool = PII_INDEPENDENT_PASS,
    ):
        self._store = store
        self._gate = gate
        self._codec = codec
        self._recognizer = recognizer
        self._storage = storage
        self._detector = detector or ChangeDetector()
        self._tagger = tagger or TagClassifier()
        self._pii_scanner = pii_scanner or PIIScanner()
        self._redaction_hook = redaction_hook
        self._render_timeout = render_timeout
        self._settle_seconds = settle_seconds
        self._encode_timeout = encode_timeout
        self._ocr_timeout = ocr_timeout
        self._upload_timeout = upload_timeout
        self._pii_independent_pass = pii_independent_pass
        self._overrun_lock = threading.Lock()
        self._overrunning = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def process(self, job: CaptureJob, token: Optional[CancellationToken] = None) -> CaptureResult:
        """Run the full pipeline for job. Raises a CaptureError subclass on failure."""
        token = token or CancellationToken()
        ctx = self._log_ctx(job)
        logger.info(
            f"[CAPTURE] Starting {job.url} ({job.viewport.value} {job.width}x{job.height})",
            extra=ctx,
        )
        try:
            result = self._run(job, token)
        except CaptureError as e:
            self._mark_failed(job, e)
            raise
        except Exception as e:
            error = CaptureError(f"Unexpected failure: {e}", job.job_id, job.url, "unknown")
            self._mark_failed(job, error)
            raise error from e

        logger.info(
            f"[CAPTURE] Captured {job.url} capture={result.capture.capture_id} "
            f"score={result.capture.diff_score:.4f} changed={result.capture.changed} "
            f"mode={result.capture.comparison.value}",
            extra=ctx,
        )
        return result

    @property
    def overrunning_calls(self) -> int:
        """Collaborator calls that missed their deadline and have not returned yet."""
        with self._overrun_lock:
            return len(self._overrunning)

    def close(self) -> None:
        stuck = self.overrunning_calls
        if stuck:
            logger.warning(f"[CAPTURE] Closing with {stuck} timed-out collaborator call(s) still running")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run(self, job: CaptureJob, token: CancellationToken) -> CaptureResult:
        self._checkpoint(job, token, STAGE_STATUS)
        with self._stage(job, STAGE_STATUS, PersistenceFailure):
            self._store.set_status(job.page_id, PageStatus.PROCESSING)

        with ExitStack() as stack:
            self._checkpoint(job, token, STAGE_RENDER)
            with self._stage(job, STAGE_RENDER, RenderFailure, timeout_cls=RenderTimeout):
                session = stack.enter_context(self._gate.session(job.width, job.height))
                snapshot = self._render(job, session)

            self._checkpoint(job, token, STAGE_FINGERPRINT)
            with self._stage(job, STAGE_FINGERPRINT, CaptureError):
                fingerprint = compute_fingerprint(snapshot.screenshot, snapshot.dom)

            self._checkpoint(job, token, STAGE_ENCODE)
            with self._stage(job, STAGE_ENCODE, EncodingFailure):
                renditions = self._bounded(self._encode_timeout, self._encode, snapshot.screenshot)

            text = None
            if job.with_content:
                self._checkpoint(job, token, STAGE_OCR)
                with self._stage(job, STAGE_OCR, TextRecognitionFailure):
                    text = self._bounded(self._ocr_timeout, self._recognizer.recognize, snapshot.screenshot)

            self._checkpoint(job, token, STAGE_TAGS)
            with self._stage(job, STAGE_TAGS, CaptureError):
                tags = self._tagger.classify(job.url, text)

            self._checkpoint(job, token, STAGE_PII)
            pii_flag, renditions = self._scan_pii(job, text, renditions)
            if renditions.lossless != snapshot.screenshot:
                # Record and artifact hashes describe the stored lossless image, so follow the redaction.
                with self._stage(job, STAGE_PII, EncodingFailure):
                    fingerprint = compute_fingerprint(renditions.lossless, snapshot.dom)

            capture_id = str(uuid.uuid4())
            self._checkpoint(job, token, STAGE_UPLOAD)
            with self._stage(job, STAGE_UPLOAD, UploadFailure):
                uris = self._bounded(self._upload_timeout, self._upload, job, capture_id, renditions)

            self._checkpoint(job, token, STAGE_DETECT)
            with self._stage(job, STAGE_DETECT, PersistenceFailure):
                previous = self._store.latest_capture(job.page_id)
                verdict = self._detector.compare(fingerprint, previous)

            now = utc_now()
            record = CaptureRecord(
                capture_id=capture_id,
                page_id=job.page_id,
                dom_hash=fingerprint.dom_hash,
                content_hash=fingerprint.content_hash,
                perceptual_hash=fingerprint.perceptual_hash,
                image_width=fingerprint.width,
                image_height=fingerprint.height,
                diff_score=verdict.diff_score,
                changed=verdict.changed,
                comparison=verdict.comparison,
                etag=snapshot.etag,
                last_modified=snapshot.last_modified,
                created_at=now,
            )
            artifacts = ArtifactSet(
                artifact_id=str(uuid.uuid4()),
                capture_id=capture_id,
                page_id=job.page_id,
                lossless_uri=uris["lossless"],
                compressed_uri=uris["compressed"],
                thumbnail_uri=uris["thumbnail"],
                content_hash=fingerprint.content_hash,
                perceptual_hash=fingerprint.perceptual_hash,
                created_at=now,
            )

            # Last cancellation point: past here the record becomes visible to readers.
            self._checkpoint(job, token, STAGE_PERSIST)
            with self._stage(job, STAGE_PERSIST, PersistenceFailure):
                self._store.save_capture(record, artifacts)

            with self._stage(job, STAGE_FINALIZE, PersistenceFailure):
                self._store.complete_page(job.page_id, text, tags, pii_flag, now)

        return CaptureResult(
            job_id=job.job_id,
            page_id=job.page_id,
            capture=record,
            artifacts=artifacts,
            tags=tags,
            pii_flag=pii_flag,
            text=text,
        )

    def _render(self, job: CaptureJob, session: BrowserSession) -> PageSnapshot:
        ctx = self._log_ctx(job)
        navigation = session.navigate(job.url, self._render_timeout)
        if navigation.status >= 400:
            logger.warning(f"[RENDER] {job.url} answered HTTP {navigation.status}", extra=ctx)
        else:
            logger.info(f"[RENDER] {job.url} -> HTTP {navigation.status}", extra=ctx)

        self._discard(job, session.dismiss_interstitials())
        self._discard(job, session.trigger_lazy_load())
        session.settle(self._settle_seconds)
        return session.capture()

    def _encode(self, screenshot: bytes) -> Renditions:
        compressed = self._codec.encode(screenshot, "WEBP", WEBP_QUALITY)
        thumb = self._codec.resize(screenshot, THUMB_SIZE[0], THUMB_SIZE[1], FIT_COVER)
        return Renditions(
            lossless=screenshot,
            compressed=compressed,
            thumbnail=self._codec.encode(thumb, "WEBP", THUMB_QUALITY),
        )

    def _scan_pii(self, job: CaptureJob, text: Optional[str], renditions: Renditions):
        pii_text = text
        if self._pii_independent_pass:
            # Scan what is actually stored: the lossless rendition.
            with self._stage(job, STAGE_PII, TextRecognitionFailure):
                pii_text = self._bounded(self._ocr_timeout, self._recognizer.recognize, renditions.lossless)

        with self._stage(job, STAGE_PII, CaptureError):
            found = self._pii_scanner.scan(pii_text)
        if not found:
            return False, renditions

        logger.warning(
            f"[CAPTURE] PII detected ({', '.join(t.value for t in found)}) on {job.url}",
            extra=self._log_ctx(job),
        )
        if self._redaction_hook is not None:
            with self._stage(job, STAGE_PII, EncodingFailure):
                renditions = self._redaction_hook(renditions, pii_text)
        return True, renditions

    def _upload(self, job: CaptureJob, capture_id: str, renditions: Renditions) -> Dict[str, str]:
        uris = {}
        for attribute, filename, content_type in UPLOAD_LAYOUT:
            key = rendition_key(job.site_id, job.page_id, capture_id, filename)
            uris[attribute] = self._storage.put(key, getattr(renditions, attribute), content_type)
        return uris

    # ------------------------------------------------------------------
    # Failure containment helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _stage(self, job: CaptureJob, stage: str, error_cls: Type[CaptureError],
               timeout_cls: Optional[Type[CaptureError]] = None):
        """Wrap any failure inside a stage into error_cls carrying job context."""
        try:
            yield
        except CaptureError:
            raise
        except Exception as e:
            cls = error_cls
            if timeout_cls is not None and isinstance(e, (RenderTimeoutError, StageTimeout)):
                cls = timeout_cls
            raise cls(f"{stage} failed: {e}", job.job_id, job.url, stage) from e

    def _bounded(self, timeout: float, fn, *args):
        """
        Run a slow collaborator call on its own thread with a deadline.
        The deadline starts when the call starts. An overrunning call keeps its
        thread until it returns and is counted in overrunning_calls meanwhile.
        """
        name = getattr(fn, "__name__", repr(fn))
        future: Future = Future()

        def call():
            future.set_running_or_notify_cancel()
            try:
                future.set_result(fn(*args))
            except BaseException as e:
                future.set_exception(e)

        threading.Thread(target=call, name=f"capture-stage-{name}", daemon=True).start()
        try:
            return future.result(timeout=timeout)
        except FuturesTimeoutError:
            with self._overrun_lock:
                self._overrunning.add(future)
            future.add_done_callback(self._forget_overrun)
            raise StageTimeout(f"{name} exceeded {timeout}s") from None

    def _forget_overrun(self, future: Future) -> None:
        with self._overrun_lock:
            self._overrunning.discard(future)

    def _checkpoint(self, job: CaptureJob, token: CancellationToken, stage: str) -> None:
        if token.cancelled:
            raise CaptureCancelled("Job cancelled", job.job_id, job.url, stage)

    def _discard(self, job: CaptureJob, outcome: StepOutcome) -> None:
        """Best-effort step outcomes are logged and deliberately dropped."""
        if not outcome.ok:
            logger.warning(f"[RENDER] Ignoring failed best-effort step: {outcome.error}",
                           extra=self._log_ctx(job))

    def _mark_failed(self, job: CaptureJob, error: CaptureError) -> None:
        ctx = self._log_ctx(job)
        logger.error(f"[CAPTURE] Capture failed: {error}", extra=ctx)
        try:
            self._store.set_status(job.page_id, PageStatus.FAILED)
        except Exception as e:
            logger.error(f"[CAPTURE] Could not mark page {job.page_id} as failed: {e}", extra=ctx)

    @staticmethod
    def _log_ctx(job: CaptureJob) -> dict:
        return {"context": f"job-{job.job_id}"}
