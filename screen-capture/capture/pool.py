"""
Worker pool for capture jobs.
Jobs run concurrently across pool threads; each job is fully sequential inside
the orchestrator. Render concurrency is bounded separately by the RenderGate.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Iterable, List, Optional

from capture.cancellation import CancellationToken
from capture.core import MAX_WORKERS, logger
from capture.models import CaptureJob, CaptureResult
from capture.orchestrator import CaptureOrchestrator


class CaptureHandle:
    """Tracks one submitted job: its future and its cancellation token."""

    def __init__(self, job: CaptureJob, future: Future, token: CancellationToken):
        self.job = job
        self.future = future
        self.token = token

    def cancel(self) -> bool:
        """
        Cancel the job. A queued job is dropped before it starts (page status untouched);
        a running job stops at its next stage boundary and its page is marked FAILED.
        Returns True if the job was dropped before starting.
        """
        self.token.cancel()
        return self.future.cancel()

    def result(self, timeout: Optional[float] = None) -> CaptureResult:
        return self.future.result(timeout=timeout)

    def done(self) -> bool:
        return self.future.done()


class CapturePool:
    """
    FLOW: Accepts CaptureJobs -> Runs CaptureOrchestrator.process on a bounded thread pool ->
    Exposes CaptureHandles for results and cancellation.
    """

    def __init__(self, orchestrator: CaptureOrchestrator, max_workers: int = MAX_WORKERS):
        self._orchestrator = orchestrator
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="capture-worker")
        self._lock = threading.Lock()
        self._handles: List[CaptureHandle] = []

    def submit(self, job: CaptureJob) -> CaptureHandle:
        token = CancellationToken()
        future = self._executor.submit(self._orchestrator.process, job, token)
        handle = CaptureHandle(job, future, token)
        with self._lock:
            self._handles = [h for h in self._handles if not h.done()]
            self._handles.append(handle)
        logger.info(f"[POOL] Submitted {job.url} ({job.viewport.value}) priority={job.priority}",
                    extra={"context": f"job-{job.job_id}"})
        return handle

    def submit_all(self, jobs: Iterable[CaptureJob]) -> List[CaptureHandle]:
        # Higher priority first; the executor itself is FIFO.
        ordered = sorted(jobs, key=lambda job: job.priority, reverse=True)
        return [self.submit(job) for job in ordered]

    def cancel_all(self) -> None:
        with self._lock:
            handles = list(self._handles)
        for handle in handles:
            handle.cancel()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown(wait=True)
        return False
