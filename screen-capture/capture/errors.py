from typing import Optional


class CaptureError(Exception):
    """
    Base failure of a capture job.
    Carries the job context needed for logging/alerting.
    """

    def __init__(self, message: str, job_id: Optional[str] = None,
                 url: Optional[str] = None, stage: Optional[str] = None):
        super().__init__(message)
        self.job_id = job_id
        self.url = url
        self.stage = stage

    def __str__(self):
        base = super().__str__()
        return f"{base} (job={self.job_id}, url={self.url}, stage={self.stage})"


class RenderFailure(CaptureError):
    """Session setup or navigation failed."""
    pass


class RenderTimeout(RenderFailure):
    """Navigation exceeded its hard deadline."""
    pass


class EncodingFailure(CaptureError):
    """Image codec rejected the screenshot."""
    pass


class TextRecognitionFailure(CaptureError):
    """Text recognition failed or exceeded its deadline."""
    pass


class UploadFailure(CaptureError):
    """
    Object storage write failed. Renditions already uploaded for the job are
    orphaned and never referenced by a record.
    """
    pass


class PersistenceFailure(CaptureError):
    """Database read/write failed."""
    pass


class CaptureCancelled(CaptureError):
    """The job was cancelled before completion."""
    pass


class RecoverableStepFailure(Exception):
    """
    Failure of a best-effort step (interstitial dismissal, lazy-load trigger).
    Reported through a StepOutcome, never raised out of the pipeline.
    """
    pass
