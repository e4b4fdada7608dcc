import threading


class CancellationToken:
    """
    Cooperative cancellation flag shared between a job's submitter and its worker.
    The orchestrator checks it before every stage.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
