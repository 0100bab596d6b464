class QueueError(Exception):
    """Base class for page queue errors"""


class ValidationError(QueueError):
    """Rejected input; the job is never created"""


class NotFoundError(QueueError):
    def __init__(self, job_id: int):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class StoreError(QueueError):
    """Job store unavailable or schema not provisioned"""


class InvalidTransitionError(StoreError):
    def __init__(self, job_id: int, current: str, requested: str):
        super().__init__(f"Job {job_id} cannot move from {current} to {requested}")
        self.job_id = job_id
        self.current = current
        self.requested = requested
