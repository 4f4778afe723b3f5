from __future__ import annotations


class ValidationError(ValueError):
    """Caller-supplied data was rejected before anything was persisted."""


class JobNotFoundError(LookupError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job {job_id} not found")
        self.job_id = job_id


class ResultExpiredError(RuntimeError):
    def __init__(self, job_id: str) -> None:
        super().__init__("Job result has expired")
        self.job_id = job_id


class StoreError(RuntimeError):
    """Persistence failure (constraint violation or sqlite I/O)."""


class StagingError(OSError):
    """Writing an uploaded payload to the scratch directory failed."""


class UnknownJobTypeError(ValueError):
    def __init__(self, job_type: str) -> None:
        super().__init__(f"unknown job type: {job_type}")
        self.job_type = job_type


class MissingImageError(ValueError):
    def __init__(self) -> None:
        super().__init__("no image path found")


# ---------------- backend failures ----------------

class GatewayError(Exception):
    """Base for every failure reported by, or while talking to, the inference backend."""


class ModelNotFoundError(GatewayError):
    def __init__(self, message: str = "model not found") -> None:
        super().__init__(message)


class InsufficientResourcesError(GatewayError):
    def __init__(self, message: str = "model requires more system memory") -> None:
        super().__init__(message)


class BackendError(GatewayError):
    pass


class TransportError(GatewayError):
    pass
