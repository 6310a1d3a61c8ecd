"""Error types shared by the job client, the orchestrator and the record store.

Every error carries the same four fields so HTTP routes and observers can
render any failure the same way:

    message  human readable summary
    status   transport status code, when a response was received
    code     same value as ``status``
    details  raw response body or the underlying exception text
"""

from typing import Any, Optional


class AppError(Exception):
    """Base error. Subclasses only change the default message and HTTP status."""

    message: str = "Unexpected error"
    http_status: int = 500

    def __init__(
        self,
        message: Optional[str] = None,
        status: Optional[int] = None,
        details: Any = None,
    ):
        if message:
            self.message = message
        self.status = status
        self.code = status
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        details = self.details
        if details is not None and not isinstance(details, (str, int, float, bool, list, dict)):
            details = str(details)
        return {"error": self.message, "details": details, "code": self.code}


class ValidationError(AppError):
    message = "Missing required fields"
    http_status = 400


class TransportError(AppError):
    message = "Remote request failed"


class UploadError(TransportError):
    message = "Failed to upload image"


class SubmitError(TransportError):
    message = "Failed to start video generation"


class StatusError(TransportError):
    message = "Failed to fetch generation status"


class StoreError(TransportError):
    message = "GridDB operation failed"


class RemoteFailure(AppError):
    message = "Video generation failed"
    http_status = 502
