"""
Error taxonomy for the generation pipeline.

Every failure that reaches a caller is one of these classes, so the HTTP layer
can map it onto a status code without inspecting stack traces:

- ImageValidationError: bad/missing image, oversized file, unsupported type (400)
- AuthError: missing or rejected credentials (401), detected at startup where possible
- RateLimitError: the inference service throttled us (429)
- ServiceError: storage/network failures, retried with backoff (500)
- RemoteJobError: the remote job failed or returned an unusable output (500)
- InferenceTimeoutError: polling budget exhausted (500)
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all classified pipeline failures."""

    kind: str = "service"
    status_code: int = 500
    retryable: bool = True

    def __init__(self, message: str, *, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        return self.message


class ImageValidationError(PipelineError):
    kind = "validation"
    status_code = 400
    retryable = False


class AuthError(PipelineError):
    kind = "auth"
    status_code = 401
    retryable = False


class RateLimitError(PipelineError):
    kind = "rate_limit"
    status_code = 429
    retryable = True


class ServiceError(PipelineError):
    kind = "service"
    status_code = 500
    retryable = True


class RemoteJobError(PipelineError):
    kind = "remote_job"
    status_code = 500
    retryable = False


class InferenceTimeoutError(RemoteJobError):
    kind = "timeout"


class InvalidStatusTransition(PipelineError):
    kind = "invalid_transition"
    status_code = 409
    retryable = False


def classify_error(error: BaseException) -> int:
    """
    Map any exception onto the HTTP status that reflects its classification.

    Classified errors carry their own status; anything else is inspected for
    the message signals the inference and storage services emit.
    """
    if isinstance(error, PipelineError):
        return error.status_code

    message = str(error).lower()
    if "invalid" in message or "missing" in message:
        return 400
    if "api token" in message or "unauthorized" in message or "auth" in message:
        return 401
    if "rate limit" in message or "too many requests" in message:
        return 429
    return 500
