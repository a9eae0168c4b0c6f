"""
Error types shared across the discussion pipeline.

Every error carries a ``retryable`` flag that is decided where the error is
raised (from a status code or an SDK exception class). Callers copy the flag,
they never infer it from the message text.
"""

from typing import Any, Dict, List, Optional


class DiscubotError(Exception):
    """Base error for all pipeline failures."""

    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        retryable: Optional[bool] = None,
        stage: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.retryable = self.default_retryable if retryable is None else retryable
        self.stage = stage
        self.context = dict(context or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": type(self).__name__,
            "message": self.message,
            "retryable": self.retryable,
            "stage": self.stage,
            "context": self.context,
        }


class InputValidationError(DiscubotError):
    """Payload or discussion is missing required fields. Never retryable."""

    def __init__(self, message: str, fields: Optional[List[str]] = None, **kwargs):
        kwargs["retryable"] = False
        super().__init__(message, **kwargs)
        self.fields = list(fields or [])
        self.context.setdefault("fields", self.fields)


class ConfigurationError(DiscubotError):
    """Missing source config, bad credentials, or auth rejected by a remote."""

    def __init__(self, message: str, **kwargs):
        kwargs["retryable"] = False
        super().__init__(message, **kwargs)


class TransientError(DiscubotError):
    """Rate limiting, timeouts, dropped connections and 5xx responses."""

    default_retryable = True

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retry_after: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.retry_after = retry_after


class AdapterError(DiscubotError):
    """Failure talking to a discussion source."""

    def __init__(
        self,
        message: str,
        source_type: str = "",
        thread_id: Optional[str] = None,
        status_code: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.source_type = source_type
        self.thread_id = thread_id
        self.status_code = status_code
        self.context.setdefault("source_type", source_type)
        if thread_id:
            self.context.setdefault("thread_id", thread_id)


class NotFoundError(AdapterError):
    """Requested thread or comment does not exist at the source."""

    def __init__(self, message: str, **kwargs):
        kwargs["retryable"] = False
        kwargs.setdefault("status_code", 404)
        super().__init__(message, **kwargs)


class AnalysisError(DiscubotError):
    """Language-model analysis failed."""


class MalformedOutputError(AnalysisError):
    """Model replied, but not with the JSON shape we asked for."""

    def __init__(self, message: str, raw: str = "", **kwargs):
        kwargs["retryable"] = False
        super().__init__(message, **kwargs)
        self.raw = raw


class TaskSinkError(DiscubotError):
    """Destination tracker rejected or failed a request."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: str = "generic",
        retry_after: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.status_code = status_code
        self.code = code
        self.retry_after = retry_after


class ProcessingError(DiscubotError):
    """An orchestrator stage failed. Wraps the underlying error."""

    def __init__(self, message: str, stage: str, cause: Optional[BaseException] = None, **kwargs):
        if cause is not None and "retryable" not in kwargs:
            kwargs["retryable"] = getattr(cause, "retryable", False)
        super().__init__(message, stage=stage, **kwargs)
        self.cause = cause


class InvalidTransitionError(DiscubotError):
    """Job status change that the state machine does not allow."""


class JobNotFoundError(DiscubotError):
    """No job with the requested id."""


def is_retryable(error: BaseException) -> bool:
    """True only for errors explicitly flagged retryable."""
    return bool(getattr(error, "retryable", False))
