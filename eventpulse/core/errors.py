"""Error taxonomy shared by the ingestion, query and aggregation paths.

Every error carries a machine-readable ``kind`` and an HTTP status so the API
layer can render one structured envelope for all of them.
"""

from typing import Any


class AnalyticsError(Exception):
    kind = "internal_error"
    status_code = 500

    def __init__(
            self,
            message: str,
            *,
            field: str | None = None,
            query: str | None = None,
            details: list[str] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.field = field
        self.query = query
        self.details = details or []

    @property
    def headers(self) -> dict[str, str] | None:
        return None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"kind": self.kind, "message": self.message}
        if self.field is not None:
            body["field"] = self.field
        if self.query is not None:
            body["query"] = self.query
        if self.details:
            body["details"] = self.details
        return {"error": body}


class ClientInputError(AnalyticsError):
    """Malformed payload or question; always caller-fixable"""
    kind = "client_input_error"
    status_code = 400


class AuthenticationError(AnalyticsError):
    kind = "authentication_error"
    status_code = 401


class RateLimitedError(AnalyticsError):
    """Budget exhausted; the caller should back off and retry later"""
    kind = "rate_limited"
    status_code = 429

    def __init__(self, message: str, *, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["error"]["retry_after"] = self.retry_after
        return body


class GenerationError(AnalyticsError):
    """Text-generation collaborator unavailable or output unusable"""
    kind = "generation_error"
    status_code = 502


class ValidationRejectedError(AnalyticsError):
    """Generated query failed the safety gate; it was never executed"""
    kind = "validation_rejected"
    status_code = 422


class ExecutionError(AnalyticsError):
    """Event store read or write failed (including timeouts)"""
    kind = "execution_error"
    status_code = 503
