"""
Beacon Analytics — error taxonomy.

Every failure that leaves the query layer is one of these.  Store
implementations raise ``StoreError`` subclasses; the router attaches the
operation name before the error reaches a caller.
"""

from typing import Any


class AnalyticsError(Exception):
    """
    Base exception for all Beacon errors.

    Attributes:
        message: human-readable message
        detail: extra structured information
        code: stable machine-readable code
        operation: router operation the error surfaced from (if any)
    """

    code = "ANALYTICS_ERROR"

    def __init__(
        self,
        message: str,
        detail: str | list[str] | dict[str, Any] | None = None,
        code: str | None = None,
        operation: str | None = None,
    ) -> None:
        self.message = message
        self.detail = detail
        if code:
            self.code = code
        self.operation = operation
        super().__init__(message)

    def __str__(self) -> str:
        prefix = f"[{self.operation}] " if self.operation else ""
        if self.detail:
            return f"{prefix}{self.message} - {self.detail}"
        return f"{prefix}{self.message}"

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "detail": self.detail,
            "operation": self.operation,
        }


class ConfigurationError(AnalyticsError):
    """Unrecognized or missing connection descriptor. Fatal at startup."""

    code = "CONFIGURATION_ERROR"


class ValidationError(AnalyticsError):
    """Malformed ingestion payload or report definition. Never retried."""

    code = "VALIDATION_ERROR"


class StoreError(AnalyticsError):
    """A store failed to answer. ``store`` is "relational" or "columnar"."""

    code = "STORE_ERROR"

    def __init__(self, message: str, *, store: str, **kwargs: Any) -> None:
        self.store = store
        super().__init__(message, **kwargs)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["store"] = self.store
        return data


class StoreUnavailableError(StoreError):
    """Connection loss or timeout."""

    code = "STORE_UNAVAILABLE"


class QueryFailedError(StoreError):
    """The store rejected the query (bad SQL, type error, constraint)."""

    code = "QUERY_FAILED"


class PartialCapabilityError(StoreError):
    """The secondary leg of a split operation failed while the primary succeeded."""

    code = "PARTIAL_CAPABILITY"


def validation_details(exc) -> list[dict]:
    """JSON-safe summary of a pydantic ``ValidationError``."""
    return [
        {"loc": [str(part) for part in err.get("loc", ())], "msg": err.get("msg", "")}
        for err in exc.errors()
    ]
