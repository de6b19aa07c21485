"""
Exception hierarchy for the sync engine.

Exception Hierarchy:
    PosSyncError (base)
    ├── PosConnectionError  - Network/timeout issues (recoverable)
    ├── PosAPIError         - Backend returned an error response
    ├── PosDataError        - Invalid response structure
    └── SyncUnitError       - A sync unit / forced refresh could not complete

    ValidationError         - Input validation failed (dates, periods, keys)
    QueryTimeoutError       - A cache query exceeded its timeout
"""


class PosSyncError(Exception):
    """Base exception for all backend and sync errors."""

    def __init__(self, message: str, details: str = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class PosConnectionError(PosSyncError):
    """
    Network-related errors (timeout, connection refused, etc.).

    Treated as a unit-level failure by the sync loop.
    """

    def __init__(self, message: str, details: str = None, retry_after: int = None):
        super().__init__(message, details)
        self.retry_after = retry_after


class PosAPIError(PosSyncError):
    """Backend returned a non-2xx response."""

    def __init__(self, message: str, details: str = None, status_code: int = None):
        super().__init__(message, details)
        self.status_code = status_code


class PosDataError(PosSyncError):
    """
    Response body could not be understood (invalid JSON, not an object).
    """

    def __init__(self, message: str, details: str = None, expected: str = None, got: str = None):
        super().__init__(message, details)
        self.expected = expected
        self.got = got


class SyncUnitError(PosSyncError):
    """One sync unit (month, day or forced date range) failed to refresh."""

    def __init__(self, message: str, details: str = None, unit: str = None, actions: list = None):
        super().__init__(message, details)
        self.unit = unit
        self.actions = actions or []


class ValidationError(Exception):
    """
    Input validation failed.

    Used for date keys, date ranges and period kinds.
    """

    def __init__(self, field: str, message: str, value: object = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")

    def __str__(self) -> str:
        if self.value is not None:
            return f"{self.field}: {self.message} (got: {self.value!r})"
        return f"{self.field}: {self.message}"


class QueryTimeoutError(Exception):
    """Cache database query exceeded its timeout."""

    def __init__(self, query: str, timeout: float, details: str = None):
        self.query = query[:200] + "..." if len(query) > 200 else query
        self.timeout = timeout
        self.details = details
        message = f"Query timed out after {timeout}s"
        if details:
            message = f"{message}: {details}"
        super().__init__(message)
