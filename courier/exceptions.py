"""Custom exceptions for the courier engine.

All courier-specific exceptions inherit from CourierError for unified error handling.
Each exception preserves the original cause chain for debugging.

Only CourierValidationError escapes CollectionRunner.run(); transport and script
errors are raised internally and captured into the run result.
"""

from __future__ import annotations

from typing import Any


class CourierError(Exception):
    """Base exception for all courier errors.

    Attributes:
        message: Human-readable error description
        context: Optional dictionary with additional debugging context
        original_error: Original exception that caused this error (if any)
    """

    def __init__(
        self,
        message: str,
        *args: object,
        context: dict[str, Any] | None = None,
        original_error: Exception | None = None,
    ) -> None:
        super().__init__(message, *args)
        self.message = message
        self.context = context or {}
        self.original_error = original_error

    def __str__(self) -> str:
        """Return formatted error message with context if available."""
        base = self.message
        if self.context:
            ctx_str = ", ".join(f"{k}={v!r}" for k, v in self.context.items())
            base = f"{base} [{ctx_str}]"
        if self.original_error:
            base = f"{base} (caused by: {type(self.original_error).__name__}: {self.original_error})"
        return base

    def with_context(self, **kwargs: Any) -> "CourierError":
        """Add context to this error and return self for chaining."""
        self.context.update(kwargs)
        return self


class CourierValidationError(CourierError):
    """Raised by CollectionRunner.run() before any result object exists.

    Common causes:
    - Collection, folder, environment or data file not found
    - No requests under the selected collection/folder
    - Iteration count outside 1..100, negative delay
    - Data file without rows
    """


class CourierTransportError(CourierError):
    """Raised by the transport when a request cannot complete.

    The executor captures it into the request's result; it never aborts a run
    unless stop-on-error is enabled.

    Kinds: timeout, connection, tls, protocol, request.
    """

    def __init__(self, message: str, *args: object, kind: str = "connection", **kwargs: Any) -> None:
        super().__init__(message, *args, **kwargs)
        self.kind = kind


class CourierScriptError(CourierError):
    """Raised inside the sandbox when a script fails to compile, raises, or times out.

    Kinds: syntax, runtime, timeout.
    """

    def __init__(self, message: str, *args: object, kind: str = "runtime", **kwargs: Any) -> None:
        super().__init__(message, *args, **kwargs)
        self.kind = kind


class CourierConfigError(CourierError):
    """Raised when configuration is invalid or file cannot be loaded.

    Common causes:
    - Config file not found
    - Invalid YAML syntax
    - Invalid field values (e.g., iterations > 100)
    """


class CourierCollectionError(CourierError):
    """Raised when a Postman collection or environment file is invalid or cannot be parsed.

    Common causes:
    - File not found
    - Invalid JSON syntax
    - Missing required fields
    """


class CourierDataFileError(CourierError):
    """Raised when a CSV/JSON data file cannot be parsed into rows."""
