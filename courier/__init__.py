"""
courier - API request execution and collection-run engine.

Layered {{variable}} resolution, sandboxed pre-request/test scripts, async HTTP,
and sequential, data-driven collection runs with stop-on-error and cancellation.
"""

from .exceptions import (
    CourierCollectionError,
    CourierConfigError,
    CourierDataFileError,
    CourierError,
    CourierScriptError,
    CourierTransportError,
    CourierValidationError,
)

__all__ = [
    "__version__",
    "CourierCollectionError",
    "CourierConfigError",
    "CourierDataFileError",
    "CourierError",
    "CourierScriptError",
    "CourierTransportError",
    "CourierValidationError",
]

__version__ = "1.0.0"
