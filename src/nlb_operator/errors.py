"""Provider error taxonomy.

Every failure coming out of the Provider Client is one of:

- NotFoundError: the target is absent. Benign while deleting, a drift
  signal while verifying an existing resource.
- TransientError: rate limits, busy backends, poll timeouts. Always
  retried through a delayed requeue.
- FatalError: validation or permission problems. Surfaced to the user and
  still requeued, since the user may fix the spec.

OperationCancelledError is not transient: a cancelled pass
must not schedule a backoff.
"""

from __future__ import annotations

from Tea.exceptions import RetryError, TeaException, UnretryableException

# Provider code prefixes that indicate a temporary condition
TRANSIENT_CODE_PREFIXES = (
    "Throttling",
    "ServiceUnavailable",
    "InternalError",
    "SystemBusy",
    "Conflict.Lock",
    "IncorrectStatus",
    "GetXipFailed",
)

NOT_FOUND_MARKER = "ResourceNotFound"


class ProviderError(Exception):
    """Base class for normalized provider failures."""

    kind = "provider"

    def __init__(self, message: str, code: str = "", request_id: str = "") -> None:
        super().__init__(message)
        self.code = code
        self.request_id = request_id


class NotFoundError(ProviderError):
    """The target resource does not exist at the provider."""

    kind = "not_found"


class TransientError(ProviderError):
    """Temporary failure; retry later."""

    kind = "transient"


class PollTimeoutError(TransientError):
    """A bounded poll exceeded its ceiling."""

    kind = "timeout"


class FatalError(ProviderError):
    """Failure that will not heal without a spec or permission change."""

    kind = "fatal"


class OperationCancelledError(ProviderError):
    """The enclosing pass was cancelled while waiting."""

    kind = "cancelled"


def classify_error(error: Exception, operation: str) -> ProviderError:
    """Translate an SDK failure into the provider taxonomy.

    Args:
        error: Exception raised by the NLB SDK client.
        operation: Provider action name, used in the message.

    Returns:
        A ProviderError subclass instance (never raises).
    """
    if isinstance(error, ProviderError):
        return error

    if isinstance(error, TeaException):
        code = str(error.code or "")
        data = error.data if isinstance(error.data, dict) else {}
        request_id = str(data.get("RequestId") or "")
        status_code = data.get("statusCode")
        provider_message = data.get("Message") or error.message or ""

        message = f"{operation} failed: {code}: {provider_message}"
        if NOT_FOUND_MARKER in code:
            return NotFoundError(message, code, request_id)
        if code.startswith(TRANSIENT_CODE_PREFIXES):
            return TransientError(message, code, request_id)
        if isinstance(status_code, int) and (status_code == 429 or status_code >= 500):
            return TransientError(message, code, request_id)
        return FatalError(message, code, request_id)

    # Network failures surface wrapped by the SDK request loop
    if isinstance(error, UnretryableException | RetryError | OSError):
        return TransientError(f"{operation} failed: connection error: {error}")

    return FatalError(f"{operation} failed: {error}")
