"""Error taxonomy for stack planning and apply.

Graph and plan errors are raised before any provider call is made.
Provider errors are raised by the executor and carry the provider's
raw message alongside the classified kind.
"""

from typing import Optional


class StackError(Exception):
    """Base class for all stack errors.

    Attributes:
        logical_id: Logical identifier of the offending resource (if any)
    """

    def __init__(self, message: str, logical_id: Optional[str] = None):
        self.message = message
        self.logical_id = logical_id
        super().__init__(message)

    def __str__(self) -> str:
        if self.logical_id:
            return f"[{self.logical_id}] {self.message}"
        return self.message


class ValidationError(StackError):
    """Malformed declaration. Fatal, raised before planning."""


class CyclicDependencyError(StackError):
    """Dependency edges form a cycle."""

    def __init__(self, cycle: list[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"Cycle detected: {' -> '.join(self.cycle)}",
            logical_id=self.cycle[0] if self.cycle else None,
        )


class UnresolvedReferenceError(StackError):
    """Reference names a nonexistent resource or output attribute."""

    def __init__(self, message: str, logical_id: Optional[str] = None,
                 target: Optional[str] = None, attribute: Optional[str] = None):
        self.target = target
        self.attribute = attribute
        super().__init__(message, logical_id=logical_id)


class TransientProviderError(StackError):
    """Rate limiting, throttling or temporary unavailability. Retried."""

    def __init__(self, message: str, logical_id: Optional[str] = None,
                 code: str = 'Throttling'):
        self.code = code
        super().__init__(message, logical_id=logical_id)

    def __str__(self) -> str:
        return f"{super().__str__()} (transient: {self.code})"


class ProviderError(StackError):
    """Non-retryable provider failure outside a structured response.

    Raised for malformed responses and request errors that are neither
    timeouts nor connection failures.
    """

    def __init__(self, message: str, logical_id: Optional[str] = None,
                 code: str = 'ProviderError'):
        self.code = code
        super().__init__(message, logical_id=logical_id)


class ApplyFailure(StackError):
    """Non-retryable provider failure. Halts the remaining plan.

    Attributes:
        kind: Classified failure kind (rejected, retries-exhausted, timeout,
              unresolved, cancelled)
        code: Provider error code, if the provider supplied one
        provider_message: Raw provider message
    """

    def __init__(self, logical_id: str, kind: str, provider_message: str = '',
                 code: Optional[str] = None):
        self.kind = kind
        self.code = code
        self.provider_message = provider_message
        detail = f"{kind}"
        if code:
            detail += f" [{code}]"
        if provider_message:
            detail += f": {provider_message}"
        super().__init__(detail, logical_id=logical_id)


class StateLockError(StackError):
    """State record is locked by another run, or lock token mismatch."""


class StalePlanError(StackError):
    """Plan was computed against a different state serial."""


class RunCancelled(StackError):
    """Run was cancelled before any operation started."""
