"""Provider control-plane interface.

A provider applies create/update/delete calls for typed resources and
reports a structured status for each call. Transient failures (throttling,
rate limiting, temporary unavailability) are raised as
TransientProviderError so the executor can retry them. Rejections are
returned as FAILED results carrying the provider's raw message; failures
with no structured response (request errors) raise ProviderError.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol, runtime_checkable

TRANSIENT_ERROR_CODES = frozenset({
    'Throttling',
    'ThrottlingException',
    'TooManyRequestsException',
    'RequestLimitExceeded',
    'ServiceUnavailable',
    'SlowDown',
})

TRANSIENT_HTTP_STATUSES = frozenset({429, 502, 503, 504})


class ProviderStatus(str, Enum):
    SUCCEEDED = 'succeeded'
    FAILED = 'failed'
    IN_PROGRESS = 'in_progress'


@dataclass
class ProviderResult:
    """Result returned by a provider call.

    Attributes:
        status: succeeded, failed or in_progress
        physical_id: Provider-assigned identifier (create/find)
        outputs: Output attributes of the resource
        message: Raw provider message (errors)
        code: Provider error code (errors)
        operation_id: Handle for polling in-progress operations
    """
    status: ProviderStatus
    physical_id: Optional[str] = None
    outputs: dict[str, Any] = field(default_factory=dict)
    message: str = ''
    code: Optional[str] = None
    operation_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ProviderStatus.SUCCEEDED

    @property
    def failed(self) -> bool:
        return self.status == ProviderStatus.FAILED

    @property
    def in_progress(self) -> bool:
        return self.status == ProviderStatus.IN_PROGRESS


def is_transient(code: Optional[str] = None, http_status: Optional[int] = None) -> bool:
    """Classify an error as transient (retryable)."""
    if code and code in TRANSIENT_ERROR_CODES:
        return True
    return http_status is not None and http_status in TRANSIENT_HTTP_STATUSES


@runtime_checkable
class Provider(Protocol):
    """Protocol for provider control-plane clients."""

    def find(self, resource_type: str, logical_id: str) -> Optional[ProviderResult]:
        """Look up an existing resource by logical id (None if absent)."""

    def create(self, resource_type: str, logical_id: str,
               properties: dict[str, Any]) -> ProviderResult:
        """Create a resource."""

    def update(self, resource_type: str, physical_id: str, properties: dict[str, Any],
               changed: list[str]) -> ProviderResult:
        """Update a resource in place."""

    def delete(self, resource_type: str, physical_id: str) -> ProviderResult:
        """Delete a resource. Deleting an absent resource succeeds."""

    def describe(self, operation_id: str) -> ProviderResult:
        """Return the current status of an in-progress operation."""
