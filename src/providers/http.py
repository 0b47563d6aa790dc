"""HTTP client for a provider control plane.

Endpoints (JSON bodies):
    GET    /resources?type=<type>&logicalId=<id>   lookup by logical id
    POST   /resources                              create
    PUT    /resources/<physical_id>                update
    DELETE /resources/<physical_id>                delete
    GET    /operations/<operation_id>              poll an async operation

Responses carry {"status", "physicalId", "outputs", "operationId"}; errors
carry {"error": {"code", "message"}}.
"""

import logging
from typing import Any, Optional

import requests

from errors import ProviderError, TransientProviderError
from providers.base import ProviderResult, ProviderStatus, is_transient

logger = logging.getLogger(__name__)

STATUS_MAP = {
    'succeeded': ProviderStatus.SUCCEEDED,
    'success': ProviderStatus.SUCCEEDED,
    'complete': ProviderStatus.SUCCEEDED,
    'failed': ProviderStatus.FAILED,
    'in_progress': ProviderStatus.IN_PROGRESS,
    'pending': ProviderStatus.IN_PROGRESS,
}


class HttpProvider:
    """Provider backed by an HTTP control-plane API."""

    def __init__(self, endpoint: str, token: str = '', timeout: float = 30.0,
                 session: Optional[requests.Session] = None):
        """Initialize the client.

        Args:
            endpoint: Base URL (e.g., https://control.example.net/v1)
            token: Bearer token (empty = no Authorization header)
            timeout: Per-request timeout in seconds
            session: Optional preconfigured session
        """
        self.endpoint = endpoint.rstrip('/')
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({'Accept': 'application/json'})
        if token:
            self.session.headers.update({'Authorization': f'Bearer {token}'})

    @staticmethod
    def _json_body(resp: requests.Response) -> Optional[dict]:
        """Decoded JSON object body, or None if the body is not a JSON object."""
        try:
            data = resp.json()
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    def _parse_error(self, resp: requests.Response) -> tuple[str, str]:
        """Return (code, message) from an error response."""
        data = self._json_body(resp) or {}
        error = data.get('error')
        if not isinstance(error, dict):
            error = {}
        return error.get('code', f'HTTP{resp.status_code}'), error.get('message', resp.text[:200])

    def _request(self, method: str, path: str, logical_id: Optional[str] = None,
                 **kwargs) -> requests.Response:
        """Send a request.

        Raises:
            TransientProviderError: On timeouts, connection failures and
                retryable error responses
            ProviderError: On any other request failure
        """
        url = f"{self.endpoint}{path}"
        logger.debug(f"{method} {url}")
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.Timeout:
            raise TransientProviderError(f"Timeout calling {url}", logical_id=logical_id,
                                         code='Timeout')
        except requests.exceptions.ConnectionError as e:
            raise TransientProviderError(f"Cannot connect to {url}: {e}", logical_id=logical_id,
                                         code='ConnectionError')
        except requests.exceptions.RequestException as e:
            raise ProviderError(f"{method} {url} failed: {e}", logical_id=logical_id,
                                code=type(e).__name__)

        if resp.status_code >= 400:
            code, message = self._parse_error(resp)
            if is_transient(code, resp.status_code):
                raise TransientProviderError(message, logical_id=logical_id, code=code)
        return resp

    def _to_result(self, resp: requests.Response) -> ProviderResult:
        if resp.status_code >= 400:
            code, message = self._parse_error(resp)
            return ProviderResult(status=ProviderStatus.FAILED, code=code, message=message)
        if resp.status_code == 204 or not resp.content:
            return ProviderResult(status=ProviderStatus.SUCCEEDED)
        data = self._json_body(resp)
        if data is None:
            return ProviderResult(status=ProviderStatus.FAILED, code='MalformedResponse',
                                  message=f"HTTP {resp.status_code} with non-object body: "
                                          f"{resp.text[:200]}")
        status = STATUS_MAP.get(str(data.get('status', 'succeeded')).lower())
        if status is None:
            return ProviderResult(status=ProviderStatus.FAILED, code='UnknownStatus',
                                  message=f"Unrecognized status {data.get('status')!r}")
        error = data.get('error') or {}
        if not isinstance(error, dict):
            error = {'message': str(error)}
        outputs = data.get('outputs') or {}
        if not isinstance(outputs, dict):
            return ProviderResult(status=ProviderStatus.FAILED, code='MalformedResponse',
                                  message=f"Outputs must be an object, got {outputs!r}")
        return ProviderResult(
            status=status,
            physical_id=data.get('physicalId'),
            outputs=outputs,
            message=error.get('message', data.get('message', '')),
            code=error.get('code'),
            operation_id=data.get('operationId'),
        )

    def find(self, resource_type: str, logical_id: str) -> Optional[ProviderResult]:
        resp = self._request('GET', '/resources', logical_id=logical_id,
                             params={'type': resource_type, 'logicalId': logical_id})
        if resp.status_code == 404:
            return None
        result = self._to_result(resp)
        if result.failed or not result.physical_id:
            return None
        return result

    def create(self, resource_type: str, logical_id: str,
               properties: dict[str, Any]) -> ProviderResult:
        resp = self._request('POST', '/resources', logical_id=logical_id, json={
            'type': resource_type,
            'logicalId': logical_id,
            'properties': properties,
            # Same token on retry lets the provider deduplicate the create
            'clientToken': f"{resource_type}:{logical_id}",
        })
        return self._to_result(resp)

    def update(self, resource_type: str, physical_id: str, properties: dict[str, Any],
               changed: list[str]) -> ProviderResult:
        resp = self._request('PUT', f'/resources/{physical_id}', json={
            'type': resource_type,
            'properties': properties,
            'changed': list(changed),
        })
        result = self._to_result(resp)
        if result.physical_id is None:
            result.physical_id = physical_id
        return result

    def delete(self, resource_type: str, physical_id: str) -> ProviderResult:
        resp = self._request('DELETE', f'/resources/{physical_id}',
                             params={'type': resource_type})
        if resp.status_code == 404:
            return ProviderResult(status=ProviderStatus.SUCCEEDED, physical_id=physical_id)
        return self._to_result(resp)

    def describe(self, operation_id: str) -> ProviderResult:
        return self._to_result(self._request('GET', f'/operations/{operation_id}'))
