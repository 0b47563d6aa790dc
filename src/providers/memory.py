"""In-process provider.

Keeps resources in a dict and, when given a path, persists them to a JSON
file so that separate CLI runs see the same "cloud" (local mode). Used by
the test suite with fault injection: permanent failures, transient
throttling and operations that stay in progress for a number of polls.
"""

import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Any, Optional

from errors import TransientProviderError
from providers.base import ProviderResult, ProviderStatus
from providers.types import get_type

logger = logging.getLogger(__name__)

ACCOUNT = '000000000000'
REGION = 'local-1'


def _output_values(resource_type: str, logical_id: str, physical_id: str,
                   properties: dict[str, Any]) -> dict[str, Any]:
    """Generate the output attributes a real provider would return."""
    rtype = get_type(resource_type)
    arn = f"arn:local:{resource_type}:{REGION}:{ACCOUNT}:{physical_id}"
    values: dict[str, Any] = {}
    for attribute in rtype.outputs:
        if attribute == 'arn':
            values[attribute] = arn
        elif attribute in properties and isinstance(properties[attribute], (str, int, float)):
            values[attribute] = properties[attribute]
        elif attribute == 'graphqlUrl':
            values[attribute] = f"https://{physical_id}.graphql.local/graphql"
        elif attribute == 'domainName':
            values[attribute] = f"{physical_id}.storage.local"
        elif attribute == 'providerUrl':
            values[attribute] = f"https://idp.local/{physical_id}"
        elif attribute == 'status':
            values[attribute] = 'ACTIVE'
        elif attribute.endswith('Arn'):
            values[attribute] = f"{arn}/{attribute[:-3]}"
        else:
            values[attribute] = physical_id
    return values


class InMemoryProvider:
    """Provider backed by a dict, optionally persisted to a JSON file.

    Args:
        path: Optional JSON file for persistence across runs
        fail: logical id -> error message; create/update/delete of that
              resource returns FAILED
        throttle: logical id -> number of calls that raise
                  TransientProviderError before succeeding
        pending_polls: number of describe() polls an operation reports
                       IN_PROGRESS before completing (0 = synchronous)
    """

    def __init__(self, path: Optional[Path] = None, fail: Optional[dict[str, str]] = None,
                 throttle: Optional[dict[str, int]] = None, pending_polls: int = 0):
        self.path = Path(path) if path else None
        self.fail = dict(fail or {})
        self.throttle = dict(throttle or {})
        self.pending_polls = pending_polls
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()
        self._resources: dict[str, dict[str, Any]] = {}
        self._operations: dict[str, dict[str, Any]] = {}
        self._counter = 0
        self._load()

    def _load(self) -> None:
        if self.path and self.path.exists():
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
            self._resources = data.get('resources', {})
            self._counter = data.get('counter', 0)

    def _save(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, 'w', encoding='utf-8') as f:
            json.dump({'resources': self._resources, 'counter': self._counter}, f, indent=2)

    @property
    def resources(self) -> dict[str, dict[str, Any]]:
        """physical id -> stored record (copy)."""
        return {pid: dict(rec) for pid, rec in self._resources.items()}

    def _check_faults(self, logical_id: str) -> Optional[ProviderResult]:
        remaining = self.throttle.get(logical_id, 0)
        if remaining > 0:
            self.throttle[logical_id] = remaining - 1
            raise TransientProviderError("Rate exceeded", logical_id=logical_id,
                                         code='ThrottlingException')
        if logical_id in self.fail:
            return ProviderResult(status=ProviderStatus.FAILED, message=self.fail[logical_id],
                                  code='ValidationException')
        return None

    def _finish(self, result: ProviderResult) -> ProviderResult:
        """Wrap a completed result as in-progress when polls are configured."""
        if self.pending_polls <= 0:
            return result
        operation_id = str(uuid.uuid4())
        self._operations[operation_id] = {'result': result, 'remaining': self.pending_polls}
        return ProviderResult(status=ProviderStatus.IN_PROGRESS, physical_id=result.physical_id,
                              operation_id=operation_id)

    def find(self, resource_type: str, logical_id: str) -> Optional[ProviderResult]:
        with self._lock:
            self.calls.append(('find', logical_id))
            for pid, rec in self._resources.items():
                if rec['type'] == resource_type and rec['logical_id'] == logical_id:
                    return ProviderResult(status=ProviderStatus.SUCCEEDED, physical_id=pid,
                                          outputs=dict(rec['outputs']))
            return None

    def create(self, resource_type: str, logical_id: str,
               properties: dict[str, Any]) -> ProviderResult:
        with self._lock:
            self.calls.append(('create', logical_id))
            fault = self._check_faults(logical_id)
            if fault:
                return fault
            self._counter += 1
            physical_id = f"{logical_id.lower()}-{self._counter:06d}"
            outputs = _output_values(resource_type, logical_id, physical_id, properties)
            self._resources[physical_id] = {
                'type': resource_type,
                'logical_id': logical_id,
                'properties': properties,
                'outputs': outputs,
            }
            self._save()
            logger.debug(f"Created {resource_type} {physical_id}")
            return self._finish(ProviderResult(status=ProviderStatus.SUCCEEDED,
                                               physical_id=physical_id, outputs=outputs))

    def update(self, resource_type: str, physical_id: str, properties: dict[str, Any],
               changed: list[str]) -> ProviderResult:
        with self._lock:
            rec = self._resources.get(physical_id)
            logical_id = rec['logical_id'] if rec else physical_id
            self.calls.append(('update', logical_id))
            fault = self._check_faults(logical_id)
            if fault:
                return fault
            if rec is None:
                return ProviderResult(status=ProviderStatus.FAILED, code='ResourceNotFound',
                                      message=f"{resource_type} {physical_id} does not exist")
            rec['properties'] = properties
            rec['outputs'] = _output_values(resource_type, logical_id, physical_id, properties)
            self._save()
            return self._finish(ProviderResult(status=ProviderStatus.SUCCEEDED,
                                               physical_id=physical_id,
                                               outputs=dict(rec['outputs'])))

    def delete(self, resource_type: str, physical_id: str) -> ProviderResult:
        with self._lock:
            rec = self._resources.get(physical_id)
            logical_id = rec['logical_id'] if rec else physical_id
            self.calls.append(('delete', logical_id))
            fault = self._check_faults(logical_id)
            if fault:
                return fault
            self._resources.pop(physical_id, None)
            self._save()
            return self._finish(ProviderResult(status=ProviderStatus.SUCCEEDED,
                                               physical_id=physical_id))

    def describe(self, operation_id: str) -> ProviderResult:
        with self._lock:
            op = self._operations.get(operation_id)
            if op is None:
                return ProviderResult(status=ProviderStatus.FAILED, code='OperationNotFound',
                                      message=f"Unknown operation {operation_id}")
            if op['remaining'] > 0:
                op['remaining'] -= 1
                return ProviderResult(status=ProviderStatus.IN_PROGRESS, operation_id=operation_id)
            del self._operations[operation_id]
            return op['result']
