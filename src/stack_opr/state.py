"""State management for stack-based provisioning.

The state record maps each logical id to its provider-assigned physical id,
property snapshot and outputs. It is read at plan time and written exactly
once per run, under an advisory lock, so the next plan can diff against it.

Per-operation run status (pending, running, completed, failed, skipped) is
tracked separately and is not persisted in the record.
"""

import json
import logging
import os
import secrets
import tempfile
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator, Optional

from errors import StateLockError, ValidationError

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


@dataclass
class OperationState:
    """Per-operation execution state for one run.

    Attributes:
        key: Operation key (e.g. 'create:Bucket')
        logical_id: Target resource
        action: create, update, delete or noop
        status: pending, running, completed, failed, skipped
        attempts: Provider call attempts (including retries)
        started_at: Timestamp when execution started
        completed_at: Timestamp when execution completed
        error: Error message if failed
    """
    key: str
    logical_id: str
    action: str
    status: str = 'pending'
    attempts: int = 0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    def start(self) -> None:
        self.status = 'running'
        self.started_at = time.time()

    def complete(self, attempts: int = 0) -> None:
        self.status = 'completed'
        self.completed_at = time.time()
        self.attempts = attempts

    def fail(self, error: str, attempts: int = 0) -> None:
        self.status = 'failed'
        self.completed_at = time.time()
        self.error = error
        self.attempts = attempts

    def skip(self) -> None:
        self.status = 'skipped'

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return self.completed_at - self.started_at
        return None

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            'key': self.key,
            'logical_id': self.logical_id,
            'action': self.action,
            'status': self.status,
        }
        if self.attempts:
            d['attempts'] = self.attempts
        if self.duration is not None:
            d['duration'] = round(self.duration, 2)
        if self.error is not None:
            d['error'] = self.error
        return d


@dataclass
class ResourceState:
    """Last-known provisioned state of one resource.

    Attributes:
        logical_id: Logical identifier
        resource_type: Type tag
        physical_id: Provider-assigned identifier
        properties: Resolved property snapshot as last applied
        outputs: Output attributes returned by the provider
        dependencies: Logical ids this resource depended on when applied
        removal_policy: 'delete' or 'retain'
        applied_at: Timestamp of the last successful create/update
    """
    logical_id: str
    resource_type: str
    physical_id: str
    properties: dict[str, Any] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)
    dependencies: list[str] = field(default_factory=list)
    removal_policy: str = 'delete'
    applied_at: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            'type': self.resource_type,
            'physical_id': self.physical_id,
            'properties': self.properties,
            'outputs': self.outputs,
            'dependencies': list(self.dependencies),
            'removal_policy': self.removal_policy,
            'applied_at': self.applied_at,
        }

    @classmethod
    def from_dict(cls, logical_id: str, data: dict) -> 'ResourceState':
        return cls(
            logical_id=logical_id,
            resource_type=data['type'],
            physical_id=data['physical_id'],
            properties=data.get('properties', {}),
            outputs=data.get('outputs', {}),
            dependencies=list(data.get('dependencies', [])),
            removal_policy=data.get('removal_policy', 'delete'),
            applied_at=data.get('applied_at'),
        )


@dataclass
class StateRecord:
    """Persisted state for one stack.

    Attributes:
        stack_name: Stack identifier
        serial: Incremented on every commit (used to detect stale plans)
        lineage: Random id fixed at record creation
        resources: Logical id -> ResourceState
        updated_at: Timestamp of the last commit
    """
    stack_name: str
    serial: int = 0
    lineage: str = field(default_factory=lambda: str(uuid.uuid4()))
    resources: dict[str, ResourceState] = field(default_factory=dict)
    updated_at: Optional[float] = None

    def get(self, logical_id: str) -> Optional[ResourceState]:
        return self.resources.get(logical_id)

    def outputs(self) -> dict[str, dict[str, Any]]:
        """Logical id -> outputs for every tracked resource."""
        return {lid: dict(rs.outputs) for lid, rs in self.resources.items()}

    def copy(self) -> 'StateRecord':
        return StateRecord.from_dict(self.to_dict())

    def to_dict(self) -> dict:
        return {
            'version': STATE_FORMAT_VERSION,
            'stack_name': self.stack_name,
            'serial': self.serial,
            'lineage': self.lineage,
            'updated_at': self.updated_at,
            'resources': {lid: rs.to_dict() for lid, rs in self.resources.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'StateRecord':
        version = data.get('version', STATE_FORMAT_VERSION)
        if version != STATE_FORMAT_VERSION:
            raise ValidationError(f"Unsupported state format version: {version}")
        return cls(
            stack_name=data['stack_name'],
            serial=data.get('serial', 0),
            lineage=data.get('lineage') or str(uuid.uuid4()),
            resources={
                lid: ResourceState.from_dict(lid, rs)
                for lid, rs in data.get('resources', {}).items()
            },
            updated_at=data.get('updated_at'),
        )


class StateStore:
    """File-backed state record with an advisory lock.

    State is persisted to {state_dir}/{stack}/state.json; the lock file
    {state_dir}/{stack}/state.lock holds the token of the run that owns it.
    """

    def __init__(self, state_dir: Path, stack_name: str):
        self.state_dir = Path(state_dir)
        self.stack_name = stack_name

    @property
    def stack_dir(self) -> Path:
        return self.state_dir / self.stack_name

    @property
    def path(self) -> Path:
        return self.stack_dir / 'state.json'

    @property
    def lock_path(self) -> Path:
        return self.stack_dir / 'state.lock'

    def load(self) -> StateRecord:
        """Load the state record, or an empty one if none exists."""
        if not self.path.exists():
            logger.debug(f"No state at {self.path}, starting empty")
            return StateRecord(stack_name=self.stack_name)
        try:
            with open(self.path, encoding='utf-8') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Corrupt state file {self.path}: {e}")
        record = StateRecord.from_dict(data)
        logger.debug(f"Loaded state from {self.path} (serial {record.serial})")
        return record

    def read_lock(self) -> Optional[dict]:
        """Return the current lock info, or None if unlocked."""
        try:
            with open(self.lock_path, encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except json.JSONDecodeError:
            return {'token': None}

    def acquire(self) -> str:
        """Acquire the lock and return its token.

        Raises:
            StateLockError: If another run holds the lock
        """
        self.stack_dir.mkdir(parents=True, exist_ok=True)
        token = secrets.token_hex(16)
        info = {'token': token, 'pid': os.getpid(), 'acquired_at': time.time()}
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            held = self.read_lock() or {}
            raise StateLockError(
                f"State for stack '{self.stack_name}' is locked "
                f"(pid {held.get('pid', '?')}). "
                f"If no other run is active: stackplan state unlock -S {self.stack_name}"
            )
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            json.dump(info, f)
        logger.debug(f"Acquired state lock {self.lock_path}")
        return token

    def release(self, token: str) -> None:
        """Release the lock if it is still held by token."""
        held = self.read_lock()
        if held is None:
            return
        if held.get('token') != token:
            logger.warning(f"State lock {self.lock_path} is held by another token, not releasing")
            return
        self.lock_path.unlink(missing_ok=True)
        logger.debug(f"Released state lock {self.lock_path}")

    @contextmanager
    def lock(self) -> Iterator[str]:
        """Hold the lock for the duration of the block, yielding its token."""
        token = self.acquire()
        try:
            yield token
        finally:
            self.release(token)

    def force_unlock(self) -> bool:
        """Remove the lock regardless of owner. Returns True if a lock existed."""
        if not self.lock_path.exists():
            return False
        self.lock_path.unlink()
        logger.info(f"Removed state lock {self.lock_path}")
        return True

    def commit(self, record: StateRecord, token: str) -> Path:
        """Atomically replace the state record.

        Args:
            record: New record (serial already bumped by the caller)
            token: Lock token of the committing run

        Raises:
            StateLockError: If the lock is not held by token
        """
        held = self.read_lock()
        if held is None or held.get('token') != token:
            raise StateLockError(
                f"Cannot commit state for stack '{self.stack_name}': lock not held by this run"
            )
        self.stack_dir.mkdir(parents=True, exist_ok=True)
        record.updated_at = time.time()
        fd, tmp = tempfile.mkstemp(prefix='state-', suffix='.json', dir=self.stack_dir)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(record.to_dict(), f, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.debug(f"Saved state to {self.path} (serial {record.serial})")
        return self.path
