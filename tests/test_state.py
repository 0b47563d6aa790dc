"""Tests for stack_opr.state module."""

import json
import os
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from errors import StateLockError, ValidationError
from stack_opr.state import OperationState, ResourceState, StateRecord, StateStore


def _record(name='demo', **resources):
    record = StateRecord(stack_name=name)
    for lid, rtype in resources.items():
        record.resources[lid] = ResourceState(
            logical_id=lid, resource_type=rtype, physical_id=f'{lid.lower()}-1',
            properties={'p': 1}, outputs={'arn': f'arn:{lid}'},
        )
    return record


class TestOperationState:
    """Tests for OperationState dataclass."""

    def test_defaults(self):
        state = OperationState(key='create:A', logical_id='A', action='create')
        assert state.status == 'pending'
        assert state.attempts == 0
        assert state.duration is None

    def test_start_complete(self):
        state = OperationState(key='create:A', logical_id='A', action='create')
        state.start()
        assert state.status == 'running'
        state.complete(attempts=2)
        assert state.status == 'completed'
        assert state.attempts == 2
        assert state.duration is not None
        assert state.duration >= 0

    def test_fail(self):
        state = OperationState(key='create:A', logical_id='A', action='create')
        state.start()
        state.fail('rejected: bad name', attempts=1)
        assert state.status == 'failed'
        assert state.error == 'rejected: bad name'

    def test_skip(self):
        state = OperationState(key='create:A', logical_id='A', action='create')
        state.skip()
        assert state.status == 'skipped'
        assert state.started_at is None

    def test_to_dict(self):
        state = OperationState(key='delete:A', logical_id='A', action='delete')
        d = state.to_dict()
        assert d == {'key': 'delete:A', 'logical_id': 'A', 'action': 'delete', 'status': 'pending'}

    def test_to_dict_with_error(self):
        state = OperationState(key='create:A', logical_id='A', action='create')
        state.start()
        state.fail('boom', attempts=3)
        d = state.to_dict()
        assert d['error'] == 'boom'
        assert d['attempts'] == 3
        assert 'duration' in d


class TestStateRecord:
    """Tests for StateRecord serialization."""

    def test_empty(self):
        record = StateRecord(stack_name='demo')
        assert record.serial == 0
        assert record.lineage
        assert record.outputs() == {}

    def test_round_trip(self):
        record = _record(Bucket='storage-bucket', Table='table')
        record.resources['Table'].dependencies = ['Bucket']
        record.resources['Table'].removal_policy = 'retain'
        record.serial = 7
        restored = StateRecord.from_dict(json.loads(json.dumps(record.to_dict())))
        assert restored == record

    def test_outputs(self):
        record = _record(Bucket='storage-bucket')
        assert record.outputs() == {'Bucket': {'arn': 'arn:Bucket'}}

    def test_copy_is_independent(self):
        record = _record(Bucket='storage-bucket')
        clone = record.copy()
        clone.resources.pop('Bucket')
        assert 'Bucket' in record.resources

    def test_unsupported_version(self):
        with pytest.raises(ValidationError, match='Unsupported state format'):
            StateRecord.from_dict({'version': 99, 'stack_name': 'demo'})


class TestStateStore:
    """Tests for file-backed StateStore."""

    def test_load_missing_returns_empty(self, tmp_path):
        store = StateStore(tmp_path, 'demo')
        record = store.load()
        assert record.stack_name == 'demo'
        assert record.serial == 0
        assert record.resources == {}

    def test_commit_and_load(self, tmp_path):
        store = StateStore(tmp_path, 'demo')
        record = _record(Bucket='storage-bucket')
        record.serial = 1
        with store.lock() as token:
            path = store.commit(record, token)
        assert path == tmp_path / 'demo' / 'state.json'
        loaded = store.load()
        assert loaded.serial == 1
        assert loaded.resources['Bucket'].physical_id == 'bucket-1'
        assert loaded.updated_at is not None

    def test_commit_leaves_no_temp_files(self, tmp_path):
        store = StateStore(tmp_path, 'demo')
        with store.lock() as token:
            store.commit(_record(), token)
        assert sorted(p.name for p in store.stack_dir.iterdir()) == ['state.json']

    def test_commit_requires_lock(self, tmp_path):
        store = StateStore(tmp_path, 'demo')
        with pytest.raises(StateLockError, match='lock not held'):
            store.commit(_record(), 'not-a-token')
        assert not store.path.exists()

    def test_commit_rejects_foreign_token(self, tmp_path):
        store = StateStore(tmp_path, 'demo')
        with store.lock():
            with pytest.raises(StateLockError):
                store.commit(_record(), 'someone-else')

    def test_failed_write_keeps_previous_state(self, tmp_path):
        store = StateStore(tmp_path, 'demo')
        first = _record(Bucket='storage-bucket')
        first.serial = 1
        with store.lock() as token:
            store.commit(first, token)
            second = _record(Bucket='storage-bucket', Table='table')
            second.serial = 2
            with patch('stack_opr.state.os.replace', side_effect=OSError('disk full')):
                with pytest.raises(OSError):
                    store.commit(second, token)
        loaded = store.load()
        assert loaded.serial == 1
        assert list(loaded.resources) == ['Bucket']
        assert sorted(p.name for p in store.stack_dir.iterdir()) == ['state.json']

    def test_lock_is_exclusive(self, tmp_path):
        store = StateStore(tmp_path, 'demo')
        other = StateStore(tmp_path, 'demo')
        with store.lock():
            with pytest.raises(StateLockError, match='is locked'):
                other.acquire()
        # Released on exit
        token = other.acquire()
        other.release(token)

    def test_lock_file_contents(self, tmp_path):
        store = StateStore(tmp_path, 'demo')
        with store.lock() as token:
            info = store.read_lock()
            assert info['token'] == token
            assert info['pid'] == os.getpid()
        assert store.read_lock() is None

    def test_release_ignores_foreign_token(self, tmp_path):
        store = StateStore(tmp_path, 'demo')
        token = store.acquire()
        store.release('other')
        assert store.lock_path.exists()
        store.release(token)
        assert not store.lock_path.exists()

    def test_force_unlock(self, tmp_path):
        store = StateStore(tmp_path, 'demo')
        store.acquire()
        assert store.force_unlock() is True
        assert store.force_unlock() is False
        store.release(store.acquire())

    def test_corrupt_state(self, tmp_path):
        store = StateStore(tmp_path, 'demo')
        store.stack_dir.mkdir(parents=True)
        store.path.write_text('{broken')
        with pytest.raises(ValidationError, match='Corrupt state'):
            store.load()
