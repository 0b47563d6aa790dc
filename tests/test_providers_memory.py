"""Tests for providers.memory module."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from config import ConfigError, RunConfig
from errors import TransientProviderError
from providers import HttpProvider, InMemoryProvider, Provider, create_provider
from providers.base import ProviderStatus, is_transient


class TestInMemoryProvider:
    """Tests for the in-process provider."""

    def test_implements_protocol(self):
        assert isinstance(InMemoryProvider(), Provider)

    def test_create_generates_outputs(self):
        provider = InMemoryProvider()
        result = provider.create('graphql-api', 'PostsApi', {'name': 'posts-api'})
        assert result.succeeded
        assert result.physical_id == 'postsapi-000001'
        assert set(result.outputs) == {'apiId', 'arn', 'graphqlUrl'}
        assert result.outputs['arn'].startswith('arn:local:graphql-api:')

    def test_outputs_echo_declared_properties(self):
        provider = InMemoryProvider()
        result = provider.create('table', 'PostsTable', {'tableName': 'posts', 'partitionKey': {}})
        assert result.outputs['tableName'] == 'posts'
        assert result.outputs['streamArn'].endswith('/stream')

    def test_find_by_logical_id(self):
        provider = InMemoryProvider()
        created = provider.create('storage-bucket', 'Bucket', {})
        found = provider.find('storage-bucket', 'Bucket')
        assert found.physical_id == created.physical_id
        assert provider.find('storage-bucket', 'Other') is None
        assert provider.find('table', 'Bucket') is None

    def test_update(self):
        provider = InMemoryProvider()
        created = provider.create('storage-bucket', 'Bucket', {'versioned': False})
        result = provider.update('storage-bucket', created.physical_id, {'versioned': True}, ['versioned'])
        assert result.succeeded
        assert provider.resources[created.physical_id]['properties'] == {'versioned': True}

    def test_update_missing(self):
        result = InMemoryProvider().update('storage-bucket', 'gone-1', {}, [])
        assert result.failed
        assert result.code == 'ResourceNotFound'

    def test_delete_is_idempotent(self):
        provider = InMemoryProvider()
        created = provider.create('storage-bucket', 'Bucket', {})
        assert provider.delete('storage-bucket', created.physical_id).succeeded
        assert provider.delete('storage-bucket', created.physical_id).succeeded
        assert provider.resources == {}

    def test_fail_injection(self):
        provider = InMemoryProvider(fail={'Bad': 'Invalid name'})
        result = provider.create('storage-bucket', 'Bad', {})
        assert result.failed
        assert result.message == 'Invalid name'
        assert result.code == 'ValidationException'
        assert provider.resources == {}

    def test_throttle_injection(self):
        provider = InMemoryProvider(throttle={'Slow': 2})
        for _ in range(2):
            with pytest.raises(TransientProviderError) as exc:
                provider.create('storage-bucket', 'Slow', {})
            assert exc.value.code == 'ThrottlingException'
        assert provider.create('storage-bucket', 'Slow', {}).succeeded

    def test_pending_polls(self):
        provider = InMemoryProvider(pending_polls=2)
        started = provider.create('table', 'T', {'tableName': 't', 'partitionKey': {}})
        assert started.status == ProviderStatus.IN_PROGRESS
        assert started.operation_id
        assert provider.describe(started.operation_id).in_progress
        assert provider.describe(started.operation_id).in_progress
        done = provider.describe(started.operation_id)
        assert done.succeeded
        assert done.physical_id == started.physical_id

    def test_describe_unknown_operation(self):
        result = InMemoryProvider().describe('nope')
        assert result.failed
        assert result.code == 'OperationNotFound'

    def test_calls_recorded(self):
        provider = InMemoryProvider()
        provider.find('storage-bucket', 'B')
        provider.create('storage-bucket', 'B', {})
        assert provider.calls == [('find', 'B'), ('create', 'B')]

    def test_persistence(self, tmp_path):
        path = tmp_path / 'provider.json'
        first = InMemoryProvider(path=path)
        created = first.create('storage-bucket', 'Bucket', {})
        second = InMemoryProvider(path=path)
        assert second.find('storage-bucket', 'Bucket').physical_id == created.physical_id
        # Counter survives, so ids stay unique
        assert second.create('storage-bucket', 'Other', {}).physical_id == 'other-000002'


class TestTransientClassification:
    """Tests for is_transient."""

    @pytest.mark.parametrize('code', ['Throttling', 'ThrottlingException', 'TooManyRequestsException'])
    def test_transient_codes(self, code):
        assert is_transient(code)

    @pytest.mark.parametrize('status', [429, 502, 503, 504])
    def test_transient_statuses(self, status):
        assert is_transient(http_status=status)

    def test_permanent(self):
        assert not is_transient('ValidationException', 400)
        assert not is_transient()


class TestCreateProvider:
    """Tests for provider selection from config."""

    def test_local_default(self, tmp_path):
        config = RunConfig(workspace=tmp_path, state_dir=tmp_path / '.states', stacks_dir=tmp_path)
        provider = create_provider(config)
        assert isinstance(provider, InMemoryProvider)
        assert provider.path == tmp_path / '.states' / 'provider.json'

    def test_http(self, tmp_path):
        config = RunConfig(workspace=tmp_path, state_dir=tmp_path, stacks_dir=tmp_path,
                           provider_kind='http', provider_endpoint='https://cp.example.net/')
        config.set_provider_token('tok')
        provider = create_provider(config)
        assert isinstance(provider, HttpProvider)
        assert provider.endpoint == 'https://cp.example.net'
        assert provider.session.headers['Authorization'] == 'Bearer tok'

    def test_http_requires_endpoint(self, tmp_path):
        config = RunConfig(workspace=tmp_path, state_dir=tmp_path, stacks_dir=tmp_path,
                           provider_kind='http')
        with pytest.raises(ConfigError, match='endpoint'):
            create_provider(config)
