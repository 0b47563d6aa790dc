"""Tests for providers.http module.

All HTTP traffic is mocked by patching requests.Session.request.
"""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

from errors import ProviderError, TransientProviderError
from providers.base import ProviderStatus
from providers.http import HttpProvider

ENDPOINT = 'https://cp.example.net/v1'


def _response(status_code=200, body=None):
    resp = MagicMock()
    resp.status_code = status_code
    if body is None:
        resp.content = b''
        resp.json.side_effect = ValueError('no body')
        resp.text = ''
    else:
        resp.content = json.dumps(body).encode()
        resp.json.return_value = body
        resp.text = json.dumps(body)
    return resp


class TestHttpProviderRequests:
    """Tests for request construction."""

    def test_create_posts_resource(self):
        provider = HttpProvider(ENDPOINT + '/', token='tok')
        body = {'status': 'succeeded', 'physicalId': 'api-123', 'outputs': {'apiId': 'api-123'}}
        with patch.object(requests.Session, 'request', return_value=_response(201, body)) as req:
            result = provider.create('graphql-api', 'PostsApi', {'name': 'posts-api'})

        assert result.succeeded
        assert result.physical_id == 'api-123'
        assert result.outputs == {'apiId': 'api-123'}
        method, url = req.call_args.args
        assert method == 'POST'
        assert url == f'{ENDPOINT}/resources'
        sent = req.call_args.kwargs['json']
        assert sent['logicalId'] == 'PostsApi'
        assert sent['clientToken'] == 'graphql-api:PostsApi'
        assert req.call_args.kwargs['timeout'] == 30.0

    def test_bearer_token_header(self):
        provider = HttpProvider(ENDPOINT, token='tok')
        assert provider.session.headers['Authorization'] == 'Bearer tok'
        assert 'Authorization' not in HttpProvider(ENDPOINT).session.headers

    def test_find_not_found(self):
        provider = HttpProvider(ENDPOINT)
        with patch.object(requests.Session, 'request', return_value=_response(404)) as req:
            assert provider.find('storage-bucket', 'Bucket') is None
        assert req.call_args.kwargs['params'] == {'type': 'storage-bucket', 'logicalId': 'Bucket'}

    def test_find_existing(self):
        provider = HttpProvider(ENDPOINT)
        body = {'status': 'succeeded', 'physicalId': 'b-1', 'outputs': {'bucketName': 'b-1'}}
        with patch.object(requests.Session, 'request', return_value=_response(200, body)):
            found = provider.find('storage-bucket', 'Bucket')
        assert found.physical_id == 'b-1'

    def test_update_keeps_physical_id(self):
        provider = HttpProvider(ENDPOINT)
        with patch.object(requests.Session, 'request', return_value=_response(204)) as req:
            result = provider.update('storage-bucket', 'b-1', {'versioned': True}, ['versioned'])
        assert result.succeeded
        assert result.physical_id == 'b-1'
        assert req.call_args.args == ('PUT', f'{ENDPOINT}/resources/b-1')
        assert req.call_args.kwargs['json']['changed'] == ['versioned']

    def test_delete_missing_is_success(self):
        provider = HttpProvider(ENDPOINT)
        with patch.object(requests.Session, 'request', return_value=_response(404)):
            assert provider.delete('storage-bucket', 'b-1').succeeded

    def test_in_progress_and_describe(self):
        provider = HttpProvider(ENDPOINT)
        body = {'status': 'IN_PROGRESS', 'physicalId': 't-1', 'operationId': 'op-9'}
        with patch.object(requests.Session, 'request', return_value=_response(202, body)):
            result = provider.create('table', 'T', {})
        assert result.status == ProviderStatus.IN_PROGRESS
        assert result.operation_id == 'op-9'

        with patch.object(requests.Session, 'request',
                          return_value=_response(200, {'status': 'complete'})) as req:
            assert provider.describe('op-9').succeeded
        assert req.call_args.args == ('GET', f'{ENDPOINT}/operations/op-9')


class TestHttpProviderErrors:
    """Tests for error classification."""

    def test_permanent_error_returns_failed(self):
        provider = HttpProvider(ENDPOINT)
        body = {'error': {'code': 'ValidationException', 'message': 'name too long'}}
        with patch.object(requests.Session, 'request', return_value=_response(400, body)):
            result = provider.create('graphql-api', 'Api', {})
        assert result.failed
        assert result.code == 'ValidationException'
        assert result.message == 'name too long'

    def test_throttling_code_raises_transient(self):
        provider = HttpProvider(ENDPOINT)
        body = {'error': {'code': 'ThrottlingException', 'message': 'Rate exceeded'}}
        with patch.object(requests.Session, 'request', return_value=_response(400, body)):
            with pytest.raises(TransientProviderError) as exc:
                provider.create('graphql-api', 'Api', {})
        assert exc.value.code == 'ThrottlingException'
        assert exc.value.logical_id == 'Api'

    @pytest.mark.parametrize('status', [429, 503])
    def test_transient_status_raises(self, status):
        provider = HttpProvider(ENDPOINT)
        with patch.object(requests.Session, 'request', return_value=_response(status)):
            with pytest.raises(TransientProviderError):
                provider.delete('storage-bucket', 'b-1')

    def test_timeout_is_transient(self):
        provider = HttpProvider(ENDPOINT)
        with patch.object(requests.Session, 'request', side_effect=requests.exceptions.Timeout()):
            with pytest.raises(TransientProviderError) as exc:
                provider.find('storage-bucket', 'B')
        assert exc.value.code == 'Timeout'

    def test_connection_error_is_transient(self):
        provider = HttpProvider(ENDPOINT)
        with patch.object(requests.Session, 'request',
                          side_effect=requests.exceptions.ConnectionError('refused')):
            with pytest.raises(TransientProviderError) as exc:
                provider.describe('op-1')
        assert exc.value.code == 'ConnectionError'

    def test_unknown_status(self):
        provider = HttpProvider(ENDPOINT)
        with patch.object(requests.Session, 'request',
                          return_value=_response(200, {'status': 'weird'})):
            result = provider.describe('op-1')
        assert result.failed
        assert result.code == 'UnknownStatus'

    def test_failed_status_in_body(self):
        provider = HttpProvider(ENDPOINT)
        body = {'status': 'failed', 'error': {'code': 'LimitExceeded', 'message': 'too many tables'}}
        with patch.object(requests.Session, 'request', return_value=_response(200, body)):
            result = provider.describe('op-1')
        assert result.failed
        assert result.code == 'LimitExceeded'
        assert result.message == 'too many tables'


def _raw_response(status_code, text):
    """Response whose body is not JSON."""
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = text.encode()
    resp.text = text
    resp.json.side_effect = ValueError('Expecting value')
    return resp


class TestHttpProviderMalformed:
    """Tests for responses that are not a JSON object."""

    def test_html_success_body_is_failed(self):
        provider = HttpProvider(ENDPOINT)
        with patch.object(requests.Session, 'request',
                          return_value=_raw_response(200, '<html>oops</html>')):
            result = provider.create('storage-bucket', 'Bucket', {})
        assert result.failed
        assert result.code == 'MalformedResponse'
        assert '<html>oops</html>' in result.message

    def test_list_body_is_failed(self):
        provider = HttpProvider(ENDPOINT)
        with patch.object(requests.Session, 'request', return_value=_response(200, ['b-1'])):
            result = provider.describe('op-1')
        assert result.failed
        assert result.code == 'MalformedResponse'

    def test_find_with_malformed_body_is_absent(self):
        provider = HttpProvider(ENDPOINT)
        with patch.object(requests.Session, 'request',
                          return_value=_raw_response(200, 'not json')):
            assert provider.find('storage-bucket', 'Bucket') is None

    def test_non_object_outputs_is_failed(self):
        provider = HttpProvider(ENDPOINT)
        body = {'status': 'succeeded', 'physicalId': 'b-1', 'outputs': ['arn']}
        with patch.object(requests.Session, 'request', return_value=_response(200, body)):
            result = provider.create('storage-bucket', 'Bucket', {})
        assert result.failed
        assert result.code == 'MalformedResponse'

    def test_string_error_field(self):
        provider = HttpProvider(ENDPOINT)
        body = {'status': 'failed', 'error': 'quota exceeded'}
        with patch.object(requests.Session, 'request', return_value=_response(200, body)):
            result = provider.describe('op-1')
        assert result.failed
        assert result.message == 'quota exceeded'

    def test_error_status_with_html_body(self):
        provider = HttpProvider(ENDPOINT)
        with patch.object(requests.Session, 'request',
                          return_value=_raw_response(400, '<html>bad request</html>')):
            result = provider.create('storage-bucket', 'Bucket', {})
        assert result.failed
        assert result.code == 'HTTP400'
        assert result.message == '<html>bad request</html>'

    @pytest.mark.parametrize('error', [
        requests.exceptions.TooManyRedirects('loop'),
        requests.exceptions.InvalidURL('bad url'),
    ])
    def test_other_request_errors_raise_provider_error(self, error):
        provider = HttpProvider(ENDPOINT)
        with patch.object(requests.Session, 'request', side_effect=error):
            with pytest.raises(ProviderError) as exc:
                provider.find('storage-bucket', 'Bucket')
        assert exc.value.code == type(error).__name__
        assert exc.value.logical_id == 'Bucket'
        assert not isinstance(exc.value, TransientProviderError)
