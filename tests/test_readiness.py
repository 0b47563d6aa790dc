#!/usr/bin/env python3
"""Tests for readiness checks."""

import sys
from pathlib import Path
from unittest.mock import patch

sys.path.insert(0, str(Path(__file__).parent.parent / 'src'))

import requests

from config import RunConfig
from readiness import validate_provider, validate_provider_health


class TestValidateProviderHealth:
    """Test control-plane health check."""

    def test_healthy(self):
        """200 from /health returns success."""
        with patch('readiness.requests.get') as mock_get:
            mock_get.return_value.status_code = 200
            success, message = validate_provider_health('https://cp.example.net/', 'tok')

        assert success is True
        assert 'reachable' in message
        args, kwargs = mock_get.call_args
        assert args[0] == 'https://cp.example.net/health'
        assert kwargs['headers']['Authorization'] == 'Bearer tok'

    def test_anonymous_sends_no_auth_header(self):
        with patch('readiness.requests.get') as mock_get:
            mock_get.return_value.status_code = 200
            validate_provider_health('https://cp.example.net')
        assert 'Authorization' not in mock_get.call_args.kwargs['headers']

    def test_rejected_token(self):
        """401 returns failure with remediation."""
        with patch('readiness.requests.get') as mock_get:
            mock_get.return_value.status_code = 401
            success, message = validate_provider_health('https://cp.example.net', 'bad')

        assert success is False
        assert 'STACKPLAN_PROVIDER_TOKEN' in message

    def test_connection_error(self):
        with patch('readiness.requests.get',
                   side_effect=requests.exceptions.ConnectionError('refused')):
            success, message = validate_provider_health('https://cp.example.net')
        assert success is False
        assert 'Cannot connect' in message

    def test_timeout(self):
        with patch('readiness.requests.get', side_effect=requests.exceptions.Timeout()):
            success, message = validate_provider_health('https://cp.example.net')
        assert success is False
        assert 'Timeout' in message

    def test_unexpected_status(self):
        with patch('readiness.requests.get') as mock_get:
            mock_get.return_value.status_code = 500
            mock_get.return_value.text = 'internal error'
            success, message = validate_provider_health('https://cp.example.net')
        assert success is False
        assert '500' in message


class TestValidateProvider:
    """Test pre-flight checks per provider kind."""

    def _config(self, tmp_path, **kwargs):
        return RunConfig(workspace=tmp_path, state_dir=tmp_path, stacks_dir=tmp_path, **kwargs)

    def test_local_needs_nothing(self, tmp_path):
        with patch('readiness.requests.get') as mock_get:
            assert validate_provider(self._config(tmp_path)) == []
        mock_get.assert_not_called()

    def test_http_without_endpoint(self, tmp_path):
        errors = validate_provider(self._config(tmp_path, provider_kind='http'))
        assert len(errors) == 1
        assert 'provider.endpoint not configured' in errors[0]

    def test_http_healthy(self, tmp_path):
        config = self._config(tmp_path, provider_kind='http',
                              provider_endpoint='https://cp.example.net')
        with patch('readiness.requests.get') as mock_get:
            mock_get.return_value.status_code = 200
            assert validate_provider(config) == []
        assert mock_get.call_args.kwargs['timeout'] == 10.0

    def test_http_unreachable(self, tmp_path):
        config = self._config(tmp_path, provider_kind='http',
                              provider_endpoint='https://cp.example.net')
        with patch('readiness.requests.get',
                   side_effect=requests.exceptions.ConnectionError('refused')):
            errors = validate_provider(config)
        assert len(errors) == 1
        assert 'Cannot connect' in errors[0]
