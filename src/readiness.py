"""Pre-flight readiness checks for apply/destroy.

Validates provider prerequisites before any operation runs:
- Endpoint configured (http provider)
- Control plane reachable and healthy
- Token accepted
"""

import logging

import requests

from config import RunConfig

logger = logging.getLogger(__name__)


def validate_provider_health(endpoint: str, token: str = '',
                             timeout: float = 10.0) -> tuple[bool, str]:
    """Check the provider control plane answers GET /health.

    Args:
        endpoint: Control-plane base URL
        token: Bearer token (empty = anonymous)
        timeout: Request timeout in seconds

    Returns:
        (success, message) tuple
    """
    url = f"{endpoint.rstrip('/')}/health"
    headers = {'Accept': 'application/json'}
    if token:
        headers['Authorization'] = f'Bearer {token}'

    try:
        resp = requests.get(url, headers=headers, timeout=timeout)
    except requests.exceptions.ConnectionError as e:
        return False, f"Cannot connect to {endpoint}: {e}"
    except requests.exceptions.Timeout:
        return False, f"Timeout connecting to {endpoint}"

    if resp.status_code in (401, 403):
        return False, (
            f"Provider rejected the token (HTTP {resp.status_code}).\n"
            "Set STACKPLAN_PROVIDER_TOKEN or provider.token in stackplan.yaml"
        )
    if resp.status_code == 200:
        return True, f"Provider reachable at {endpoint}"
    return False, f"Unexpected health response: {resp.status_code} - {resp.text[:100]}"


def validate_provider(config: RunConfig) -> list[str]:
    """Run pre-flight checks for the configured provider.

    Returns:
        List of error messages (empty = ready)
    """
    if config.provider_kind != 'http':
        logger.debug(f"Local provider at {config.provider_path}, nothing to check")
        return []

    if not config.provider_endpoint:
        return [
            "provider.endpoint not configured.\n"
            "Set it in stackplan.yaml or STACKPLAN_PROVIDER_ENDPOINT"
        ]

    ok, message = validate_provider_health(
        config.provider_endpoint,
        config.get_provider_token(),
        timeout=min(config.provider_timeout, 10.0),
    )
    if not ok:
        return [message]
    logger.debug(message)
    return []
