"""Provider control-plane clients."""

from config import ConfigError, RunConfig
from providers.base import Provider, ProviderResult, ProviderStatus, is_transient
from providers.http import HttpProvider
from providers.memory import InMemoryProvider
from providers.types import RESOURCE_TYPES, ResourceType, get_type, list_types


def create_provider(config: RunConfig) -> Provider:
    """Build the provider selected by the run config.

    Raises:
        ConfigError: If the http provider has no endpoint
    """
    if config.provider_kind == 'http':
        if not config.provider_endpoint:
            raise ConfigError(
                "provider.endpoint not configured. "
                "Set it in stackplan.yaml or STACKPLAN_PROVIDER_ENDPOINT"
            )
        return HttpProvider(
            endpoint=config.provider_endpoint,
            token=config.get_provider_token(),
            timeout=config.provider_timeout,
        )
    return InMemoryProvider(path=config.provider_path)


__all__ = [
    'Provider',
    'ProviderResult',
    'ProviderStatus',
    'is_transient',
    'HttpProvider',
    'InMemoryProvider',
    'RESOURCE_TYPES',
    'ResourceType',
    'get_type',
    'list_types',
    'create_provider',
]
