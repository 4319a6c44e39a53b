"""Providers: the APIs resources are created in."""

from typing import Dict, Optional, Type

from .base import Provider, ProviderResource
from .memory import InMemoryProvider
from .aws import AWSProvider
from terrapin.utils.errors import ConfigurationError

PROVIDERS: Dict[str, Type[Provider]] = {
    'memory': InMemoryProvider,
    'aws': AWSProvider,
}


def create_provider(
    name: str,
    region: Optional[str] = None,
    profile: Optional[str] = None,
    path: Optional[str] = None
) -> Provider:
    """Build a provider by name.

    Args:
        name: Registered provider name
        region: AWS region (aws only)
        profile: AWS profile (aws only)
        path: Persistence file (memory only)

    Raises:
        ConfigurationError: If the provider name is unknown
    """
    if name == 'memory':
        return InMemoryProvider(path=path)
    if name == 'aws':
        return AWSProvider(region=region, profile=profile)
    raise ConfigurationError(
        f"Unknown provider '{name}'",
        suggestions=[f"Use one of: {', '.join(sorted(PROVIDERS))}"]
    )


__all__ = [
    "Provider",
    "ProviderResource",
    "InMemoryProvider",
    "AWSProvider",
    "PROVIDERS",
    "create_provider",
]
