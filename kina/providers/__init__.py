"""Node backends."""

from kina.providers.apple_container import AppleContainerProvider
from kina.providers.base import DeleteResult, Provider, ProviderCapabilities

__all__ = ["AppleContainerProvider", "DeleteResult", "Provider", "ProviderCapabilities"]
