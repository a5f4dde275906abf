"""
Provider system for the cairn engine.

Providers implement create/update/delete/describe for a set of resource
types; the registry routes each resource type to exactly one provider.
"""

from providers.base import ProviderCapability, ProviderResult, ResourceTypeSpec
from providers.registry import ProviderRegistry, RoutingProvider, get_registry

__all__ = [
    "ProviderCapability",
    "ProviderResult",
    "ResourceTypeSpec",
    "ProviderRegistry",
    "RoutingProvider",
    "get_registry",
]
