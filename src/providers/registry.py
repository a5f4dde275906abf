"""
Provider Registry - Discovery, registration and routing of providers.

Each resource type tag is owned by exactly one provider. The routing
provider dispatches every call by resource type, so the engine never
branches on vendor.
"""

import logging
from importlib.metadata import entry_points
from typing import Any, Dict, List, Mapping, Optional, Type

from errors import PermanentProviderError
from models import PropertyChange, Resource
from providers.base import ProviderCapability, ProviderResult, ResourceTypeSpec

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "cairn.providers"


class ProviderRegistry:
    """Central registry of provider classes and their initialized instances."""

    def __init__(self):
        # Registered provider classes (not instantiated)
        self._providers: Dict[str, Type[ProviderCapability]] = {}

        # Cached metadata to avoid repeated instantiation
        self._provider_info: Dict[str, Dict[str, Any]] = {}
        self._type_specs: Dict[str, ResourceTypeSpec] = {}

        # Instantiated and initialized provider instances
        self._instances: Dict[str, ProviderCapability] = {}

        # Provider configurations loaded from environment
        self._provider_configs: Dict[str, Dict[str, Any]] = {}

        # Mapping from resource type tag to provider name
        self._resource_type_to_provider: Dict[str, str] = {}

    def register_provider(self, provider_class: Type[ProviderCapability]) -> None:
        """
        Register a provider class.

        Args:
            provider_class: The ProviderCapability subclass to register

        Raises:
            ValueError: If a resource type is already claimed by another provider
        """
        # Temporary instance to read name, version and resource types
        temp_instance = provider_class()
        name = temp_instance.name
        version = temp_instance.version
        resource_types = dict(temp_instance.resource_types)

        for rt in resource_types:
            existing = self._resource_type_to_provider.get(rt)
            if existing and existing != name:
                raise ValueError(
                    f"Resource type '{rt}' is already claimed by "
                    f"provider '{existing}'. Cannot register '{name}'."
                )

        if name in self._providers:
            logger.warning(f"Overwriting existing provider: {name}")
            for rt, owner in list(self._resource_type_to_provider.items()):
                if owner == name:
                    del self._resource_type_to_provider[rt]
                    self._type_specs.pop(rt, None)

        self._providers[name] = provider_class
        self._provider_info[name] = {
            "name": name,
            "version": version,
            "resource_types": sorted(resource_types),
        }
        self._provider_configs[name] = provider_class.load_config_from_env()
        for rt, spec in resource_types.items():
            self._resource_type_to_provider[rt] = name
            self._type_specs[rt] = spec

        logger.info(
            f"Registered provider: {name} v{version} "
            f"(resource types: {', '.join(sorted(resource_types)) or 'none'})"
        )

    async def get_provider(
        self, name: str, config: Optional[Dict[str, Any]] = None
    ) -> ProviderCapability:
        """
        Get an initialized provider instance.

        Args:
            name: The provider name to retrieve
            config: Configuration overriding the environment-derived one

        Raises:
            ValueError: If the provider name is not registered
        """
        if name not in self._providers:
            available = ", ".join(sorted(self._providers)) or "none"
            raise ValueError(f"Unknown provider: {name}. Available providers: {available}")

        if name not in self._instances:
            provider = self._providers[name]()
            merged = dict(self._provider_configs.get(name, {}))
            merged.update(config or {})
            await provider.initialize(merged)
            self._instances[name] = provider
            logger.info(f"Initialized provider: {name}")

            # Providers whose types come from configuration only know them now.
            for rt, spec in provider.resource_types.items():
                owner = self._resource_type_to_provider.get(rt)
                if owner and owner != name:
                    raise ValueError(
                        f"Resource type '{rt}' is already claimed by "
                        f"provider '{owner}'. Cannot register '{name}'."
                    )
                self._resource_type_to_provider[rt] = name
                self._type_specs[rt] = spec

        return self._instances[name]

    def list_providers(self) -> List[str]:
        return sorted(self._providers)

    def has_provider(self, name: str) -> bool:
        return name in self._providers

    def get_provider_info(self, name: str) -> Optional[Dict[str, Any]]:
        """Dictionary with 'name', 'version' and 'resource_types', or None."""
        return self._provider_info.get(name)

    def get_provider_config(self, name: str) -> Dict[str, Any]:
        return self._provider_configs.get(name, {})

    def provider_for_type(self, resource_type: str) -> Optional[str]:
        return self._resource_type_to_provider.get(resource_type)

    def type_specs(self) -> Dict[str, ResourceTypeSpec]:
        """Resource type tag -> spec for every registered type."""
        return dict(self._type_specs)

    async def close(self) -> None:
        for name, provider in list(self._instances.items()):
            await provider.close()
            logger.debug(f"Closed provider: {name}")
        self._instances.clear()


class RoutingProvider(ProviderCapability):
    """A provider that dispatches each call to the owner of the resource type."""

    def __init__(self, providers: Optional[Mapping[str, ProviderCapability]] = None):
        self._routes: Dict[str, ProviderCapability] = {}
        self._providers: Dict[str, ProviderCapability] = {}
        for provider in (providers or {}).values():
            self.add(provider)

    def add(self, provider: ProviderCapability) -> None:
        for rt in provider.resource_types:
            existing = self._routes.get(rt)
            if existing is not None and existing is not provider:
                raise ValueError(
                    f"Resource type '{rt}' is already routed to provider "
                    f"'{existing.name}'. Cannot route it to '{provider.name}'."
                )
            self._routes[rt] = provider
        self._providers[provider.name] = provider

    @property
    def name(self) -> str:
        return "router"

    @property
    def version(self) -> str:
        return "1.0.0"

    @property
    def resource_types(self) -> Dict[str, ResourceTypeSpec]:
        specs = {}
        for rt, provider in self._routes.items():
            specs[rt] = provider.resource_types[rt]
        return specs

    def _route(self, resource_type: str) -> ProviderCapability:
        provider = self._routes.get(resource_type)
        if provider is None:
            raise PermanentProviderError(
                f"No provider handles resource type '{resource_type}'"
            )
        return provider

    async def initialize(self, config: Dict[str, Any]) -> None:
        # Routed providers are initialized by the registry.
        return None

    async def create(self, resource: Resource, idempotency_key: str) -> ProviderResult:
        return await self._route(resource.type).create(
            resource, idempotency_key=idempotency_key
        )

    async def update(
        self,
        resource: Resource,
        diff: Dict[str, PropertyChange],
        provider_id: str,
        idempotency_key: str,
    ) -> Dict[str, Any]:
        return await self._route(resource.type).update(
            resource, diff, provider_id=provider_id, idempotency_key=idempotency_key
        )

    async def delete(
        self, provider_id: str, resource_type: str, idempotency_key: str
    ) -> None:
        await self._route(resource_type).delete(
            provider_id, resource_type, idempotency_key=idempotency_key
        )

    async def describe(self, provider_id: str, resource_type: str) -> Dict[str, Any]:
        return await self._route(resource_type).describe(provider_id, resource_type)

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()


async def create_router(
    registry: "ProviderRegistry",
    enabled: Optional[List[str]] = None,
    configs: Optional[Mapping[str, Dict[str, Any]]] = None,
) -> RoutingProvider:
    """
    Initialize the enabled providers and route resource types to them.

    Args:
        registry: Registry holding the provider classes.
        enabled: Provider names to load (empty or None = all registered).
        configs: Per-provider configuration overrides.
    """
    names = enabled or registry.list_providers()
    router = RoutingProvider()
    for name in names:
        provider = await registry.get_provider(name, (configs or {}).get(name))
        router.add(provider)
    return router


def immutable_properties(specs: Mapping[str, ResourceTypeSpec]) -> Dict[str, List[str]]:
    """Resource type tag -> immutable property names, for the planner."""
    return {rt: sorted(spec.immutable) for rt, spec in specs.items()}


# Global registry instance
_registry: Optional[ProviderRegistry] = None


def get_registry() -> ProviderRegistry:
    """Get the global provider registry singleton."""
    global _registry
    if _registry is None:
        _registry = ProviderRegistry()
    return _registry


def reset_registry() -> None:
    """Reset the global registry (mainly for testing)."""
    global _registry
    _registry = None


def register_builtin_providers() -> None:
    """
    Register the built-in providers and discover third-party providers
    via the ``cairn.providers`` entry-point group.
    """
    from providers.http import HTTPProvider
    from providers.simulated import SimulatedProvider

    registry = get_registry()
    registry.register_provider(SimulatedProvider)
    registry.register_provider(HTTPProvider)

    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            provider_class = ep.load()
            registry.register_provider(provider_class)
        except Exception as e:
            logger.warning(f"Could not load provider {ep.name}: {e}")
