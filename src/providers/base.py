"""
Provider Base - Abstract interface for infrastructure providers.

A provider owns the create/update/delete/describe calls for a set of
resource types. The engine only ever talks to this interface; vendor
specifics live entirely inside provider implementations.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional

from models import PropertyChange, Resource


@dataclass(frozen=True)
class ResourceTypeSpec:
    """Provider metadata for one resource type."""

    schema: Optional[Dict[str, Any]] = field(default=None, hash=False)
    immutable: FrozenSet[str] = frozenset()
    description: str = ""


@dataclass
class ProviderResult:
    """What a provider returns from a successful create."""

    provider_id: str
    outputs: Dict[str, Any] = field(default_factory=dict)


class ProviderCapability(ABC):
    """
    Abstract base class for providers.

    Every mutating call carries an idempotency key; a provider that sees
    the same key twice must not create a second resource.

    Implementations signal failures with ``TransientProviderError`` (safe to
    retry) or ``PermanentProviderError``. ``describe`` and ``delete`` raise
    ``ResourceNotFoundError`` when the resource no longer exists.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Unique identifier for this provider (e.g., 'simulated')."""
        pass

    @property
    @abstractmethod
    def version(self) -> str:
        """Provider version string."""
        pass

    @property
    @abstractmethod
    def resource_types(self) -> Dict[str, ResourceTypeSpec]:
        """Resource type tags handled by this provider."""
        pass

    @abstractmethod
    async def initialize(self, config: Dict[str, Any]) -> None:
        """
        Initialize the provider with configuration.

        Called once when the provider is loaded.

        Args:
            config: Provider-specific configuration dictionary
        """
        pass

    @abstractmethod
    async def create(self, resource: Resource, idempotency_key: str) -> ProviderResult:
        """
        Create a resource from fully resolved properties.

        Returns:
            The provider-assigned identifier and the resource's outputs.
        """
        pass

    @abstractmethod
    async def update(
        self,
        resource: Resource,
        diff: Dict[str, PropertyChange],
        provider_id: str,
        idempotency_key: str,
    ) -> Dict[str, Any]:
        """
        Update mutable properties of an existing resource in place.

        Args:
            resource: The resource with fully resolved desired properties.
            diff: Changed properties relative to last-applied state.
            provider_id: Identifier returned by create.
            idempotency_key: Key identifying this step.

        Returns:
            Outputs that changed (merged into the recorded outputs).
        """
        pass

    @abstractmethod
    async def delete(
        self, provider_id: str, resource_type: str, idempotency_key: str
    ) -> None:
        """Delete a resource."""
        pass

    @abstractmethod
    async def describe(self, provider_id: str, resource_type: str) -> Dict[str, Any]:
        """
        Read the live properties of a resource.

        Raises:
            ResourceNotFoundError: If the resource no longer exists.
        """
        pass

    async def close(self) -> None:
        """Release any connections. Default does nothing."""
        return None

    @classmethod
    def load_config_from_env(cls) -> Dict[str, Any]:
        """
        Load provider-specific configuration from environment variables.

        Returns:
            Dictionary of configuration values for this provider.
        """
        return {}
