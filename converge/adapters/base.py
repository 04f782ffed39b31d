"""
Converge - Base Provider Interface

Defines the abstract interface that all cloud provider adapters must
implement. The executor treats the provider as an opaque capability and
only ever calls create / read / update / delete.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set


class ProviderError(Exception):
    """
    Exception raised by a provider call.

    ``transient`` errors (throttling, eventual consistency) may succeed on
    retry; permanent errors (invalid parameter) never will.
    """

    transient: bool = False

    def __init__(
        self,
        message: str,
        code: str = "ProviderError",
        resource_type: Optional[str] = None,
    ):
        self.message = message
        self.code = code
        self.resource_type = resource_type
        super().__init__(self.message)

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class TransientProviderError(ProviderError):
    """Provider error that may succeed when retried."""

    transient = True


class PermanentProviderError(ProviderError):
    """Provider error that will not succeed when retried."""

    transient = False


@dataclass
class ProviderResource:
    """A resource as reported by the provider."""
    id: str
    resource_type: str
    attributes: Dict[str, Any] = field(default_factory=dict)


class CloudProvider(ABC):
    """
    Abstract base class for cloud provider adapters.

    All adapters (simulated or real) must implement this interface.
    """

    def __init__(self, region: str):
        """
        Initialize adapter for a region.

        Args:
            region: Provider region (e.g., us-west-2)
        """
        self.region = region

    @abstractmethod
    def connect(self) -> bool:
        """
        Establish the provider session.

        Returns:
            True if connection successful, False otherwise
        """
        pass

    @abstractmethod
    def disconnect(self) -> None:
        """Close the provider session."""
        pass

    @abstractmethod
    def create(
        self,
        resource_type: str,
        attributes: Dict[str, Any],
    ) -> ProviderResource:
        """
        Create a resource.

        Args:
            resource_type: Resource type (e.g., aws_vpc)
            attributes: Fully resolved input attributes

        Returns:
            ProviderResource with the assigned id and computed attributes

        Raises:
            ProviderError: If the call fails
        """
        pass

    @abstractmethod
    def read(
        self,
        resource_type: str,
        resource_id: str,
    ) -> Optional[ProviderResource]:
        """
        Describe a resource.

        Returns:
            ProviderResource, or None if it no longer exists
        """
        pass

    @abstractmethod
    def update(
        self,
        resource_type: str,
        resource_id: str,
        attributes: Dict[str, Any],
    ) -> ProviderResource:
        """
        Update mutable attributes of a resource in place.

        Raises:
            ProviderError: If the call fails
        """
        pass

    @abstractmethod
    def delete(
        self,
        resource_type: str,
        resource_id: str,
    ) -> None:
        """
        Delete a resource.

        Raises:
            ProviderError: If the call fails
        """
        pass

    @abstractmethod
    def immutable_attributes(self, resource_type: str) -> Set[str]:
        """Attributes whose change forces replacement of the resource."""
        pass

    @abstractmethod
    def get_state(self) -> Dict[str, Any]:
        """
        Get current adapter state (for debugging/auditing).

        Returns:
            Dictionary with current state information
        """
        pass

    @abstractmethod
    def reset(self) -> None:
        """Reset adapter state (for testing)."""
        pass


class ProviderFactory:
    """
    Factory for creating provider adapters.

    Usage:
        provider = ProviderFactory.create("fake", "us-west-2")
    """

    _providers: Dict[str, type] = {}

    @classmethod
    def register(cls, provider_type: str, provider_class: type) -> None:
        """Register a provider type."""
        cls._providers[provider_type] = provider_class

    @classmethod
    def create(
        cls,
        provider_type: str,
        region: str,
        **kwargs,
    ) -> CloudProvider:
        """
        Create a provider instance.

        Args:
            provider_type: Type of provider ("fake")
            region: Provider region
            **kwargs: Additional provider-specific arguments

        Returns:
            Configured CloudProvider instance

        Raises:
            ValueError: If provider type is not registered
        """
        if provider_type not in cls._providers:
            raise ValueError(
                f"Unknown provider type: {provider_type}. "
                f"Available: {list(cls._providers.keys())}"
            )
        return cls._providers[provider_type](region, **kwargs)

    @classmethod
    def available_providers(cls) -> List[str]:
        """Get list of available provider types."""
        return list(cls._providers.keys())
