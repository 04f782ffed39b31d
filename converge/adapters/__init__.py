"""
Converge - Adapters Package

Provides the provider interface and implementations for cloud communication.
The adapter pattern allows swapping the simulated AWS provider for a real one.
"""

from converge.adapters.base import (
    CloudProvider,
    PermanentProviderError,
    ProviderError,
    ProviderFactory,
    ProviderResource,
    TransientProviderError,
)
from converge.adapters.fake_aws import FakeAWSProvider

__all__ = [
    "CloudProvider",
    "FakeAWSProvider",
    "PermanentProviderError",
    "ProviderError",
    "ProviderFactory",
    "ProviderResource",
    "TransientProviderError",
]
