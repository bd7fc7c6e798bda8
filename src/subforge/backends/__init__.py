"""Backend catalog, native module loading and runtime configuration."""

from .catalog import (
    PlatformInfo,
    BackendDescriptor,
    BackendCandidate,
    BackendCatalog,
    VendorPolicy,
    current_platform,
    describe_chain,
)

from .loader import (
    AddonLoader,
    LoadedAddon,
)

from .configuration import (
    BackendConfiguration,
    ConfigurationBuilder,
    RuntimeParameters,
    model_memory_mb,
)

__all__ = [
    "PlatformInfo",
    "BackendDescriptor",
    "BackendCandidate",
    "BackendCatalog",
    "VendorPolicy",
    "current_platform",
    "describe_chain",
    "AddonLoader",
    "LoadedAddon",
    "BackendConfiguration",
    "ConfigurationBuilder",
    "RuntimeParameters",
    "model_memory_mb",
]
