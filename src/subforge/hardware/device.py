"""Device and runtime identification types."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class Vendor(Enum):
    """Hardware vendor identification."""
    NVIDIA = "nvidia"
    AMD = "amd"
    INTEL = "intel"
    APPLE = "apple"
    UNKNOWN = "unknown"


class DeviceFamily(Enum):
    """Broad class of a compute device."""
    DISCRETE_GPU = "discrete-gpu"
    INTEGRATED_GPU = "integrated-gpu"
    NEURAL_ACCELERATOR = "neural-accelerator"
    CPU = "cpu"


class BackendKind(Enum):
    """Accelerated runtimes a native inference module can be built for."""
    CUDA = "cuda"           # NVIDIA CUDA
    OPENVINO = "openvino"   # Intel OpenVINO
    COREML = "coreml"       # Apple CoreML / Neural Engine
    CPU = "cpu"             # Plain CPU build, always available


@dataclass(frozen=True)
class ComputeDevice:
    """A single detected compute device.

    Instances are immutable and hashable so a detection pass can be
    returned as a set. ``memory_bytes`` is None for devices that share
    system memory.
    """
    id: str
    name: str
    vendor: Vendor
    family: DeviceFamily
    memory_bytes: Optional[int] = None
    capabilities: FrozenSet[BackendKind] = frozenset()
    priority: int = 0
    index: int = 0
    driver_version: str = ""
    runtime_version: str = ""  # CUDA version for NVIDIA devices
    performance: str = "medium"
    detection_method: str = ""

    @property
    def is_dedicated(self) -> bool:
        return self.family == DeviceFamily.DISCRETE_GPU

    @property
    def shared_memory(self) -> bool:
        return self.memory_bytes is None

    @property
    def memory_mb(self) -> Optional[int]:
        if self.memory_bytes is None:
            return None
        return self.memory_bytes // (1024 * 1024)

    def supports(self, kind: BackendKind) -> bool:
        """Check if the device is compatible with a runtime."""
        return kind in self.capabilities

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for display and serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "vendor": self.vendor.value,
            "family": self.family.value,
            "memory_mb": self.memory_mb if self.memory_mb is not None else "shared",
            "capabilities": sorted(k.value for k in self.capabilities),
            "priority": self.priority,
            "index": self.index,
            "driver_version": self.driver_version,
            "runtime_version": self.runtime_version,
            "performance": self.performance,
            "detection_method": self.detection_method,
        }


def generic_cpu_device() -> ComputeDevice:
    """CPU placeholder used when detection did not report one."""
    return ComputeDevice(
        id="cpu",
        name="CPU",
        vendor=Vendor.UNKNOWN,
        family=DeviceFamily.CPU,
        capabilities=frozenset({BackendKind.CPU}),
        priority=1,
        performance="low",
        detection_method="fallback",
    )
