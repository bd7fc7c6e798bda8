"""Runtime configuration for a selected device and backend.

ConfigurationBuilder performs no I/O: everything it needs
(settings, platform, core count) is captured when it is constructed.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from subforge.backends.catalog import BackendDescriptor, PlatformInfo, current_platform
from subforge.backends.loader import LoadedAddon
from subforge.config import Settings
from subforge.hardware.classification import (
    MIN_RECOMMENDED_DRIVER,
    DriverStatus,
    assess_driver,
)
from subforge.hardware.device import BackendKind, ComputeDevice, DeviceFamily

logger = logging.getLogger(__name__)


# =============================================================================
# Model memory requirements
# =============================================================================

MODEL_MEMORY_MB = {
    "tiny": 1024,
    "base": 1024,
    "small": 2048,
    "medium": 3072,
    "large": 6400,
    "large-v2": 6400,
    "large-v3": 6400,
}
DEFAULT_MODEL_MEMORY_MB = 2048

# Models that fit when the accelerator shares system memory
SHARED_MEMORY_MODELS = frozenset({"tiny", "base", "small", "medium"})

_QUANTIZED_SUFFIX = re.compile(r"-q\d+_\d+$")


def base_model(model_id: str) -> str:
    """Strip quantization and language suffixes: 'medium.en-q5_0' -> 'medium'."""
    model = _QUANTIZED_SUFFIX.sub("", (model_id or "").strip().lower())
    if model.endswith(".en"):
        model = model[:-3]
    return model


def model_memory_mb(model_id: str) -> int:
    """Memory (MB) a model needs on the accelerator."""
    return MODEL_MEMORY_MB.get(base_model(model_id), DEFAULT_MODEL_MEMORY_MB)


# =============================================================================
# Configuration types
# =============================================================================

EXPECTED_SPEEDUP = {
    BackendKind.CUDA: 4.0,
    BackendKind.COREML: 2.8,
    BackendKind.CPU: 1.0,
}
OPENVINO_SPEEDUP = {True: 3.5, False: 2.5}  # keyed by is_dedicated


@dataclass(frozen=True)
class RuntimeParameters:
    """Derived runtime parameters for one attempt."""
    device_index: int
    thread_count: int
    memory_ceiling_bytes: Optional[int]
    optimization_flags: FrozenSet[str]
    performance_mode: str


@dataclass
class BackendConfiguration:
    """Ready-to-run bundle for a single attempt on one backend."""
    device: ComputeDevice
    descriptor: BackendDescriptor
    parameters: RuntimeParameters
    native_params: Dict[str, Any]
    notes: List[str] = field(default_factory=list)
    expected_speedup: float = 1.0
    addon: Optional[LoadedAddon] = None

    @property
    def kind(self) -> BackendKind:
        return self.descriptor.kind

    @property
    def backend_id(self) -> str:
        module = self.addon.module_name if self.addon else self.descriptor.module_names[0]
        return f"{self.kind.value}:{module}"

    def has_headroom(self, model_id: str) -> bool:
        """Check whether the model fits the memory ceiling.

        The CPU entry always reports headroom; it is the terminal fallback.
        """
        if self.kind == BackendKind.CPU:
            return True
        if self.parameters.memory_ceiling_bytes is None:
            return base_model(model_id) in SHARED_MEMORY_MODELS
        required = model_memory_mb(model_id) * 1024 * 1024
        return self.parameters.memory_ceiling_bytes >= required

    def call_params(
        self,
        model_path: str,
        audio_path: str,
        language: str = "auto",
        progress_callback: Optional[Callable[[float], None]] = None,
    ) -> Dict[str, Any]:
        """Parameters for the native ``whisper`` entry point."""
        params = dict(self.native_params)
        params.update({
            "model": model_path,
            "fname_inp": audio_path,
            "language": language or "auto",
        })
        if progress_callback is not None:
            params["progress_callback"] = progress_callback
        return params

    def release(self) -> None:
        """Drop the module handle at session end."""
        if self.addon is not None:
            logger.debug(f"Releasing {self.backend_id}")
            self.addon = None


class ConfigurationBuilder:
    """Derives backend-specific runtime parameters.

    Args:
        settings: User settings (thread override, cache dir)
        platform: Target platform (defaults to the running one)
        cpu_count: Logical core count used for thread defaults
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        platform: Optional[PlatformInfo] = None,
        cpu_count: Optional[int] = None,
    ):
        self.settings = settings or Settings()
        self.platform = platform or current_platform()
        self.cpu_count = cpu_count or os.cpu_count() or 4

    def thread_count(self, kind: BackendKind) -> int:
        """Thread count: explicit setting, else per-backend default."""
        if self.settings.thread_count:
            return self.settings.thread_count
        default = max(1, min(8, self.cpu_count))
        # Accelerated backends only need a few feeder threads.
        return default if kind == BackendKind.CPU else min(4, default)

    def build(
        self,
        device: ComputeDevice,
        descriptor: BackendDescriptor,
        addon: Optional[LoadedAddon] = None,
    ) -> BackendConfiguration:
        """Build the configuration for one device/backend pair."""
        kind = descriptor.kind
        threads = self.thread_count(kind)

        if kind == BackendKind.CUDA:
            flags = frozenset({"flash_attention", "fp16"})
            mode = "throughput"
            native = {"cuda_device": device.index, "flash_attn": True}
            speedup = EXPECTED_SPEEDUP[kind]
        elif kind == BackendKind.OPENVINO:
            flags = {"dynamic_shapes", "model_cache"}
            if device.is_dedicated:
                flags.add("fp16")
            flags = frozenset(flags)
            mode = "throughput" if device.is_dedicated else "latency"
            native = {
                "openvino_device": "GPU" if device.index == 0 else f"GPU.{device.index}",
                "openvino_cache_dir": str(self.settings.cache_dir / "openvino"),
            }
            speedup = OPENVINO_SPEEDUP[device.is_dedicated]
        elif kind == BackendKind.COREML:
            flags = frozenset({"reduced_precision", "neural_engine"})
            mode = "latency"
            native = {"coreml_enabled": True}
            speedup = EXPECTED_SPEEDUP[kind]
        else:
            flags = frozenset()
            mode = "balanced"
            native = {}
            speedup = EXPECTED_SPEEDUP[BackendKind.CPU]

        native_params = {
            "use_gpu": kind != BackendKind.CPU,
            "flash_attn": False,
            "n_threads": threads,
            "performance_mode": mode,
        }
        native_params.update(native)

        if device.family == DeviceFamily.CPU or kind == BackendKind.CPU:
            ceiling = device.memory_bytes
        else:
            ceiling = None if device.shared_memory else device.memory_bytes

        return BackendConfiguration(
            device=device,
            descriptor=descriptor,
            parameters=RuntimeParameters(
                device_index=device.index,
                thread_count=threads,
                memory_ceiling_bytes=ceiling,
                optimization_flags=flags,
                performance_mode=mode,
            ),
            native_params=native_params,
            notes=self.diagnostic_notes(device, descriptor),
            expected_speedup=speedup,
            addon=addon,
        )

    def diagnostic_notes(self, device: ComputeDevice, descriptor: BackendDescriptor) -> List[str]:
        """Warnings to surface alongside the configuration."""
        notes = []
        if descriptor.kind != BackendKind.CPU:
            status = assess_driver(device)
            if status == DriverStatus.OUTDATED:
                notes.append(
                    f"Driver {device.driver_version} is outdated; version "
                    f"{MIN_RECOMMENDED_DRIVER[device.vendor]} or newer is recommended"
                )
            elif status == DriverStatus.BETA:
                notes.append(f"Driver {device.driver_version} is a beta release and may be unstable")

        if descriptor.compatibility_mode(self.platform):
            notes.append(f"{descriptor.name} runs in compatibility mode on {self.platform.system}")
        return notes
