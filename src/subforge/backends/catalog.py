"""Backend catalog and fallback chain construction.

Maps platform and detected hardware to an ordered list of backend
candidates. The chain always ends with a CPU entry:

    preference -> primary vendor runtime -> secondary vendor runtimes -> cpu
"""

import logging
import platform as platform_mod
import sys
from dataclasses import dataclass, replace
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from subforge.hardware.classification import (
    VENDOR_PRIORITY,
    SameVendorTieBreak,
    parse_version,
    rank_devices,
)
from subforge.hardware.device import (
    BackendKind,
    ComputeDevice,
    DeviceFamily,
    Vendor,
    generic_cpu_device,
)

logger = logging.getLogger(__name__)

ALL_SYSTEMS = frozenset({"win32", "linux", "darwin"})
ALL_ARCHS = frozenset({"x64", "arm64"})


@dataclass(frozen=True)
class PlatformInfo:
    """Operating system and CPU architecture, e.g. ('win32', 'x64')."""
    system: str
    arch: str

    def __str__(self) -> str:
        return f"{self.system}-{self.arch}"


def current_platform() -> PlatformInfo:
    """Describe the running platform."""
    if sys.platform.startswith("win"):
        system = "win32"
    elif sys.platform == "darwin":
        system = "darwin"
    else:
        system = "linux"
    machine = platform_mod.machine().lower()
    arch = "arm64" if machine in ("arm64", "aarch64") else "x64"
    return PlatformInfo(system, arch)


@dataclass(frozen=True)
class BackendDescriptor:
    """Static description of one backend.

    Attributes:
        kind: Runtime family
        module_names: Native modules to try, in fallback order
        systems: Operating systems the backend is built for
        archs: CPU architectures the backend is built for
        display_name: Name shown to users
        compatibility_systems: Systems where the build runs in a
            compatibility mode rather than natively
    """
    kind: BackendKind
    module_names: Tuple[str, ...]
    systems: FrozenSet[str] = ALL_SYSTEMS
    archs: FrozenSet[str] = ALL_ARCHS
    display_name: str = ""
    compatibility_systems: FrozenSet[str] = frozenset()

    def applies_to(self, platform: PlatformInfo) -> bool:
        """Platform applicability predicate."""
        return platform.system in self.systems and platform.arch in self.archs

    def compatibility_mode(self, platform: PlatformInfo) -> bool:
        return platform.system in self.compatibility_systems

    @property
    def name(self) -> str:
        return self.display_name or self.kind.value


DEFAULT_DESCRIPTORS: Dict[BackendKind, BackendDescriptor] = {
    BackendKind.CUDA: BackendDescriptor(
        kind=BackendKind.CUDA,
        module_names=("whisper_cuda",),
        systems=frozenset({"win32", "linux"}),
        archs=frozenset({"x64"}),
        display_name="NVIDIA CUDA",
    ),
    BackendKind.OPENVINO: BackendDescriptor(
        kind=BackendKind.OPENVINO,
        module_names=("whisper_openvino",),
        display_name="Intel OpenVINO",
        compatibility_systems=frozenset({"darwin"}),
    ),
    BackendKind.COREML: BackendDescriptor(
        kind=BackendKind.COREML,
        module_names=("whisper_coreml",),
        systems=frozenset({"darwin"}),
        archs=frozenset({"arm64"}),
        display_name="Apple CoreML",
    ),
    BackendKind.CPU: BackendDescriptor(
        kind=BackendKind.CPU,
        module_names=("whisper_cpu",),
        display_name="CPU",
    ),
}

# Version-specific CUDA builds, newest first
CUDA_BUILDS = [
    ((12, 4), "whisper_cuda_124"),
    ((12, 2), "whisper_cuda_122"),
    ((11, 0), "whisper_cuda_118"),
]

VENDOR_RUNTIME = {
    Vendor.NVIDIA: BackendKind.CUDA,
    Vendor.INTEL: BackendKind.OPENVINO,
    Vendor.APPLE: BackendKind.COREML,
}


def cuda_module_names(cuda_version: str, generic: Tuple[str, ...] = ("whisper_cuda",)) -> Tuple[str, ...]:
    """CUDA module names for a driver's CUDA version, newest compatible first."""
    parsed = parse_version(cuda_version or "")
    if parsed is None:
        return generic
    names = tuple(name for minimum, name in CUDA_BUILDS if parsed[:2] >= minimum)
    return names + generic


# =============================================================================
# Vendor policy
# =============================================================================

DEFAULT_VENDOR_WINNERS: Dict[FrozenSet[Vendor], Vendor] = {
    frozenset({Vendor.NVIDIA, Vendor.INTEL}): Vendor.NVIDIA,
    frozenset({Vendor.NVIDIA, Vendor.APPLE}): Vendor.NVIDIA,
    frozenset({Vendor.NVIDIA, Vendor.AMD}): Vendor.NVIDIA,
    frozenset({Vendor.APPLE, Vendor.INTEL}): Vendor.APPLE,
    frozenset({Vendor.INTEL, Vendor.AMD}): Vendor.INTEL,
    frozenset({Vendor.APPLE, Vendor.AMD}): Vendor.APPLE,
}


class VendorPolicy:
    """Named vendor-pair -> winner table for mixed-vendor systems.

    Vendors are ordered by how many pairings they win. Pairs missing from
    the table count for neither side; remaining ties use the vendor
    priority hint, then the vendor name.
    """

    def __init__(self, winners: Optional[Dict[FrozenSet[Vendor], Vendor]] = None):
        self.winners = dict(DEFAULT_VENDOR_WINNERS if winners is None else winners)

    def winner(self, a: Vendor, b: Vendor) -> Optional[Vendor]:
        """The preferred vendor of a pair, or None if the table is silent."""
        if a == b:
            return a
        return self.winners.get(frozenset({a, b}))

    def override(self, a: Vendor, b: Vendor, winner: Vendor) -> None:
        """Set the winner of one vendor pairing."""
        if winner not in (a, b):
            raise ValueError(f"{winner.value} is not part of the pair")
        self.winners[frozenset({a, b})] = winner

    def order(self, vendors: Iterable[Vendor]) -> List[Vendor]:
        """Order vendors from most to least preferred."""
        pool = list(dict.fromkeys(vendors))

        def wins(vendor: Vendor) -> int:
            return sum(1 for other in pool if other != vendor and self.winner(vendor, other) == vendor)

        return sorted(pool, key=lambda v: (-wins(v), -VENDOR_PRIORITY.get(v, 5), v.value))


# =============================================================================
# Chain construction
# =============================================================================

@dataclass(frozen=True)
class BackendCandidate:
    """One fallback chain entry: a descriptor bound to its target device."""
    descriptor: BackendDescriptor
    device: ComputeDevice
    reason: str

    @property
    def kind(self) -> BackendKind:
        return self.descriptor.kind

    def __str__(self) -> str:
        return f"{self.descriptor.name} on {self.device.name} ({self.reason})"


class BackendCatalog:
    """Builds fallback chains from detected hardware.

    Args:
        descriptors: Backend descriptors by kind (defaults to the built-in set)
        vendor_policy: Mixed-vendor ordering
        tie_break: Same-vendor device ordering
    """

    def __init__(
        self,
        descriptors: Optional[Dict[BackendKind, BackendDescriptor]] = None,
        vendor_policy: Optional[VendorPolicy] = None,
        tie_break: SameVendorTieBreak = SameVendorTieBreak.PLATFORM_PRIORITY,
    ):
        self.descriptors = dict(DEFAULT_DESCRIPTORS if descriptors is None else descriptors)
        # CPU can be replaced but never removed.
        self.descriptors.setdefault(BackendKind.CPU, DEFAULT_DESCRIPTORS[BackendKind.CPU])
        self.vendor_policy = vendor_policy or VendorPolicy()
        self.tie_break = tie_break

    def available_descriptors(self, platform: PlatformInfo) -> Dict[BackendKind, BackendDescriptor]:
        """Descriptors built for the platform. CPU is always included."""
        available = {
            kind: desc for kind, desc in self.descriptors.items()
            if desc.applies_to(platform)
        }
        available.setdefault(BackendKind.CPU, self.descriptors[BackendKind.CPU])
        return available

    def _resolve(self, descriptor: BackendDescriptor, device: ComputeDevice) -> BackendDescriptor:
        """Specialize a descriptor for a device (CUDA builds per version)."""
        if descriptor.kind == BackendKind.CUDA and device.runtime_version:
            names = cuda_module_names(device.runtime_version, descriptor.module_names)
            return replace(descriptor, module_names=names)
        return descriptor

    def build_fallback_chain(
        self,
        devices: Iterable[ComputeDevice],
        platform: Optional[PlatformInfo] = None,
        user_preference: Optional[str] = None,
    ) -> List[BackendCandidate]:
        """Order backend candidates, best first, always ending in CPU.

        Args:
            devices: Detected compute devices
            platform: Target platform (defaults to the running one)
            user_preference: 'auto', a backend kind ('cuda', ...) or a device id

        Returns:
            Non-empty list of candidates with a CPU candidate last
        """
        platform = platform or current_platform()
        devices = list(devices)
        available = self.available_descriptors(platform)
        ranked = [d for d in rank_devices(devices, self.tie_break) if d.family != DeviceFamily.CPU]

        def runtime_for(device: ComputeDevice) -> Optional[BackendKind]:
            kind = VENDOR_RUNTIME.get(device.vendor)
            if kind and kind in available and device.supports(kind):
                return kind
            return None

        chain: List[BackendCandidate] = []
        used = set()

        def add(device: ComputeDevice, kind: BackendKind, reason: str) -> None:
            if kind in used:
                return
            used.add(kind)
            chain.append(BackendCandidate(self._resolve(available[kind], device), device, reason))

        cpu_device = next(
            (d for d in rank_devices(devices) if d.family == DeviceFamily.CPU),
            None,
        ) or generic_cpu_device()

        preference = (user_preference or "").strip().lower()
        if preference and preference != "auto":
            preferred = self._match_preference(preference, ranked, runtime_for)
            if preferred:
                add(preferred[0], preferred[1], "preference")
            elif preference == BackendKind.CPU.value:
                add(cpu_device, BackendKind.CPU, "preference")
                return chain
            else:
                logger.warning(
                    f"Preferred backend '{user_preference}' is not available "
                    f"on {platform}, using automatic selection"
                )

        usable = [d for d in ranked if runtime_for(d)]
        vendors = self.vendor_policy.order(d.vendor for d in usable)
        for position, vendor in enumerate(vendors):
            device = next(d for d in usable if d.vendor == vendor)
            add(device, runtime_for(device), "primary" if position == 0 else "secondary")

        add(cpu_device, BackendKind.CPU, "cpu")

        logger.info(
            "Fallback chain: " + " -> ".join(c.kind.value for c in chain),
        )
        return chain

    @staticmethod
    def _match_preference(preference, ranked, runtime_for):
        """Find (device, kind) for a device id or backend kind preference."""
        for device in ranked:
            if device.id.lower() == preference:
                kind = runtime_for(device)
                return (device, kind) if kind else None

        for device in ranked:
            kind = runtime_for(device)
            if kind and kind.value == preference:
                return device, kind
        return None


def describe_chain(chain: List[BackendCandidate]) -> List[Dict[str, str]]:
    """Table rows for a fallback chain."""
    return [
        {
            "position": str(i + 1),
            "backend": c.descriptor.name,
            "device": c.device.name,
            "modules": ", ".join(c.descriptor.module_names),
            "reason": c.reason,
        }
        for i, c in enumerate(chain)
    ]
