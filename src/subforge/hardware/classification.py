"""Device classification, priority scoring and driver assessment.

Everything here is a pure function of device names and version strings
so it can be shared by the platform probes and the configuration builder.
"""

import re
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from subforge.hardware.device import ComputeDevice, DeviceFamily, Vendor


# =============================================================================
# Vendor and family identification
# =============================================================================

NVIDIA_KEYWORDS = ["nvidia", "geforce", "quadro", "tesla", "rtx", "gtx"]
AMD_KEYWORDS = ["amd", "radeon", "rx ", "vega", "navi"]
INTEL_KEYWORDS = ["intel", "uhd", "iris", "arc", "xe"]
APPLE_KEYWORDS = ["apple", "m1", "m2", "m3", "m4"]

INTEGRATED_KEYWORDS = [
    "uhd", "iris", "integrated", "igpu", "vega 8", "vega 6", "vega 3",
    "graphics 630", "graphics 530", "hd graphics", "core ultra",
]

INTEL_ARC_PATTERN = re.compile(r"\barc\b.*?\b(a\d{3})\b", re.IGNORECASE)
CORE_ULTRA_PATTERN = re.compile(r"core\s*ultra", re.IGNORECASE)
# Gen8 and older parts have no OpenVINO GPU plugin support.
LEGACY_INTEL_PATTERN = re.compile(r"hd graphics (?:[2-6]\d{3}|[1-4]\d{2})\b", re.IGNORECASE)

INTEL_ARC_PRIORITY = {"a770": 8, "a750": 7, "a580": 6, "a380": 5, "a310": 4}

VENDOR_PRIORITY = {
    Vendor.NVIDIA: 10,
    Vendor.APPLE: 8,
    Vendor.AMD: 6,
    Vendor.UNKNOWN: 1,
}


def vendor_from_name(name: str) -> Vendor:
    """Detect the vendor from a device name."""
    name_lower = name.lower()

    if any(kw in name_lower for kw in NVIDIA_KEYWORDS):
        return Vendor.NVIDIA
    if any(kw in name_lower for kw in AMD_KEYWORDS):
        return Vendor.AMD
    if any(kw in name_lower for kw in INTEL_KEYWORDS):
        return Vendor.INTEL
    if any(kw in name_lower for kw in APPLE_KEYWORDS):
        return Vendor.APPLE

    return Vendor.UNKNOWN


def is_integrated_name(name: str) -> bool:
    """Check if a GPU name denotes an integrated part."""
    name_lower = name.lower()
    if "arc" in name_lower and INTEL_ARC_PATTERN.search(name_lower):
        return False
    return any(kw in name_lower for kw in INTEGRATED_KEYWORDS)


def intel_priority(name: str) -> int:
    """Priority hint for an Intel GPU, higher is better.

    Discrete Arc cards rank by model, integrated parts by generation.
    """
    name_lower = name.lower()

    arc = INTEL_ARC_PATTERN.search(name_lower)
    if arc:
        return INTEL_ARC_PRIORITY.get(arc.group(1), 5)
    if CORE_ULTRA_PATTERN.search(name_lower):
        return 4
    if "iris" in name_lower:
        return 3
    if "xe" in name_lower or "arc" in name_lower:
        return 3
    if "uhd" in name_lower:
        return 2
    return 1


def device_priority(vendor: Vendor, name: str) -> int:
    """Priority hint for any device on the common 1-10 scale."""
    if vendor == Vendor.INTEL:
        return intel_priority(name)
    return VENDOR_PRIORITY.get(vendor, 1)


def performance_class(priority: int) -> str:
    """Map a priority hint to 'high', 'medium' or 'low'."""
    if priority >= 7:
        return "high"
    if priority >= 4:
        return "medium"
    return "low"


def openvino_supported(name: str) -> bool:
    """Check if an Intel GPU generation is supported by OpenVINO."""
    return not LEGACY_INTEL_PATTERN.search(name)


# =============================================================================
# Versions and driver assessment
# =============================================================================

CUDA_VERSION_PATTERN = re.compile(r"CUDA Version:\s*(\d+\.\d+)")
MIN_CUDA_VERSION = (11, 0)

MIN_RECOMMENDED_DRIVER = {
    Vendor.INTEL: "31.0.101.4502",
    Vendor.NVIDIA: "450.36",
}

BETA_MARKERS = ("beta", "preview", "rc", "dev")


class DriverStatus(Enum):
    """Outcome of comparing a driver version against known baselines."""
    CURRENT = "current"
    OUTDATED = "outdated"
    BETA = "beta"
    UNKNOWN = "unknown"


def parse_version(version: str) -> Optional[Tuple[int, ...]]:
    """Parse the leading dotted numeric part of a version string."""
    match = re.match(r"\s*(\d+(?:\.\d+)*)", version or "")
    if not match:
        return None
    return tuple(int(p) for p in match.group(1).split("."))


def compare_versions(a: str, b: str) -> int:
    """Compare two dotted versions. Returns -1, 0 or 1.

    Missing trailing components count as zero.
    """
    va = parse_version(a) or ()
    vb = parse_version(b) or ()
    length = max(len(va), len(vb))
    va = va + (0,) * (length - len(va))
    vb = vb + (0,) * (length - len(vb))
    return (va > vb) - (va < vb)


def parse_cuda_version(nvidia_smi_output: str) -> str:
    """Extract 'CUDA Version: X.Y' from plain nvidia-smi output."""
    match = CUDA_VERSION_PATTERN.search(nvidia_smi_output or "")
    return match.group(1) if match else ""


def cuda_supported(cuda_version: str) -> bool:
    """CUDA builds need CUDA 11.0 or newer; unknown versions are trusted."""
    if not cuda_version:
        return True
    parsed = parse_version(cuda_version)
    return parsed is not None and parsed[:2] >= MIN_CUDA_VERSION


def assess_driver(device: ComputeDevice) -> DriverStatus:
    """Classify a device's driver as current, outdated, beta or unknown."""
    version = device.driver_version or ""
    version_lower = version.lower()

    if any(re.search(rf"\b{marker}\d*\b", version_lower) for marker in BETA_MARKERS):
        return DriverStatus.BETA

    minimum = MIN_RECOMMENDED_DRIVER.get(device.vendor)
    if not minimum or parse_version(version) is None:
        return DriverStatus.UNKNOWN

    if compare_versions(version, minimum) < 0:
        return DriverStatus.OUTDATED
    return DriverStatus.CURRENT


# =============================================================================
# Same-vendor tie-break
# =============================================================================

class SameVendorTieBreak(Enum):
    """Policy for choosing between several devices of one vendor.

    PLATFORM_PRIORITY takes the device the platform reports with the
    highest priority hint and falls back to the lowest platform index when
    hints are equal. HIGHEST_PERFORMANCE takes the device with the most
    dedicated memory.
    """
    PLATFORM_PRIORITY = "platform-priority"
    HIGHEST_PERFORMANCE = "highest-performance"


FAMILY_ORDER = {
    DeviceFamily.DISCRETE_GPU: 0,
    DeviceFamily.NEURAL_ACCELERATOR: 1,
    DeviceFamily.INTEGRATED_GPU: 2,
    DeviceFamily.CPU: 3,
}


def device_sort_key(device: ComputeDevice, policy: SameVendorTieBreak) -> tuple:
    """Sort key: dedicated before integrated, then the tie-break policy."""
    family = FAMILY_ORDER[device.family]
    if policy == SameVendorTieBreak.HIGHEST_PERFORMANCE:
        return (family, -(device.memory_bytes or 0), -device.priority, device.index, device.id)
    return (family, -device.priority, device.index, device.id)


def rank_devices(
    devices: Iterable[ComputeDevice],
    policy: SameVendorTieBreak = SameVendorTieBreak.PLATFORM_PRIORITY,
) -> List[ComputeDevice]:
    """Order devices best first under the given tie-break policy."""
    return sorted(devices, key=lambda d: device_sort_key(d, policy))
