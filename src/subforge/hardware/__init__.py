"""Compute device detection.

Example:
    >>> from subforge.hardware import get_detector
    >>> devices = await get_detector().detect()
"""

from .device import (
    Vendor,
    DeviceFamily,
    BackendKind,
    ComputeDevice,
    generic_cpu_device,
)

from .classification import (
    SameVendorTieBreak,
    DriverStatus,
    rank_devices,
    assess_driver,
)

from .detector import (
    HardwareDetector,
    get_detector,
    reset_detector,
)

__all__ = [
    "Vendor",
    "DeviceFamily",
    "BackendKind",
    "ComputeDevice",
    "generic_cpu_device",
    "SameVendorTieBreak",
    "DriverStatus",
    "rank_devices",
    "assess_driver",
    "HardwareDetector",
    "get_detector",
    "reset_detector",
]
