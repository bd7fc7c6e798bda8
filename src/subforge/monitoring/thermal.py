"""GPU throttle detection during inference sessions.

Throttling never fails a session. The performance monitor polls a probe
while sampling memory and marks the session as degraded.
"""

import logging
import shutil
import subprocess
from enum import Enum
from typing import Callable, Optional

from subforge.hardware.device import ComputeDevice, Vendor

logger = logging.getLogger(__name__)


class ThrottleState(Enum):
    """GPU throttling states."""
    NONE = "none"
    POWER_LIMIT = "power_limit"
    THERMAL = "thermal"
    RELIABILITY = "reliability"
    UNKNOWN = "unknown"

    @property
    def degraded(self) -> bool:
        return self in (ThrottleState.THERMAL, ThrottleState.POWER_LIMIT, ThrottleState.RELIABILITY)


ThrottleProbe = Callable[[], ThrottleState]


def parse_throttle_reasons(output: str) -> ThrottleState:
    """Interpret ``clocks_throttle_reasons.active`` output."""
    reasons = output.strip().lower()
    if "thermal" in reasons or "temp" in reasons:
        return ThrottleState.THERMAL
    if "power" in reasons:
        return ThrottleState.POWER_LIMIT
    if "reliability" in reasons:
        return ThrottleState.RELIABILITY
    if reasons in ("", "not active", "0x0000000000000000") or "[not supported]" in reasons:
        return ThrottleState.NONE
    return ThrottleState.UNKNOWN


def check_nvidia_throttling(device_index: int = 0) -> ThrottleState:
    """Query the active throttle reasons of an NVIDIA GPU."""
    try:
        result = subprocess.run(
            [
                "nvidia-smi",
                f"--id={device_index}",
                "--query-gpu=clocks_throttle_reasons.active",
                "--format=csv,noheader",
            ],
            capture_output=True,
            text=True,
            timeout=5,
            creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"Throttle query failed: {e}")
        return ThrottleState.UNKNOWN

    if result.returncode != 0:
        return ThrottleState.UNKNOWN
    return parse_throttle_reasons(result.stdout)


def throttle_probe_for(device: ComputeDevice) -> Optional[ThrottleProbe]:
    """A throttle probe for the device, or None when the vendor has none."""
    if device.vendor == Vendor.NVIDIA and shutil.which("nvidia-smi"):
        return lambda: check_nvidia_throttling(device.index)
    return None
