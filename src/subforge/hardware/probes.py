"""Platform-specific hardware queries.

Each probe covers one vendor family and returns the devices it found.
"Nothing found" (tool not installed, driver not loaded) is an empty list.
A probe raises DetectionError only when the platform query itself breaks:
the tool crashed, timed out, or produced output that cannot be parsed.

Probes block on subprocesses; the detector runs them in a thread pool.
"""

import json
import logging
import platform
import re
import shutil
import subprocess
from typing import Callable, Dict, List, Optional, Tuple

import psutil

from subforge.errors import DetectionError
from subforge.hardware.classification import (
    cuda_supported,
    device_priority,
    is_integrated_name,
    openvino_supported,
    parse_cuda_version,
    performance_class,
    vendor_from_name,
)
from subforge.hardware.device import BackendKind, ComputeDevice, DeviceFamily, Vendor

logger = logging.getLogger(__name__)

MB = 1024 * 1024

ProbeFn = Callable[[], List[ComputeDevice]]


def _run(cmd: List[str], timeout: float) -> subprocess.CompletedProcess:
    """Run a query command without flashing a console window on Windows."""
    return subprocess.run(
        cmd,
        capture_output=True,
        text=True,
        timeout=timeout,
        creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
    )


def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")


# =============================================================================
# NVIDIA
# =============================================================================

def probe_nvidia() -> List[ComputeDevice]:
    """Detect NVIDIA GPUs using nvidia-smi."""
    if not shutil.which("nvidia-smi"):
        return []

    cmd = [
        "nvidia-smi",
        "--query-gpu=index,name,memory.total,driver_version",
        "--format=csv,noheader,nounits",
    ]
    try:
        result = _run(cmd, timeout=10)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise DetectionError(f"nvidia-smi query failed: {e}") from e

    if result.returncode != 0:
        # Driver not loaded or no device: nothing to report.
        logger.debug(f"nvidia-smi returned {result.returncode}: {result.stderr.strip()}")
        return []

    cuda_version = _query_cuda_version()
    capabilities = frozenset({BackendKind.CUDA}) if cuda_supported(cuda_version) else frozenset()
    if not capabilities:
        logger.info(f"CUDA {cuda_version} is below the supported minimum, CUDA disabled")

    devices = []
    for line in result.stdout.strip().splitlines():
        if not line.strip():
            continue
        parts = [p.strip() for p in line.split(",")]
        if len(parts) < 4:
            raise DetectionError(f"Unexpected nvidia-smi output: {line!r}")
        try:
            index = int(parts[0])
            memory_mb = int(float(parts[2]))
        except ValueError as e:
            raise DetectionError(f"Unexpected nvidia-smi output: {line!r}") from e

        devices.append(ComputeDevice(
            id=f"nvidia-{index}",
            name=parts[1],
            vendor=Vendor.NVIDIA,
            family=DeviceFamily.DISCRETE_GPU,
            memory_bytes=memory_mb * MB,
            capabilities=capabilities,
            priority=device_priority(Vendor.NVIDIA, parts[1]),
            index=index,
            driver_version=parts[3],
            runtime_version=cuda_version,
            performance="high",
            detection_method="nvidia-smi",
        ))

    return devices


def _query_cuda_version() -> str:
    """Best-effort CUDA version from the nvidia-smi banner."""
    try:
        result = _run(["nvidia-smi"], timeout=10)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.debug(f"CUDA version query failed: {e}")
        return ""
    return parse_cuda_version(result.stdout)


# =============================================================================
# Intel / AMD display adapters
# =============================================================================

INTEL_ARC_MEMORY_MB = {"a770": 16384, "a750": 8192, "a580": 8192, "a380": 6144, "a310": 4096}
AMD_MEMORY_MB = {"7900": 20480, "7800": 16384, "7600": 8192, "6900": 16384,
                 "6800": 16384, "6700": 12288, "6600": 8192, "6500": 4096}


def _estimate_memory_mb(vendor: Vendor, name: str) -> int:
    name_lower = name.lower()
    table = INTEL_ARC_MEMORY_MB if vendor == Vendor.INTEL else AMD_MEMORY_MB
    for model, memory_mb in table.items():
        if model in name_lower:
            return memory_mb
    return 4096


def _adapter_device(
    name: str,
    index: int,
    driver_version: str,
    memory_mb: Optional[int],
    method: str,
) -> Optional[ComputeDevice]:
    """Build a device for an Intel or AMD adapter; other vendors are skipped."""
    vendor = vendor_from_name(name)
    if vendor not in (Vendor.INTEL, Vendor.AMD):
        return None

    integrated = is_integrated_name(name)
    capabilities = frozenset()
    if vendor == Vendor.INTEL and openvino_supported(name):
        capabilities = frozenset({BackendKind.OPENVINO})

    if integrated:
        memory_bytes = None
    else:
        memory_bytes = (memory_mb or _estimate_memory_mb(vendor, name)) * MB

    priority = device_priority(vendor, name)
    return ComputeDevice(
        id=f"{vendor.value}-{_slug(name)}-{index}",
        name=name,
        vendor=vendor,
        family=DeviceFamily.INTEGRATED_GPU if integrated else DeviceFamily.DISCRETE_GPU,
        memory_bytes=memory_bytes,
        capabilities=capabilities,
        priority=priority,
        index=index,
        driver_version=driver_version,
        performance=performance_class(priority),
        detection_method=method,
    )


def _adapter_devices(
    adapters: List[Tuple[str, str, Optional[int]]],
    method: str,
) -> List[ComputeDevice]:
    """Build Intel and AMD devices from (name, driver, memory_mb) in listing order.

    Indices count one vendor's adapters only, matching how its runtime
    enumerates them. OpenVINO always exposes an integrated Intel GPU as
    GPU.0, so integrated Intel adapters are numbered ahead of discrete ones.
    """
    kept = [
        (pos, name, driver, memory_mb)
        for pos, (name, driver, memory_mb) in enumerate(adapters)
        if vendor_from_name(name) in (Vendor.INTEL, Vendor.AMD)
    ]

    def runtime_order(entry) -> Tuple[bool, int]:
        pos, name = entry[0], entry[1]
        discrete_intel = vendor_from_name(name) == Vendor.INTEL and not is_integrated_name(name)
        return discrete_intel, pos

    counts: Dict[Vendor, int] = {}
    indices: Dict[int, int] = {}
    for pos, name, _, _ in sorted(kept, key=runtime_order):
        vendor = vendor_from_name(name)
        indices[pos] = counts.get(vendor, 0)
        counts[vendor] = indices[pos] + 1

    return [
        _adapter_device(name, indices[pos], driver, memory_mb, method)
        for pos, name, driver, memory_mb in kept
    ]


def probe_windows_adapters() -> List[ComputeDevice]:
    """Detect Intel and AMD adapters on Windows via WMI."""
    if platform.system() != "Windows":
        return []

    cmd = [
        "powershell", "-NoProfile", "-Command",
        "Get-CimInstance Win32_VideoController | "
        "Select-Object Name, AdapterRAM, DriverVersion | "
        "ConvertTo-Json",
    ]
    try:
        result = _run(cmd, timeout=15)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise DetectionError(f"WMI video controller query failed: {e}") from e

    if result.returncode != 0:
        raise DetectionError(f"WMI video controller query failed: {result.stderr.strip()}")
    if not result.stdout.strip():
        return []

    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise DetectionError(f"Unparseable WMI output: {e}") from e

    if isinstance(data, dict):
        data = [data]

    adapters = []
    for adapter in data:
        name = adapter.get("Name") or ""
        if not name or "basic display" in name.lower() or "microsoft" in name.lower():
            continue

        # AdapterRAM is a signed 32-bit field and wraps above 2GB.
        ram = adapter.get("AdapterRAM") or 0
        if ram < 0:
            ram = 4294967296 + ram
        memory_mb = int(ram / MB) or None

        adapters.append((name, adapter.get("DriverVersion") or "", memory_mb))

    return _adapter_devices(adapters, "wmi")


def probe_linux_adapters() -> List[ComputeDevice]:
    """Detect Intel and AMD adapters on Linux via lspci."""
    if platform.system() != "Linux" or not shutil.which("lspci"):
        return []

    try:
        result = _run(["lspci", "-mm"], timeout=10)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise DetectionError(f"lspci query failed: {e}") from e

    if result.returncode != 0:
        raise DetectionError(f"lspci query failed: {result.stderr.strip()}")

    adapters = []
    for line in result.stdout.splitlines():
        # -mm format: slot "class" "vendor" "device" ...
        fields = re.findall(r'"([^"]*)"', line)
        if len(fields) < 3:
            continue
        device_class = fields[0].lower()
        if not any(c in device_class for c in ("vga", "display", "3d")):
            continue

        adapters.append((f"{fields[1]} {fields[2]}", "", None))

    return _adapter_devices(adapters, "lspci")


# =============================================================================
# Apple Silicon
# =============================================================================

def probe_apple() -> List[ComputeDevice]:
    """Detect the Apple Silicon neural accelerator."""
    if platform.system() != "Darwin":
        return []

    try:
        result = _run(["sysctl", "-n", "machdep.cpu.brand_string"], timeout=5)
    except (OSError, subprocess.TimeoutExpired) as e:
        raise DetectionError(f"sysctl query failed: {e}") from e

    if result.returncode != 0:
        raise DetectionError(f"sysctl query failed: {result.stderr.strip()}")

    cpu_brand = result.stdout.strip()
    if "Apple" not in cpu_brand or platform.machine() != "arm64":
        return []

    chip_name = cpu_brand if cpu_brand.startswith("Apple M") else "Apple Silicon"
    return [ComputeDevice(
        id=f"apple-{_slug(chip_name)}",
        name=f"{chip_name} Neural Engine",
        vendor=Vendor.APPLE,
        family=DeviceFamily.NEURAL_ACCELERATOR,
        memory_bytes=None,
        capabilities=frozenset({BackendKind.COREML}),
        priority=device_priority(Vendor.APPLE, chip_name),
        driver_version=platform.mac_ver()[0],
        performance="high",
        detection_method="sysctl",
    )]


# =============================================================================
# CPU
# =============================================================================

def probe_cpu() -> List[ComputeDevice]:
    """Describe the host CPU; there is always exactly one."""
    try:
        memory_total = psutil.virtual_memory().total
        cores = psutil.cpu_count(logical=False) or psutil.cpu_count() or 1
    except (OSError, RuntimeError) as e:
        raise DetectionError(f"CPU query failed: {e}") from e

    name = platform.processor() or platform.machine() or "CPU"
    return [ComputeDevice(
        id="cpu",
        name=f"{name} ({cores} cores)",
        vendor=vendor_from_name(name),
        family=DeviceFamily.CPU,
        memory_bytes=memory_total,
        capabilities=frozenset({BackendKind.CPU}),
        priority=1,
        performance="low",
        detection_method="psutil",
    )]


DEFAULT_PROBES: Dict[str, ProbeFn] = {
    "nvidia": probe_nvidia,
    "windows": probe_windows_adapters,
    "linux": probe_linux_adapters,
    "apple": probe_apple,
    "cpu": probe_cpu,
}
