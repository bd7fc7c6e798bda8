"""Shared pytest fixtures for subforge tests."""
from pathlib import Path
from typing import Callable, List, Optional

import pytest

from subforge.backends.catalog import BackendCatalog, PlatformInfo
from subforge.backends.configuration import ConfigurationBuilder
from subforge.backends.loader import AddonLoader
from subforge.config import Settings
from subforge.diagnostics.recovery import ErrorRecoveryCoordinator
from subforge.hardware.detector import HardwareDetector, reset_detector
from subforge.hardware.device import BackendKind, ComputeDevice, DeviceFamily, Vendor
from subforge.monitoring.performance import PerformanceMonitor
from subforge.monitoring.telemetry import RecordingSink
from subforge.orchestrator import InferenceSessionOrchestrator

MB = 1024 * 1024

LINUX_X64 = PlatformInfo("linux", "x64")
WINDOWS_X64 = PlatformInfo("win32", "x64")
MAC_ARM64 = PlatformInfo("darwin", "arm64")


# ============================================================================
# Devices
# ============================================================================

@pytest.fixture
def nvidia_gpu() -> ComputeDevice:
    """An RTX card with 8GB and a current driver."""
    return ComputeDevice(
        id="nvidia-0",
        name="NVIDIA GeForce RTX 3070",
        vendor=Vendor.NVIDIA,
        family=DeviceFamily.DISCRETE_GPU,
        memory_bytes=8192 * MB,
        capabilities=frozenset({BackendKind.CUDA}),
        priority=10,
        index=0,
        driver_version="546.33",
        performance="high",
        detection_method="nvidia-smi",
    )


@pytest.fixture
def intel_arc() -> ComputeDevice:
    """A discrete Intel Arc A770."""
    return ComputeDevice(
        id="intel-arc-a770-0",
        name="Intel(R) Arc(TM) A770 Graphics",
        vendor=Vendor.INTEL,
        family=DeviceFamily.DISCRETE_GPU,
        memory_bytes=16384 * MB,
        capabilities=frozenset({BackendKind.OPENVINO}),
        priority=8,
        index=0,
        driver_version="31.0.101.5186",
        performance="high",
    )


@pytest.fixture
def intel_igpu() -> ComputeDevice:
    """Integrated Intel graphics sharing system memory."""
    return ComputeDevice(
        id="intel-iris-xe-1",
        name="Intel(R) Iris(R) Xe Graphics",
        vendor=Vendor.INTEL,
        family=DeviceFamily.INTEGRATED_GPU,
        memory_bytes=None,
        capabilities=frozenset({BackendKind.OPENVINO}),
        priority=3,
        index=1,
        driver_version="31.0.101.5186",
        performance="low",
    )


@pytest.fixture
def apple_ane() -> ComputeDevice:
    """Apple Silicon neural accelerator."""
    return ComputeDevice(
        id="apple-m2",
        name="Apple M2 Neural Engine",
        vendor=Vendor.APPLE,
        family=DeviceFamily.NEURAL_ACCELERATOR,
        memory_bytes=None,
        capabilities=frozenset({BackendKind.COREML}),
        priority=8,
        performance="high",
    )


@pytest.fixture
def cpu_device() -> ComputeDevice:
    return ComputeDevice(
        id="cpu",
        name="x86_64 (8 cores)",
        vendor=Vendor.UNKNOWN,
        family=DeviceFamily.CPU,
        memory_bytes=16384 * MB,
        capabilities=frozenset({BackendKind.CPU}),
        priority=1,
        performance="low",
    )


# ============================================================================
# Fake native modules
# ============================================================================

ADDON_TEMPLATE = '''
CALL_LOG = {log!r}
FAIL_WITH = {fail!r}


def whisper(params):
    if params.get("validate_only"):
        raise RuntimeError("model file not found")
    with open(CALL_LOG, "a", encoding="utf-8") as f:
        f.write(__name__ + "\\n")
    if FAIL_WITH:
        raise RuntimeError(FAIL_WITH)
    callback = params.get("progress_callback")
    if callback:
        callback(50.0)
        callback(100.0)
    return [{{"start": 0, "end": 1500, "text": "hello from " + __name__}}]
'''


class AddonFactory:
    """Writes fake native modules into an addons directory."""

    def __init__(self, root: Path):
        self.root = root
        self.log = root / "calls.log"

    def write(self, name: str, fail_with: str = "", source: Optional[str] = None) -> Path:
        path = self.root / f"{name}.py"
        path.write_text(
            source if source is not None else ADDON_TEMPLATE.format(log=str(self.log), fail=fail_with),
            encoding="utf-8",
        )
        return path

    def calls(self) -> List[str]:
        """Module names whose native call ran, in order."""
        if not self.log.exists():
            return []
        return self.log.read_text(encoding="utf-8").split()


@pytest.fixture
def addons(tmp_path) -> AddonFactory:
    root = tmp_path / "addons"
    root.mkdir()
    return AddonFactory(root)


# ============================================================================
# Orchestrator collaborators
# ============================================================================

class FakeModelStore:
    """Model store whose acquisitions fail with scripted errors first."""

    def __init__(self, root: Path, failures=()):
        self.root = root
        self.failures = list(failures)
        self.calls = []

    async def acquire(self, model_id, progress=None, force=False):
        self.calls.append((model_id, force))
        if self.failures:
            raise self.failures.pop(0)
        if progress:
            progress(100.0)
        path = self.root / f"ggml-{model_id}.bin"
        path.write_bytes(b"ggml")
        return path


class RecordedSleep:
    """Awaitable sleep that records delays instead of waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleep() -> RecordedSleep:
    return RecordedSleep()


@pytest.fixture
def model_store(tmp_path) -> FakeModelStore:
    root = tmp_path / "models"
    root.mkdir()
    return FakeModelStore(root)


@pytest.fixture(autouse=True)
def _reset_detector():
    yield
    reset_detector()


def static_detector(devices) -> HardwareDetector:
    """Detector backed by a single probe returning ``devices``."""
    return HardwareDetector(probes={"static": lambda: list(devices)}, cache_ttl=0)


@pytest.fixture
def make_orchestrator(addons, model_store, sleep, tmp_path) -> Callable[..., InferenceSessionOrchestrator]:
    """Build an orchestrator around fake devices and fake native modules."""

    def _make(devices, platform=LINUX_X64, **kwargs) -> InferenceSessionOrchestrator:
        settings = kwargs.pop("settings", None) or Settings(
            addons_dir=addons.root,
            models_dir=tmp_path / "models",
            cache_dir=tmp_path / "cache",
        )
        sink = kwargs.pop("sink", None) or RecordingSink()
        options = dict(
            settings=settings,
            detector=kwargs.pop("detector", None) or static_detector(devices),
            catalog=BackendCatalog(),
            loader=AddonLoader(addons.root),
            builder=ConfigurationBuilder(settings, platform, cpu_count=8),
            monitor=PerformanceMonitor(memory_reader=lambda: 256 * MB),
            coordinator=ErrorRecoveryCoordinator(),
            model_store=model_store,
            sink=sink,
            platform=platform,
            sleep=sleep,
        )
        options.update(kwargs)
        return InferenceSessionOrchestrator(**options)

    return _make
