"""subforge - hardware-aware backend selection for speech-to-subtitle inference."""
__version__ = "0.4.0"

from .config import Settings

from .errors import (
    SubforgeError,
    DetectionError,
    LoadError,
    DriverError,
    DeviceMemoryError,
    NetworkError,
    ModelUnavailableError,
    NativeRuntimeError,
    FatalError,
    RetryConfig,
)

from .orchestrator import (
    InferenceSessionOrchestrator,
    ProcessingRequest,
    ProcessingOutcome,
    OutcomeStatus,
    SessionState,
    CancellationToken,
)

from .models import ModelStore

__all__ = [
    "__version__",
    "Settings",
    # Errors
    "SubforgeError",
    "DetectionError",
    "LoadError",
    "DriverError",
    "DeviceMemoryError",
    "NetworkError",
    "ModelUnavailableError",
    "NativeRuntimeError",
    "FatalError",
    "RetryConfig",
    # Orchestration
    "InferenceSessionOrchestrator",
    "ProcessingRequest",
    "ProcessingOutcome",
    "OutcomeStatus",
    "SessionState",
    "CancellationToken",
    "ModelStore",
]
