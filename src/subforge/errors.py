"""Error taxonomy for the subforge inference core.

Everything except :class:`FatalError` is locally recoverable: the
orchestrator retries or walks the fallback chain before anything reaches
the caller.
"""
import logging
import random
from dataclasses import dataclass
from typing import Any, FrozenSet, Optional, Sequence

logger = logging.getLogger(__name__)


# =============================================================================
# Error Classification
# =============================================================================

class SubforgeError(Exception):
    """Base exception for all subforge errors.

    Args:
        message: Technical description (logged, never shown raw to users)
        technical_kind: Classified failure kind when known
    """

    def __init__(self, message: str, technical_kind: Optional[str] = None):
        super().__init__(message)
        self.technical_kind = technical_kind


class DetectionError(SubforgeError):
    """A platform hardware query itself failed.

    ``partial_devices`` holds whatever the other probes found.
    """

    def __init__(
        self,
        message: str,
        partial_devices: FrozenSet[Any] = frozenset(),
        failed_probes: Sequence[str] = (),
    ):
        super().__init__(message, technical_kind="detection-failed")
        self.partial_devices = partial_devices
        self.failed_probes = tuple(failed_probes)


class LoadError(SubforgeError):
    """A native module is missing or lacks the required entry points."""

    def __init__(self, message: str, backend: str = "", module_names: Sequence[str] = ()):
        super().__init__(message, technical_kind="load-failed")
        self.backend = backend
        self.module_names = tuple(module_names)


class DriverError(SubforgeError):
    """Driver missing, corrupted or unsupported."""
    pass


class DeviceMemoryError(SubforgeError):
    """System or device memory exhausted, or too little headroom."""
    pass


class NetworkError(SubforgeError):
    """Model acquisition interrupted (timeout, DNS, partial download)."""
    pass


class ModelUnavailableError(SubforgeError):
    """The download source has no such model (HTTP 4xx). Not transient."""

    def __init__(self, message: str, model_id: str = "", status_code: Optional[int] = None):
        super().__init__(message, technical_kind="model-unavailable")
        self.model_id = model_id
        self.status_code = status_code


class NativeRuntimeError(SubforgeError):
    """The native call itself raised.

    The original exception is kept as ``__cause__`` and its text is kept
    verbatim so text classification still applies.
    """

    def __init__(self, message: str, backend: str = ""):
        super().__init__(message, technical_kind="native-runtime")
        self.backend = backend


class FatalError(SubforgeError):
    """CPU execution itself failed.

    Indicates an environment-level defect rather than a hardware problem.
    """
    pass


# =============================================================================
# Retry Logic
# =============================================================================

@dataclass(frozen=True)
class RetryConfig:
    """Bounded exponential backoff.

    With the defaults the delays are 1s, 2s, 4s. ``jitter`` is a fraction
    of the delay; keep it at 0 where delays must be non-decreasing.
    """
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 60.0
    exponential_base: float = 2.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be non-negative")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must be non-negative")
        if self.exponential_base < 1:
            raise ValueError("exponential_base must be at least 1")

    def get_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        delay = min(
            self.initial_delay * (self.exponential_base ** attempt),
            self.max_delay,
        )
        if self.jitter:
            jitter_range = delay * self.jitter
            delay += random.uniform(-jitter_range, jitter_range)
        return max(0.0, delay)

    def delays(self) -> list:
        """All delays this policy produces, in order."""
        return [self.get_delay(i) for i in range(self.max_attempts)]
