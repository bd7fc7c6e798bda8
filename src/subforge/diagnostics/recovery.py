"""Failure classification and recovery decisions.

Native modules report failures as opaque text. The coordinator matches that
text against an ordered list of rules to get a FailureKind, then picks a
recovery action from the kind and the attempt history.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple

from subforge.errors import (
    DeviceMemoryError,
    DriverError,
    LoadError,
    ModelUnavailableError,
    NativeRuntimeError,
    NetworkError,
    RetryConfig,
)

logger = logging.getLogger(__name__)


class FailureKind(Enum):
    """Classified failure kinds."""
    DRIVER_MISSING = "driver-missing"
    DRIVER_CORRUPTED = "driver-corrupted"
    MODEL_CORRUPTED = "model-corrupted"
    DRIVER_INCOMPATIBLE_VERSION = "driver-incompatible-version"
    GPU_MEMORY_EXHAUSTED = "gpu-memory-exhausted"
    MODEL_ACQUISITION_NETWORK_FAILURE = "model-acquisition-network-failure"
    MODEL_UNAVAILABLE = "model-unavailable"
    RUNTIME_FAULT = "runtime-fault"
    UNKNOWN = "unknown"


class RecoveryAction(Enum):
    """What the orchestrator should do next."""
    RETRY_SAME = "retry-same"
    ADVANCE_CHAIN = "advance-chain"
    TERMINAL_CPU_FALLBACK = "terminal-cpu-fallback"


class Advisory(Enum):
    """Conditions that are logged but never treated as failures."""
    DRIVER_OUTDATED = "driver-outdated"
    DRIVER_BETA = "driver-beta"
    THERMAL_THROTTLING = "thermal-throttling"


@dataclass(frozen=True)
class ClassificationRule:
    """Maps any of several lowercase substrings to a failure kind."""
    patterns: Tuple[str, ...]
    kind: FailureKind

    def matches(self, text: str) -> bool:
        return any(p in text for p in self.patterns)


DEFAULT_RULES: List[ClassificationRule] = [
    # Version problems first: "unsupported driver" must not read as missing.
    ClassificationRule(
        ("unsupported driver", "driver version is insufficient", "incompatible driver",
         "requires a newer driver", "driver too new", "unsupported version"),
        FailureKind.DRIVER_INCOMPATIBLE_VERSION,
    ),
    ClassificationRule(
        ("checksum", "partial download", "partially downloaded", "truncated model",
         "invalid model", "model file is corrupt", "corrupt model", "bad magic",
         "failed to load model"),
        FailureKind.MODEL_CORRUPTED,
    ),
    ClassificationRule(
        ("corrupt", "damaged installation", "invalid elf header",
         "bad image", "not a valid win32 application"),
        FailureKind.DRIVER_CORRUPTED,
    ),
    ClassificationRule(
        ("out of memory", "cuda_error_out_of_memory", "insufficient memory",
         "memory allocation failed", "failed to allocate", "not enough memory",
         "gpu memory", "vram"),
        FailureKind.GPU_MEMORY_EXHAUSTED,
    ),
    ClassificationRule(
        ("timed out", "timeout", "connection reset", "connection refused",
         "connection aborted", "network is unreachable", "name or service not known",
         "temporary failure in name resolution", "getaddrinfo", "dns",
         "incomplete read", "remote end closed", "failed to resolve",
         "max retries exceeded"),
        FailureKind.MODEL_ACQUISITION_NETWORK_FAILURE,
    ),
    ClassificationRule(
        ("driver not found", "no driver", "driver is not installed", "driver missing",
         "no compatible device", "no cuda-capable device", "no device found",
         "dll load failed", "cannot open shared object", "library not loaded",
         "no module named", "missing entry points", "no usable"),
        FailureKind.DRIVER_MISSING,
    ),
    ClassificationRule(
        ("segmentation fault", "illegal instruction", "access violation",
         "assertion failed", "abort", "runtime error", "kernel launch failed"),
        FailureKind.RUNTIME_FAULT,
    ),
]

ADVISORY_PATTERNS = [
    (("thermal", "throttl"), Advisory.THERMAL_THROTTLING),
    (("beta driver", "preview driver"), Advisory.DRIVER_BETA),
    (("outdated", "older than the recommended", "update your driver"), Advisory.DRIVER_OUTDATED),
]

# Default action per kind for a first occurrence
DEFAULT_ACTIONS = {
    FailureKind.DRIVER_MISSING: RecoveryAction.ADVANCE_CHAIN,
    FailureKind.DRIVER_CORRUPTED: RecoveryAction.RETRY_SAME,
    FailureKind.MODEL_CORRUPTED: RecoveryAction.RETRY_SAME,
    FailureKind.DRIVER_INCOMPATIBLE_VERSION: RecoveryAction.ADVANCE_CHAIN,
    FailureKind.GPU_MEMORY_EXHAUSTED: RecoveryAction.ADVANCE_CHAIN,
    FailureKind.MODEL_ACQUISITION_NETWORK_FAILURE: RecoveryAction.RETRY_SAME,
    # The model is missing on every backend, so walking the chain cannot help.
    FailureKind.MODEL_UNAVAILABLE: RecoveryAction.TERMINAL_CPU_FALLBACK,
    FailureKind.RUNTIME_FAULT: RecoveryAction.ADVANCE_CHAIN,
    FailureKind.UNKNOWN: RecoveryAction.ADVANCE_CHAIN,
}

MODEL_HIERARCHY = ["large-v3", "large-v2", "large", "medium", "small", "base", "tiny"]


@dataclass
class FailureRecord:
    """One classified failure and the action chosen for it."""
    kind: FailureKind
    message: str
    backend: str
    attempt: int
    action: Optional[RecoveryAction] = None
    delay: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "backend": self.backend,
            "attempt": self.attempt,
            "action": self.action.value if self.action else None,
            "delay": self.delay,
            "timestamp": self.timestamp.isoformat(),
        }


class ErrorRecoveryCoordinator:
    """Classifies failures and decides how to recover.

    Args:
        rules: Ordered classification rules (first match wins)
        network_retry: Backoff policy for model acquisition failures
        corruption_retries: Same-candidate retries for corrupted installs
    """

    def __init__(
        self,
        rules: Optional[Iterable[ClassificationRule]] = None,
        network_retry: Optional[RetryConfig] = None,
        corruption_retries: int = 1,
    ):
        self.rules: List[ClassificationRule] = list(DEFAULT_RULES if rules is None else rules)
        self.network_retry = network_retry or RetryConfig()
        self.corruption_retries = corruption_retries

    def add_rule(self, rule: ClassificationRule, first: bool = True) -> None:
        """Register a rule, by default ahead of the built-in ones."""
        if first:
            self.rules.insert(0, rule)
        else:
            self.rules.append(rule)

    def classify(self, error: BaseException) -> FailureKind:
        """Classify an error from its type and text."""
        # Errors raised by our own acquisition and headroom checks are already typed.
        if isinstance(error, NetworkError):
            return FailureKind.MODEL_ACQUISITION_NETWORK_FAILURE
        if isinstance(error, DeviceMemoryError):
            return FailureKind.GPU_MEMORY_EXHAUSTED
        if isinstance(error, ModelUnavailableError):
            return FailureKind.MODEL_UNAVAILABLE

        text = str(error).lower()
        for rule in self.rules:
            if rule.matches(text):
                return rule.kind

        # Wrapped native failures fall back on the type of what the module raised.
        if isinstance(error, NativeRuntimeError) and error.__cause__ is not None:
            error = error.__cause__
        if isinstance(error, MemoryError):
            return FailureKind.GPU_MEMORY_EXHAUSTED
        if isinstance(error, (DriverError, LoadError)):
            return FailureKind.DRIVER_MISSING
        if isinstance(error, (ConnectionError, TimeoutError)):
            return FailureKind.MODEL_ACQUISITION_NETWORK_FAILURE
        return FailureKind.UNKNOWN

    def advisory(self, text: str) -> Optional[Advisory]:
        """Non-fatal condition mentioned in a message, if any."""
        text = (text or "").lower()
        for patterns, advisory in ADVISORY_PATTERNS:
            if any(p in text for p in patterns):
                return advisory
        return None

    def decide(
        self,
        kind: FailureKind,
        history: Sequence[FailureRecord],
        remaining_candidates: int = 1,
    ) -> RecoveryAction:
        """Choose the next action.

        Args:
            kind: Classification of the current failure
            history: Earlier failures on the same candidate, oldest first
            remaining_candidates: Candidates after the current one

        Returns:
            The recovery action. TERMINAL_CPU_FALLBACK once nothing is left.
        """
        action = DEFAULT_ACTIONS[kind]
        same_kind = sum(1 for r in history if r.kind == kind)

        if action == RecoveryAction.RETRY_SAME:
            limit = (
                self.network_retry.max_attempts
                if kind == FailureKind.MODEL_ACQUISITION_NETWORK_FAILURE
                else self.corruption_retries
            )
            if same_kind >= limit:
                logger.info(f"{kind.value}: {same_kind} retries used, advancing")
                action = RecoveryAction.ADVANCE_CHAIN

        if action == RecoveryAction.ADVANCE_CHAIN and remaining_candidates <= 0:
            return RecoveryAction.TERMINAL_CPU_FALLBACK
        return action

    def retry_delay(self, kind: FailureKind, retries_so_far: int) -> float:
        """Backoff before the next same-candidate retry."""
        if kind == FailureKind.MODEL_ACQUISITION_NETWORK_FAILURE:
            return self.network_retry.get_delay(retries_so_far)
        return 0.0


def suggest_smaller_model(model_id: str) -> Optional[str]:
    """Next smaller model in the hierarchy, or None at the bottom."""
    model = (model_id or "").lower()
    for i, name in enumerate(MODEL_HIERARCHY):
        if model == name or model.startswith(name + "-") or model.startswith(name + "."):
            return MODEL_HIERARCHY[i + 1] if i + 1 < len(MODEL_HIERARCHY) else None
    return None
