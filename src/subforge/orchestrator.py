"""Inference session orchestration.

Drives one processing request through the session state machine:

    Idle -> Detecting -> SelectingCandidate -> LoadingAddon -> Configuring
         -> Running -> Completed
                    -> RecoveringFailure -> SelectingCandidate (next candidate)
                                         -> LoadingAddon (same-candidate retry)
                                         -> TerminallyFailed

A native call that has started cannot be interrupted. Cancellation is
honoured only at transition boundaries, before LoadingAddon and before
Running; there is no Running -> Cancelled transition.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from subforge.backends.catalog import BackendCandidate, BackendCatalog, PlatformInfo
from subforge.backends.configuration import BackendConfiguration, ConfigurationBuilder
from subforge.backends.loader import AddonLoader
from subforge.config import Settings
from subforge.diagnostics.messages import fallback_subtitle, user_message
from subforge.diagnostics.recovery import (
    ErrorRecoveryCoordinator,
    FailureKind,
    FailureRecord,
    RecoveryAction,
)
from subforge.errors import (
    DetectionError,
    DeviceMemoryError,
    FatalError,
    NativeRuntimeError,
    RetryConfig,
)
from subforge.hardware.classification import SameVendorTieBreak
from subforge.hardware.detector import HardwareDetector, get_detector
from subforge.hardware.device import BackendKind, ComputeDevice
from subforge.models import ModelStore
from subforge.monitoring.performance import PerformanceMonitor, SessionMetrics, Workload
from subforge.monitoring.telemetry import ProgressEvent, TelemetrySink, emit_progress
from subforge.monitoring.thermal import throttle_probe_for
from subforge.utils.async_io import run_blocking
from subforge.utils.logging import get_logger

logger = get_logger("orchestrator")

# Extra attempts allowed beyond one per chain entry (retries)
EXTRA_ATTEMPTS = 6


class SessionState(Enum):
    """Orchestrator states."""
    IDLE = "idle"
    DETECTING = "detecting"
    SELECTING_CANDIDATE = "selecting-candidate"
    LOADING_ADDON = "loading-addon"
    CONFIGURING = "configuring"
    RUNNING = "running"
    RECOVERING_FAILURE = "recovering-failure"
    COMPLETED = "completed"
    TERMINALLY_FAILED = "terminally-failed"


class OutcomeStatus(Enum):
    COMPLETED = "completed"
    TERMINALLY_FAILED = "terminally-failed"
    CANCELLED = "cancelled"


class CancellationToken:
    """Cancels work that has not reached the native call yet."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


class _Cancelled(Exception):
    """Raised internally when a token is cancelled just before Running."""


@dataclass
class ProcessingRequest:
    """A request to transcribe one audio file.

    Attributes:
        audio_path: Decoded audio file handed to the native module
        model_id: Model name, e.g. 'base.en'
        backend_preference: Overrides the settings preference when set
        input_duration: Audio length in seconds (for speedup metrics)
        language: Spoken language or 'auto'
    """
    audio_path: str
    model_id: str
    backend_preference: Optional[str] = None
    input_duration: float = 0.0
    language: str = "auto"
    request_id: str = field(default_factory=lambda: f"req_{uuid.uuid4().hex[:8]}")


@dataclass
class ProcessingOutcome:
    """Terminal result of a request."""
    status: OutcomeStatus
    request_id: str
    result: Any = None
    metrics: Optional[SessionMetrics] = None
    backend: Optional[str] = None
    failures: List[FailureRecord] = field(default_factory=list)
    message: str = ""
    technical_kind: Optional[str] = None
    fallback_content: Optional[str] = None
    notes: List[str] = field(default_factory=list)
    transitions: List[SessionState] = field(default_factory=list)
    chain: List[str] = field(default_factory=list)
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "request_id": self.request_id,
            "backend": self.backend,
            "message": self.message,
            "technical_kind": self.technical_kind,
            "failures": [f.to_dict() for f in self.failures],
            "notes": list(self.notes),
            "chain": list(self.chain),
            "transitions": [s.value for s in self.transitions],
            "metrics": self.metrics.to_dict() if self.metrics else None,
        }


@dataclass
class _Run:
    """Mutable bookkeeping for one request."""
    request: ProcessingRequest
    cancel_token: Optional[CancellationToken]
    transitions: List[SessionState] = field(default_factory=list)
    failures: List[FailureRecord] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    chain: List[BackendCandidate] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.cancelled


class InferenceSessionOrchestrator:
    """Runs requests through detection, fallback and recovery.

    Every collaborator is injectable; missing ones are built from settings.

    Args:
        settings: User settings
        detector: Hardware detector (defaults to the process-wide one,
            configured with the detection TTL and tie-break from settings)
        catalog: Backend catalog
        loader: Native module loader
        builder: Configuration builder
        monitor: Performance monitor
        coordinator: Error recovery coordinator
        model_store: Model acquisition
        sink: Telemetry sink for progress events
        platform: Target platform (defaults to the running one)
        sleep: Awaitable sleep used for backoff
        max_attempts: Total attempt bound (default: chain length + 6)
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        detector: Optional[HardwareDetector] = None,
        catalog: Optional[BackendCatalog] = None,
        loader: Optional[AddonLoader] = None,
        builder: Optional[ConfigurationBuilder] = None,
        monitor: Optional[PerformanceMonitor] = None,
        coordinator: Optional[ErrorRecoveryCoordinator] = None,
        model_store: Optional[ModelStore] = None,
        sink: Optional[TelemetrySink] = None,
        platform: Optional[PlatformInfo] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        max_attempts: Optional[int] = None,
    ):
        self.settings = settings or Settings()
        tie_break = SameVendorTieBreak(self.settings.tie_break)

        self.detector = detector or get_detector(
            cache_ttl=self.settings.detection_ttl, tie_break=tie_break
        )
        self.catalog = catalog or BackendCatalog(tie_break=tie_break)
        self.loader = loader or AddonLoader(self.settings.addons_dir)
        self.builder = builder or ConfigurationBuilder(self.settings, platform)
        self.sink = sink
        self.monitor = monitor or PerformanceMonitor(self.settings.history_file, sink=sink)
        self.coordinator = coordinator or ErrorRecoveryCoordinator(
            network_retry=RetryConfig(
                max_attempts=self.settings.max_network_retries,
                initial_delay=self.settings.initial_retry_delay,
            )
        )
        self.model_store = model_store or ModelStore(
            self.settings.models_dir, self.settings.download_source
        )
        self.platform = platform or self.builder.platform
        self.sleep = sleep
        self.max_attempts = max_attempts

    # =========================================================================
    # Public API
    # =========================================================================

    async def process(
        self,
        request: ProcessingRequest,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ProcessingOutcome:
        """Process one request. Never raises for recoverable failures.

        Returns:
            A completed, terminally failed or cancelled outcome
        """
        run = _Run(request=request, cancel_token=cancel_token)
        self._transition(run, SessionState.IDLE)
        started = time.monotonic()

        devices = await self._detect(run)

        self._transition(run, SessionState.SELECTING_CANDIDATE)
        preference = request.backend_preference or self.settings.explicit_preference
        run.chain = self.catalog.build_fallback_chain(devices, self.platform, preference)
        bound = self.max_attempts or len(run.chain) + EXTRA_ATTEMPTS

        index = 0
        attempts = 0
        candidate_failures: List[FailureRecord] = []
        force_model = False
        last_error: Optional[BaseException] = None
        last_candidate: Optional[BackendCandidate] = None

        while True:
            candidate = run.chain[index]

            if run.cancelled:
                return self._cancelled(run)
            if attempts >= bound:
                logger.error(
                    f"{request.request_id}: attempt bound {bound} reached",
                    request_id=request.request_id,
                )
                return self._terminal(run, last_error, last_candidate or candidate)
            attempts += 1
            last_candidate = candidate

            try:
                result, metrics = await self._attempt(run, candidate, attempts, force_model)
            except _Cancelled:
                return self._cancelled(run)
            except Exception as e:
                last_error = e
                action = self._recover(run, candidate, attempts, e, candidate_failures, index)
                record = run.failures[-1]

                if action == RecoveryAction.RETRY_SAME:
                    if record.delay:
                        await self.sleep(record.delay)
                    force_model = record.kind == FailureKind.MODEL_CORRUPTED
                    continue

                if action == RecoveryAction.ADVANCE_CHAIN:
                    index += 1
                    candidate_failures = []
                    force_model = False
                    self._transition(run, SessionState.SELECTING_CANDIDATE)
                    continue

                # A missing model is a request problem, not a CPU environment defect.
                fatal = candidate.kind == BackendKind.CPU and record.kind != FailureKind.MODEL_UNAVAILABLE
                return self._terminal(run, e, candidate, fatal=fatal)

            self._transition(run, SessionState.COMPLETED)
            emit_progress(self.sink, ProgressEvent("completed", 100.0, "", request.request_id))
            logger.metric(
                "request_duration",
                round(time.monotonic() - started, 3),
                "s",
                request_id=request.request_id,
                backend=metrics.backend_id,
            )
            return ProcessingOutcome(
                status=OutcomeStatus.COMPLETED,
                request_id=request.request_id,
                result=result,
                metrics=metrics,
                backend=metrics.backend_id,
                failures=list(run.failures),
                notes=list(run.notes),
                transitions=list(run.transitions),
                chain=[c.kind.value for c in run.chain],
            )

    async def process_batch(
        self,
        requests: Sequence[ProcessingRequest],
        concurrency: int = 2,
    ) -> List[ProcessingOutcome]:
        """Process several requests concurrently, results in request order."""
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        semaphore = asyncio.Semaphore(concurrency)

        async def _one(request: ProcessingRequest) -> ProcessingOutcome:
            async with semaphore:
                return await self.process(request)

        return list(await asyncio.gather(*(_one(r) for r in requests)))

    # =========================================================================
    # States
    # =========================================================================

    def _transition(self, run: _Run, state: SessionState, **fields: Any) -> None:
        run.transitions.append(state)
        logger.transition(run.request.request_id, state.value, **fields)

    async def _detect(self, run: _Run) -> List[ComputeDevice]:
        self._transition(run, SessionState.DETECTING)
        emit_progress(self.sink, ProgressEvent("detecting", 0.0, "Detecting hardware", run.request.request_id))
        try:
            devices = await self.detector.detect()
        except DetectionError as e:
            logger.warning(
                f"{run.request.request_id}: hardware detection incomplete, "
                f"continuing with {len(e.partial_devices)} device(s): {e}",
                request_id=run.request.request_id,
            )
            run.notes.append(f"Hardware detection incomplete ({', '.join(e.failed_probes)})")
            devices = e.partial_devices
        return list(devices)

    async def _attempt(
        self,
        run: _Run,
        candidate: BackendCandidate,
        attempt: int,
        force_model: bool,
    ):
        """LoadingAddon -> Configuring -> Running for one candidate."""
        request = run.request
        self._transition(run, SessionState.LOADING_ADDON, backend=candidate.kind.value, attempt=attempt)
        emit_progress(
            self.sink,
            ProgressEvent("loading", 0.0, f"Loading {candidate.descriptor.name}", request.request_id),
        )
        addon = await self.loader.load(candidate.descriptor)

        self._transition(run, SessionState.CONFIGURING, backend=candidate.kind.value)
        config = self.builder.build(candidate.device, candidate.descriptor, addon)
        for note in config.notes:
            if note not in run.notes:
                logger.warning(f"{request.request_id}: {note}", request_id=request.request_id)
                run.notes.append(note)

        if not config.has_headroom(request.model_id):
            config.release()
            raise DeviceMemoryError(
                f"Not enough memory on {candidate.device.name} for model {request.model_id}"
            )

        if run.cancelled:
            config.release()
            raise _Cancelled()

        self._transition(run, SessionState.RUNNING, backend=config.backend_id)
        return await self._run_session(run, config, force_model)

    async def _run_session(self, run: _Run, config: BackendConfiguration, force_model: bool):
        """Model acquisition and the native call inside a monitored session."""
        request = run.request
        session_id = self.monitor.start_session(
            config,
            Workload(request.audio_path, request.model_id, request.input_duration),
            throttle_probe=throttle_probe_for(config.device),
        )

        def on_download(percent: float) -> None:
            emit_progress(
                self.sink,
                ProgressEvent("model-download", percent, f"Downloading {request.model_id}", request.request_id),
            )

        def on_progress(percent: float) -> None:
            self.monitor.update_memory_usage(session_id)
            emit_progress(
                self.sink,
                ProgressEvent("transcribing", float(percent), config.descriptor.name, request.request_id),
            )

        try:
            model_path = await self.model_store.acquire(request.model_id, on_download, force=force_model)
            params = config.call_params(str(model_path), request.audio_path, request.language, on_progress)
            self.monitor.update_memory_usage(session_id)
            try:
                result = await run_blocking(config.addon.whisper, params)
            except Exception as e:
                raise NativeRuntimeError(str(e), backend=config.backend_id) from e
        except Exception as e:
            self.monitor.end_session(session_id, error=e)
            raise
        finally:
            config.release()

        return result, self.monitor.end_session(session_id, result=result)

    def _recover(
        self,
        run: _Run,
        candidate: BackendCandidate,
        attempt: int,
        error: BaseException,
        candidate_failures: List[FailureRecord],
        index: int,
    ) -> RecoveryAction:
        """Classify an attempt failure, record it and choose the next step."""
        kind = self.coordinator.classify(error)
        remaining = len(run.chain) - index - 1
        action = self.coordinator.decide(kind, candidate_failures, remaining)
        delay = 0.0
        if action == RecoveryAction.RETRY_SAME:
            retries = sum(1 for r in candidate_failures if r.kind == kind)
            delay = self.coordinator.retry_delay(kind, retries)

        record = FailureRecord(
            kind=kind,
            message=str(error),
            backend=candidate.kind.value,
            attempt=attempt,
            action=action,
            delay=delay,
        )
        run.failures.append(record)
        candidate_failures.append(record)

        self._transition(
            run,
            SessionState.RECOVERING_FAILURE,
            backend=candidate.kind.value,
            failure_kind=kind.value,
            action=action.value,
        )
        logger.warning(
            f"{run.request.request_id}: {candidate.kind.value} attempt {attempt} failed "
            f"({kind.value}): {error}; {action.value}",
            request_id=run.request.request_id,
        )
        advisory = self.coordinator.advisory(str(error))
        if advisory:
            logger.info(f"{run.request.request_id}: advisory {advisory.value}")
        return action

    # =========================================================================
    # Terminal outcomes
    # =========================================================================

    def _cancelled(self, run: _Run) -> ProcessingOutcome:
        self._transition(run, SessionState.TERMINALLY_FAILED, reason="cancelled")
        logger.info(f"{run.request.request_id}: cancelled before the next attempt")
        return ProcessingOutcome(
            status=OutcomeStatus.CANCELLED,
            request_id=run.request.request_id,
            failures=list(run.failures),
            message="Processing was cancelled.",
            technical_kind="cancelled",
            notes=list(run.notes),
            transitions=list(run.transitions),
            chain=[c.kind.value for c in run.chain],
        )

    def _terminal(
        self,
        run: _Run,
        error: Optional[BaseException],
        candidate: BackendCandidate,
        fatal: bool = False,
    ) -> ProcessingOutcome:
        """TerminallyFailed: user message plus fallback subtitles.

        ``fatal`` marks a failure of the CPU candidate itself.
        """
        self._transition(run, SessionState.TERMINALLY_FAILED)
        last = run.failures[-1] if run.failures else None
        kind = last.kind if last else FailureKind.UNKNOWN

        if fatal and error is not None:
            error = FatalError(f"CPU processing failed: {error}", technical_kind=kind.value)

        message = user_message(kind, candidate.kind, run.request.model_id)
        emit_progress(self.sink, ProgressEvent("failed", 100.0, message, run.request.request_id))
        logger.error(
            f"{run.request.request_id}: terminally failed after {len(run.failures)} failure(s) "
            f"({kind.value}): {error}",
            request_id=run.request.request_id,
            technical_kind=kind.value,
        )
        return ProcessingOutcome(
            status=OutcomeStatus.TERMINALLY_FAILED,
            request_id=run.request.request_id,
            backend=candidate.kind.value,
            failures=list(run.failures),
            message=message,
            technical_kind=kind.value,
            fallback_content=fallback_subtitle(run.request.input_duration),
            notes=list(run.notes),
            transitions=list(run.transitions),
            chain=[c.kind.value for c in run.chain],
            error=error,
        )
