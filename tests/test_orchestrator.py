"""Tests for the inference session orchestrator."""
import asyncio
from dataclasses import replace

import pytest

from subforge.config import Settings
from subforge.diagnostics.messages import FALLBACK_SUBTITLE_TEXT
from subforge.diagnostics.recovery import FailureKind, RecoveryAction
from subforge.errors import (
    DetectionError,
    FatalError,
    ModelUnavailableError,
    NativeRuntimeError,
    NetworkError,
)
from subforge.hardware.classification import SameVendorTieBreak
from subforge.hardware.detector import HardwareDetector, get_detector
from subforge.monitoring.telemetry import RecordingSink
from subforge.orchestrator import (
    CancellationToken,
    InferenceSessionOrchestrator,
    OutcomeStatus,
    ProcessingRequest,
    SessionState,
)


def request(model_id="base", **kwargs):
    kwargs.setdefault("input_duration", 30.0)
    return ProcessingRequest(audio_path="clip.wav", model_id=model_id, **kwargs)


class TestHappyPath:
    """Tests for requests that complete on the first candidate."""

    async def test_discrete_accelerator_completes_without_failures(
        self, make_orchestrator, addons, nvidia_gpu, cpu_device
    ):
        """Test that a loadable discrete accelerator is used directly."""
        addons.write("whisper_cuda")
        addons.write("whisper_cpu")
        orchestrator = make_orchestrator([nvidia_gpu, cpu_device])

        outcome = await orchestrator.process(request())

        assert outcome.status == OutcomeStatus.COMPLETED
        assert outcome.backend == "cuda:whisper_cuda"
        assert outcome.failures == []
        assert outcome.result[0]["text"] == "hello from whisper_cuda"
        assert addons.calls() == ["whisper_cuda"]

    async def test_transitions_follow_state_machine(
        self, make_orchestrator, addons, nvidia_gpu, cpu_device
    ):
        """Test the recorded transition sequence for a clean run."""
        addons.write("whisper_cuda")
        orchestrator = make_orchestrator([nvidia_gpu, cpu_device])

        outcome = await orchestrator.process(request())

        assert outcome.transitions == [
            SessionState.IDLE,
            SessionState.DETECTING,
            SessionState.SELECTING_CANDIDATE,
            SessionState.LOADING_ADDON,
            SessionState.CONFIGURING,
            SessionState.RUNNING,
            SessionState.COMPLETED,
        ]

    async def test_no_hardware_runs_on_cpu(self, make_orchestrator, addons):
        """Test that an empty detection yields a CPU-only chain that completes."""
        addons.write("whisper_cpu")
        orchestrator = make_orchestrator([])

        outcome = await orchestrator.process(request())

        assert outcome.chain == ["cpu"]
        assert outcome.status == OutcomeStatus.COMPLETED
        assert outcome.failures == []
        assert outcome.backend == "cpu:whisper_cpu"

    async def test_metrics_reported(self, make_orchestrator, addons, cpu_device):
        """Test that completed outcomes carry session metrics."""
        addons.write("whisper_cpu")
        orchestrator = make_orchestrator([cpu_device])

        outcome = await orchestrator.process(request(input_duration=60.0))

        assert outcome.metrics is not None
        assert outcome.metrics.input_duration == 60.0
        assert outcome.metrics.succeeded
        assert outcome.metrics.transcription_length > 0

    async def test_progress_events_emitted(self, make_orchestrator, addons, cpu_device):
        """Test that progress reaches the telemetry sink."""
        addons.write("whisper_cpu")
        sink = RecordingSink()
        orchestrator = make_orchestrator([cpu_device], sink=sink)

        await orchestrator.process(request())

        stages = sink.stages()
        assert stages[0] == "detecting"
        assert "transcribing" in stages
        assert stages[-1] == "completed"

    async def test_request_preference_goes_first(
        self, make_orchestrator, addons, nvidia_gpu, cpu_device
    ):
        """Test that a per-request cpu preference skips the accelerator."""
        addons.write("whisper_cuda")
        addons.write("whisper_cpu")
        orchestrator = make_orchestrator([nvidia_gpu, cpu_device])

        outcome = await orchestrator.process(request(backend_preference="cpu"))

        assert outcome.chain == ["cpu"]
        assert addons.calls() == ["whisper_cpu"]


class TestFallback:
    """Tests for walking the fallback chain."""

    async def test_driver_not_found_falls_back_to_cpu(
        self, make_orchestrator, addons, nvidia_gpu, cpu_device
    ):
        """Test that 'driver not found' advances to CPU with one record."""
        addons.write("whisper_cuda", fail_with="CUDA driver not found")
        addons.write("whisper_cpu")
        orchestrator = make_orchestrator([nvidia_gpu, cpu_device])

        outcome = await orchestrator.process(request())

        assert outcome.status == OutcomeStatus.COMPLETED
        assert outcome.backend == "cpu:whisper_cpu"
        assert len(outcome.failures) == 1
        assert outcome.failures[0].kind == FailureKind.DRIVER_MISSING
        assert outcome.failures[0].action == RecoveryAction.ADVANCE_CHAIN
        assert outcome.failures[0].backend == "cuda"

    async def test_missing_module_falls_back(
        self, make_orchestrator, addons, nvidia_gpu, cpu_device
    ):
        """Test that an absent CUDA module is a load failure, not a crash."""
        addons.write("whisper_cpu")
        orchestrator = make_orchestrator([nvidia_gpu, cpu_device])

        outcome = await orchestrator.process(request())

        assert outcome.succeeded
        assert outcome.failures[0].kind == FailureKind.DRIVER_MISSING
        assert SessionState.RECOVERING_FAILURE in outcome.transitions

    async def test_insufficient_headroom_skips_native_call(
        self, make_orchestrator, addons, nvidia_gpu, cpu_device
    ):
        """Test that a model too large for the device goes straight to CPU."""
        addons.write("whisper_cuda")
        addons.write("whisper_cpu")
        small_gpu = replace(nvidia_gpu, memory_bytes=2048 * 1024 * 1024)
        orchestrator = make_orchestrator([small_gpu, cpu_device])

        outcome = await orchestrator.process(request("large-v3"))

        assert outcome.succeeded
        assert outcome.backend == "cpu:whisper_cpu"
        assert [f.kind for f in outcome.failures] == [FailureKind.GPU_MEMORY_EXHAUSTED]
        assert addons.calls() == ["whisper_cpu"]

    async def test_shared_memory_device_rejects_large_model(
        self, make_orchestrator, addons, intel_igpu, cpu_device
    ):
        """Test the shared-memory model rule on an integrated GPU."""
        addons.write("whisper_openvino")
        addons.write("whisper_cpu")
        orchestrator = make_orchestrator([intel_igpu, cpu_device])

        outcome = await orchestrator.process(request("large"))

        assert outcome.backend == "cpu:whisper_cpu"
        assert outcome.failures[0].kind == FailureKind.GPU_MEMORY_EXHAUSTED

    async def test_corrupted_driver_retried_once(
        self, make_orchestrator, addons, nvidia_gpu, cpu_device
    ):
        """Test exactly one same-candidate retry for a corrupted install."""
        addons.write("whisper_cuda", fail_with="invalid ELF header")
        addons.write("whisper_cpu")
        orchestrator = make_orchestrator([nvidia_gpu, cpu_device])

        outcome = await orchestrator.process(request())

        assert outcome.succeeded
        assert [(f.kind, f.action) for f in outcome.failures] == [
            (FailureKind.DRIVER_CORRUPTED, RecoveryAction.RETRY_SAME),
            (FailureKind.DRIVER_CORRUPTED, RecoveryAction.ADVANCE_CHAIN),
        ]
        assert addons.calls() == ["whisper_cuda", "whisper_cuda", "whisper_cpu"]

    async def test_corrupted_model_redownloaded(
        self, make_orchestrator, addons, model_store, cpu_device
    ):
        """Test that a corrupted model is fetched again on the retry."""
        addons.write("whisper_cpu")
        model_store.failures = [RuntimeError("failed to load model: bad magic")]
        orchestrator = make_orchestrator([cpu_device])

        outcome = await orchestrator.process(request())

        assert outcome.succeeded
        assert outcome.failures[0].kind == FailureKind.MODEL_CORRUPTED
        assert model_store.calls == [("base", False), ("base", True)]

    async def test_distinct_descriptors_bounded_by_chain(
        self, make_orchestrator, addons, nvidia_gpu, intel_arc, cpu_device
    ):
        """Test that only chain entries are ever attempted."""
        addons.write("whisper_cuda", fail_with="segmentation fault")
        addons.write("whisper_openvino", fail_with="segmentation fault")
        addons.write("whisper_cpu")
        orchestrator = make_orchestrator([nvidia_gpu, intel_arc, cpu_device])

        outcome = await orchestrator.process(request())

        assert outcome.chain == ["cuda", "openvino", "cpu"]
        attempted = {f.backend for f in outcome.failures} | {"cpu"}
        assert attempted <= set(outcome.chain)
        assert addons.calls() == ["whisper_cuda", "whisper_openvino", "whisper_cpu"]


class TestNetworkRetries:
    """Tests for model acquisition retries."""

    async def test_two_timeouts_then_success(
        self, make_orchestrator, addons, model_store, sleep, nvidia_gpu, cpu_device
    ):
        """Test recovery on the original backend with 1s then 2s backoff."""
        addons.write("whisper_cuda")
        model_store.failures = [NetworkError("Read timed out"), NetworkError("Read timed out")]
        orchestrator = make_orchestrator([nvidia_gpu, cpu_device])

        outcome = await orchestrator.process(request())

        assert outcome.succeeded
        assert outcome.backend == "cuda:whisper_cuda"
        assert [f.kind for f in outcome.failures] == [
            FailureKind.MODEL_ACQUISITION_NETWORK_FAILURE,
            FailureKind.MODEL_ACQUISITION_NETWORK_FAILURE,
        ]
        assert sleep.delays == [1.0, 2.0]

    async def test_retries_exhausted_advance_chain(
        self, make_orchestrator, addons, model_store, sleep, nvidia_gpu, cpu_device
    ):
        """Test that three retries are followed by a chain advance."""
        addons.write("whisper_cuda")
        addons.write("whisper_cpu")
        model_store.failures = [NetworkError("connection reset")] * 4
        orchestrator = make_orchestrator([nvidia_gpu, cpu_device])

        outcome = await orchestrator.process(request())

        assert outcome.succeeded
        assert outcome.backend == "cpu:whisper_cpu"
        assert sleep.delays == [1.0, 2.0, 4.0]
        assert outcome.failures[-1].action == RecoveryAction.ADVANCE_CHAIN
        assert sleep.delays == sorted(sleep.delays)

    async def test_retry_loops_back_to_loading(
        self, make_orchestrator, addons, model_store, cpu_device
    ):
        """Test that a same-candidate retry re-enters LoadingAddon."""
        addons.write("whisper_cpu")
        model_store.failures = [NetworkError("timeout")]
        orchestrator = make_orchestrator([cpu_device])

        outcome = await orchestrator.process(request())

        recovering = outcome.transitions.index(SessionState.RECOVERING_FAILURE)
        assert outcome.transitions[recovering + 1] == SessionState.LOADING_ADDON


class TestTerminalFailure:
    """Tests for exhausted chains."""

    async def test_cpu_failure_is_fatal(self, make_orchestrator, addons, cpu_device):
        """Test that a CPU failure ends the request with fallback content."""
        addons.write("whisper_cpu", fail_with="illegal instruction")
        orchestrator = make_orchestrator([cpu_device])

        outcome = await orchestrator.process(request(input_duration=12.5))

        assert outcome.status == OutcomeStatus.TERMINALLY_FAILED
        assert outcome.transitions[-1] == SessionState.TERMINALLY_FAILED
        assert isinstance(outcome.error, FatalError)
        assert outcome.technical_kind == "runtime-fault"
        assert FALLBACK_SUBTITLE_TEXT in outcome.fallback_content
        assert "00:00:12,500" in outcome.fallback_content
        assert "illegal instruction" not in outcome.message
        assert outcome.failures[-1].action == RecoveryAction.TERMINAL_CPU_FALLBACK

    async def test_memory_failure_suggests_smaller_model(self, make_orchestrator, addons, cpu_device):
        """Test that the user message names a smaller model."""
        addons.write("whisper_cpu", fail_with="out of memory")
        orchestrator = make_orchestrator([cpu_device])

        outcome = await orchestrator.process(request("medium"))

        assert outcome.technical_kind == "gpu-memory-exhausted"
        assert "'small'" in outcome.message

    async def test_attempt_bound_forces_termination(
        self, make_orchestrator, addons, nvidia_gpu, cpu_device
    ):
        """Test that the total attempt counter stops the walk."""
        addons.write("whisper_cuda", fail_with="segmentation fault")
        addons.write("whisper_cpu")
        orchestrator = make_orchestrator([nvidia_gpu, cpu_device], max_attempts=1)

        outcome = await orchestrator.process(request())

        assert outcome.status == OutcomeStatus.TERMINALLY_FAILED
        assert len(outcome.failures) == 1
        assert addons.calls() == ["whisper_cuda"]
        assert "segmentation fault" in str(outcome.error)

    async def test_native_failure_is_wrapped(
        self, make_orchestrator, addons, nvidia_gpu, cpu_device
    ):
        """Test that an exception from the native call surfaces as NativeRuntimeError."""
        addons.write("whisper_cuda", fail_with="segmentation fault")
        addons.write("whisper_cpu")
        orchestrator = make_orchestrator([nvidia_gpu, cpu_device], max_attempts=1)

        outcome = await orchestrator.process(request())

        assert isinstance(outcome.error, NativeRuntimeError)
        assert outcome.error.backend == "cuda:whisper_cuda"
        assert isinstance(outcome.error.__cause__, RuntimeError)
        assert outcome.failures[0].kind == FailureKind.RUNTIME_FAULT
        assert outcome.failures[0].message == "segmentation fault"

    async def test_missing_model_fails_without_retries(
        self, make_orchestrator, addons, model_store, sleep, nvidia_gpu, cpu_device
    ):
        """Test that a model the source does not have ends the request at once."""
        addons.write("whisper_cuda")
        addons.write("whisper_cpu")
        model_store.failures = [
            ModelUnavailableError(
                "Model base.xx is not available from huggingface (HTTP 404)",
                model_id="base.xx",
                status_code=404,
            )
        ]
        orchestrator = make_orchestrator([nvidia_gpu, cpu_device])

        outcome = await orchestrator.process(request("base.xx"))

        assert outcome.status == OutcomeStatus.TERMINALLY_FAILED
        assert outcome.technical_kind == "model-unavailable"
        assert [f.kind for f in outcome.failures] == [FailureKind.MODEL_UNAVAILABLE]
        assert sleep.delays == []
        assert len(model_store.calls) == 1
        assert "'base.xx'" in outcome.message
        assert "internet" not in outcome.message

    async def test_missing_model_on_cpu_is_not_fatal(
        self, make_orchestrator, addons, model_store, cpu_device
    ):
        """Test that a missing model on the CPU candidate is not an environment defect."""
        addons.write("whisper_cpu")
        model_store.failures = [ModelUnavailableError("HTTP 404", model_id="nope")]
        orchestrator = make_orchestrator([cpu_device])

        outcome = await orchestrator.process(request("nope"))

        assert isinstance(outcome.error, ModelUnavailableError)
        assert not isinstance(outcome.error, FatalError)
        assert outcome.fallback_content


class TestCancellation:
    """Tests for cancellation at transition boundaries."""

    async def test_cancelled_before_loading(self, make_orchestrator, addons, cpu_device):
        """Test that a cancelled token prevents any load."""
        addons.write("whisper_cpu")
        orchestrator = make_orchestrator([cpu_device])
        token = CancellationToken()
        token.cancel()

        outcome = await orchestrator.process(request(), token)

        assert outcome.status == OutcomeStatus.CANCELLED
        assert SessionState.LOADING_ADDON not in outcome.transitions
        assert addons.calls() == []

    async def test_cancelled_before_running(self, make_orchestrator, addons, cpu_device):
        """Test that cancelling during loading stops before the native call."""
        addons.write("whisper_cpu")
        token = CancellationToken()

        class CancellingSink(RecordingSink):
            def progress(self, event):
                super().progress(event)
                if event.stage == "loading":
                    token.cancel()

        orchestrator = make_orchestrator([cpu_device], sink=CancellingSink())

        outcome = await orchestrator.process(request(), token)

        assert outcome.status == OutcomeStatus.CANCELLED
        assert SessionState.RUNNING not in outcome.transitions
        assert addons.calls() == []


class TestDetection:
    """Tests for detection problems during a request."""

    async def test_partial_detection_continues(self, make_orchestrator, addons, nvidia_gpu):
        """Test that a failing probe does not stop processing."""
        addons.write("whisper_cuda")

        def broken_probe():
            raise DetectionError("lspci query failed: exit 1")

        detector = HardwareDetector(
            probes={"nvidia": lambda: [nvidia_gpu], "linux": broken_probe},
            cache_ttl=0,
        )
        orchestrator = make_orchestrator([], detector=detector)

        outcome = await orchestrator.process(request())

        assert outcome.succeeded
        assert outcome.backend == "cuda:whisper_cuda"
        assert any("linux" in note for note in outcome.notes)

    async def test_driver_notes_reported(self, make_orchestrator, addons, nvidia_gpu):
        """Test that an outdated driver surfaces as a note, not a failure."""
        addons.write("whisper_cuda")
        old_driver = replace(nvidia_gpu, driver_version="440.10")
        orchestrator = make_orchestrator([old_driver])

        outcome = await orchestrator.process(request())

        assert outcome.succeeded
        assert outcome.failures == []
        assert any("outdated" in note for note in outcome.notes)


class TestBatch:
    """Tests for concurrent requests."""

    async def test_batch_preserves_order(self, make_orchestrator, addons, cpu_device):
        """Test that batch results come back in request order."""
        addons.write("whisper_cpu")
        orchestrator = make_orchestrator([cpu_device])
        requests = [request(request_id=f"r{i}") for i in range(4)]

        outcomes = await orchestrator.process_batch(requests, concurrency=2)

        assert [o.request_id for o in outcomes] == ["r0", "r1", "r2", "r3"]
        assert all(o.succeeded for o in outcomes)

    async def test_batch_rejects_zero_concurrency(self, make_orchestrator, cpu_device):
        """Test concurrency validation."""
        orchestrator = make_orchestrator([cpu_device])
        with pytest.raises(ValueError):
            await orchestrator.process_batch([request()], concurrency=0)

    async def test_concurrent_requests_share_detection(
        self, make_orchestrator, addons, tmp_path, cpu_device
    ):
        """Test that concurrent requests trigger one detection pass."""
        addons.write("whisper_cpu")
        detector = HardwareDetector(probes={"cpu": lambda: [cpu_device]}, cache_ttl=300)
        orchestrator = make_orchestrator([cpu_device], detector=detector)

        outcomes = await asyncio.gather(*(orchestrator.process(request()) for _ in range(3)))

        assert all(o.succeeded for o in outcomes)
        assert detector.detection_count == 1


class TestDefaultCollaborators:
    """Tests for collaborators built from settings."""

    def test_default_detector_uses_settings(self, tmp_path):
        """Test that detection TTL and tie-break reach the shared detector."""
        settings = Settings(
            models_dir=tmp_path / "models",
            cache_dir=tmp_path / "cache",
            detection_ttl=0,
            tie_break="highest-performance",
        )
        orchestrator = InferenceSessionOrchestrator(settings=settings)

        assert orchestrator.detector is get_detector()
        assert orchestrator.detector.cache_ttl == 0
        assert orchestrator.detector.tie_break == SameVendorTieBreak.HIGHEST_PERFORMANCE
