"""Per-session performance telemetry.

Tracks one record per processing session: timing, memory samples, errors
and throttling, and turns it into SessionMetrics when the session ends.
Completed sessions feed a bounded history used for CPU baselines and the
performance report.

Monitoring must never fail a job: sampling and persistence errors are
logged and swallowed.
"""

import json
import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import psutil

from subforge.monitoring.telemetry import TelemetrySink, emit_memory_sample
from subforge.monitoring.thermal import ThrottleProbe

logger = logging.getLogger(__name__)

MAX_HISTORY = 1000
BASELINE_WINDOW = 5
BASELINE_DURATION_TOLERANCE = 30.0
TREND_THRESHOLD = 0.10


@dataclass
class Workload:
    """What a session processes."""
    audio_path: str
    model_id: str
    input_duration: float = 0.0


@dataclass
class ProcessingSession:
    """Mutable record of one open session."""
    session_id: str
    backend_id: str
    backend_kind: str
    device_name: str
    workload: Workload
    started_at: datetime
    start_clock: float
    initial_memory: int = 0
    peak_memory: int = 0
    samples: List[int] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    throttle_events: int = 0
    throttle_probe: Optional[ThrottleProbe] = None


@dataclass
class SessionMetrics:
    """Metrics for a closed session, successful or not."""
    session_id: str
    backend_id: str
    backend_kind: str
    model_id: str
    input_duration: float
    processing_duration: float
    speedup: float
    initial_memory_bytes: int
    peak_memory_bytes: int
    real_time_ratio: float = 0.0
    tokens_per_second: float = 0.0
    transcription_length: int = 0
    error_count: int = 0
    degraded: bool = False
    succeeded: bool = True
    started_at: str = ""
    baseline_speedup: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionMetrics":
        valid = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in valid})


@dataclass
class PerformanceReport:
    """Summary over the session history."""
    total_sessions: int
    success_rate: float
    averages: Dict[str, Dict[str, float]]
    trends: Dict[str, str]
    recommendations: List[str]


def _process_rss() -> int:
    return psutil.Process().memory_info().rss


def transcription_length(result: Any) -> int:
    """Characters of text in a native result (segments or plain text)."""
    if result is None:
        return 0
    if isinstance(result, str):
        return len(result)
    total = 0
    for segment in result:
        if isinstance(segment, dict):
            total += len(str(segment.get("text", "")))
        elif isinstance(segment, (list, tuple)) and len(segment) >= 3:
            total += len(str(segment[2]))
        else:
            total += len(str(segment))
    return total


class PerformanceMonitor:
    """Owns session telemetry records.

    Safe to call from the native progress callback thread.

    Args:
        history_file: JSON file for persisted history (None keeps it in memory)
        sink: Receives memory samples
        memory_reader: Returns current RSS in bytes (defaults to psutil)
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        history_file: Optional[Path] = None,
        sink: Optional[TelemetrySink] = None,
        memory_reader: Optional[Callable[[], int]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.history_file = Path(history_file) if history_file else None
        self.sink = sink
        self.memory_reader = memory_reader or _process_rss
        self.clock = clock

        self._lock = threading.Lock()
        self._sessions: Dict[str, ProcessingSession] = {}
        self._history: List[SessionMetrics] = []
        self.load_history()

    # =========================================================================
    # Session lifecycle
    # =========================================================================

    def start_session(
        self,
        config: Any,
        workload: Workload,
        session_id: Optional[str] = None,
        throttle_probe: Optional[ThrottleProbe] = None,
    ) -> str:
        """Open a session for a configuration.

        Raises:
            ValueError: A session with this id is already open
        """
        session_id = session_id or f"session_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"
        initial = self._sample() or 0

        with self._lock:
            if session_id in self._sessions:
                raise ValueError(f"Session {session_id} is already open")
            self._sessions[session_id] = ProcessingSession(
                session_id=session_id,
                backend_id=config.backend_id,
                backend_kind=config.kind.value,
                device_name=config.device.name,
                workload=workload,
                started_at=datetime.now(),
                start_clock=self.clock(),
                initial_memory=initial,
                peak_memory=initial,
                throttle_probe=throttle_probe,
            )

        logger.info(f"Started {session_id} on {config.backend_id} ({workload.model_id})")
        return session_id

    def update_memory_usage(self, session_id: str) -> Optional[int]:
        """Take a memory sample for an open session.

        Returns:
            The sampled RSS in bytes, or None if sampling failed or the
            session is not open
        """
        rss = self._sample()
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            if rss is not None:
                session.samples.append(rss)
                session.peak_memory = max(session.peak_memory, rss)
            probe = session.throttle_probe

        if probe is not None:
            self._check_throttling(session_id, probe)
        if rss is not None:
            emit_memory_sample(self.sink, session_id, rss)
        return rss

    def record_error(self, session_id: str, error: BaseException) -> None:
        """Count an error against an open session."""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is not None:
                session.errors.append(str(error))

    def end_session(
        self,
        session_id: str,
        result: Any = None,
        error: Optional[BaseException] = None,
    ) -> SessionMetrics:
        """Close a session and compute its metrics.

        Always returns metrics: a failed session reports its partial run and
        an unknown id yields an empty record.
        """
        final_rss = self._sample()
        with self._lock:
            session = self._sessions.pop(session_id, None)

        if session is None:
            logger.warning(f"end_session for unknown session {session_id}")
            return SessionMetrics(
                session_id=session_id,
                backend_id="unknown",
                backend_kind="unknown",
                model_id="",
                input_duration=0.0,
                processing_duration=0.0,
                speedup=0.0,
                initial_memory_bytes=0,
                peak_memory_bytes=0,
                error_count=1 if error else 0,
                succeeded=error is None,
            )

        if error is not None:
            session.errors.append(str(error))
        if final_rss is not None:
            session.peak_memory = max(session.peak_memory, final_rss)

        processing = max(0.0, self.clock() - session.start_clock)
        input_duration = session.workload.input_duration
        text_length = transcription_length(result) if error is None else 0

        metrics = SessionMetrics(
            session_id=session_id,
            backend_id=session.backend_id,
            backend_kind=session.backend_kind,
            model_id=session.workload.model_id,
            input_duration=input_duration,
            processing_duration=processing,
            speedup=input_duration / processing if processing > 0 and input_duration > 0 else 0.0,
            initial_memory_bytes=session.initial_memory,
            peak_memory_bytes=session.peak_memory,
            real_time_ratio=processing / input_duration if input_duration > 0 else 0.0,
            tokens_per_second=(text_length / 4) / processing if processing > 0 else 0.0,
            transcription_length=text_length,
            error_count=len(session.errors),
            degraded=session.throttle_events > 0,
            succeeded=error is None,
            started_at=session.started_at.isoformat(),
        )

        if metrics.succeeded:
            baseline = self.cpu_baseline(input_duration)
            if baseline and metrics.backend_kind != "cpu":
                metrics.baseline_speedup = metrics.speedup / baseline
            self._append_history(metrics)

        logger.info(
            f"Ended {session_id}: {processing:.2f}s, speedup {metrics.speedup:.2f}x, "
            f"peak {metrics.peak_memory_bytes / (1024 * 1024):.0f}MB"
            + ("" if metrics.succeeded else " (failed)")
        )
        return metrics

    def open_sessions(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def _sample(self) -> Optional[int]:
        try:
            return int(self.memory_reader())
        except Exception as e:
            logger.warning(f"Memory sampling failed: {e}")
            return None

    def _check_throttling(self, session_id: str, probe: ThrottleProbe) -> None:
        try:
            state = probe()
        except Exception as e:
            logger.debug(f"Throttle probe failed: {e}")
            return
        if not state.degraded:
            return
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return
            session.throttle_events += 1
            first = session.throttle_events == 1
        if first:
            logger.warning(
                f"{session_id}: GPU throttling ({state.value}), continuing with degraded performance"
            )

    # =========================================================================
    # History and reporting
    # =========================================================================

    @property
    def history(self) -> List[SessionMetrics]:
        with self._lock:
            return list(self._history)

    def _append_history(self, metrics: SessionMetrics) -> None:
        with self._lock:
            self._history.append(metrics)
            if len(self._history) > MAX_HISTORY:
                self._history = self._history[-MAX_HISTORY:]
        self.save_history()

    def load_history(self) -> None:
        """Load persisted history, ignoring a missing or damaged file."""
        if not self.history_file or not self.history_file.exists():
            return
        try:
            with open(self.history_file, "r", encoding="utf-8") as f:
                data = json.load(f)
            loaded = [SessionMetrics.from_dict(item) for item in data][-MAX_HISTORY:]
        except (OSError, ValueError, TypeError) as e:
            logger.warning(f"Could not read performance history {self.history_file}: {e}")
            return
        with self._lock:
            self._history = loaded

    def save_history(self) -> None:
        """Persist history; failures are logged."""
        if not self.history_file:
            return
        try:
            self.history_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.history_file, "w", encoding="utf-8") as f:
                json.dump([m.to_dict() for m in self.history], f, indent=2)
        except OSError as e:
            logger.warning(f"Could not write performance history {self.history_file}: {e}")

    def cpu_baseline(self, input_duration: float) -> Optional[float]:
        """Average CPU speedup over recent runs of similar length."""
        similar = [
            m.speedup for m in self.history
            if m.backend_kind == "cpu" and m.speedup > 0
            and abs(m.input_duration - input_duration) <= BASELINE_DURATION_TOLERANCE
        ][-BASELINE_WINDOW:]
        if not similar:
            return None
        return sum(similar) / len(similar)

    def generate_report(self) -> PerformanceReport:
        """Summarize history per backend kind."""
        history = self.history
        by_kind: Dict[str, List[SessionMetrics]] = {}
        for m in history:
            by_kind.setdefault(m.backend_kind, []).append(m)

        averages = {}
        trends = {}
        for kind, runs in by_kind.items():
            count = len(runs)
            averages[kind] = {
                "sessions": count,
                "speedup": sum(r.speedup for r in runs) / count,
                "processing_duration": sum(r.processing_duration for r in runs) / count,
                "peak_memory_mb": sum(r.peak_memory_bytes for r in runs) / count / (1024 * 1024),
            }
            trends[kind] = speedup_trend([r.speedup for r in runs])

        succeeded = sum(1 for m in history if m.succeeded)
        success_rate = succeeded / len(history) if history else 1.0

        return PerformanceReport(
            total_sessions=len(history),
            success_rate=success_rate,
            averages=averages,
            trends=trends,
            recommendations=self._recommendations(history, averages, trends),
        )

    @staticmethod
    def _recommendations(history, averages, trends) -> List[str]:
        tips = []
        for kind, trend in trends.items():
            if trend == "degrading":
                tips.append(f"{kind} performance is degrading; check drivers and cooling")

        degraded = sum(1 for m in history if m.degraded)
        if degraded:
            tips.append(f"Throttling slowed {degraded} session(s); improve cooling or power settings")

        if len(history) >= 3 and set(averages) == {"cpu"}:
            tips.append("All sessions ran on CPU; install GPU drivers to enable acceleration")

        cpu = averages.get("cpu", {}).get("speedup")
        for kind, stats in averages.items():
            if kind != "cpu" and cpu and stats["speedup"] < cpu * 1.5:
                tips.append(f"{kind} gives little gain over CPU; consider a smaller model")
        return tips


def speedup_trend(values: List[float]) -> str:
    """Compare the first and second half of a series at ±10%."""
    if len(values) < 4:
        return "stable"
    half = len(values) // 2
    first = sum(values[:half]) / half
    second = sum(values[half:]) / (len(values) - half)
    if first <= 0:
        return "stable"
    if second > first * (1 + TREND_THRESHOLD):
        return "improving"
    if second < first * (1 - TREND_THRESHOLD):
        return "degrading"
    return "stable"
