"""Progress and telemetry events delivered to the host application."""

import logging
from dataclasses import dataclass
from typing import List, Optional, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    """A progress update: stage name, 0-100 percentage and a message."""
    stage: str
    percentage: float
    message: str = ""
    request_id: str = ""


class TelemetrySink(Protocol):
    """Receiver for progress and memory events. Delivery is best effort."""

    def progress(self, event: ProgressEvent) -> None: ...

    def memory_sample(self, session_id: str, rss_bytes: int) -> None: ...


class NullSink:
    """Sink that drops everything."""

    def progress(self, event: ProgressEvent) -> None:
        pass

    def memory_sample(self, session_id: str, rss_bytes: int) -> None:
        pass


class RecordingSink:
    """Sink that keeps every event, used by the CLI summary and tests."""

    def __init__(self) -> None:
        self.events: List[ProgressEvent] = []
        self.samples: List[tuple] = []

    def progress(self, event: ProgressEvent) -> None:
        self.events.append(event)

    def memory_sample(self, session_id: str, rss_bytes: int) -> None:
        self.samples.append((session_id, rss_bytes))

    def stages(self) -> List[str]:
        return [e.stage for e in self.events]


def emit_progress(sink: Optional[TelemetrySink], event: ProgressEvent) -> None:
    """Deliver a progress event; sink failures are logged and dropped."""
    if sink is None:
        return
    try:
        sink.progress(event)
    except Exception as e:
        logger.warning(f"Telemetry sink rejected progress event: {e}")


def emit_memory_sample(sink: Optional[TelemetrySink], session_id: str, rss_bytes: int) -> None:
    """Deliver a memory sample; sink failures are logged and dropped."""
    if sink is None:
        return
    try:
        sink.memory_sample(session_id, rss_bytes)
    except Exception as e:
        logger.warning(f"Telemetry sink rejected memory sample: {e}")
