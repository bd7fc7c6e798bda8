"""Settings store for the subforge inference core."""
import hashlib
import json
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

VALID_PREFERENCES = ("auto", "cuda", "openvino", "coreml", "cpu")
VALID_TIE_BREAKS = ("platform-priority", "highest-performance")
VALID_DOWNLOAD_SOURCES = ("huggingface", "hf-mirror")
VALID_LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(frozen=True)
class Settings:
    """User settings consumed by the inference core.

    The core never writes settings back; the object is frozen.

    Attributes:
        backend_preference: 'auto', a backend kind, or a device id
        addons_dir: Directory holding the native inference modules
        models_dir: Directory holding ``ggml-<model>.bin`` files
        cache_dir: Runtime cache directory (OpenVINO compiled blobs)
        history_file: Where session metrics are persisted (None = memory only)
        thread_count: Native thread count (0 = derive from hardware)
        log_level: Logging verbosity
        download_source: Model mirror ('huggingface' or 'hf-mirror')
        tie_break: Policy for several devices of the same vendor
        detection_ttl: Seconds a detection pass stays cached
        max_network_retries: Bounded retries for model acquisition
        initial_retry_delay: First backoff delay in seconds
    """

    backend_preference: str = "auto"
    addons_dir: Optional[Path] = None
    models_dir: Path = Path.home() / ".subforge" / "models"
    cache_dir: Path = Path.home() / ".subforge" / "cache"
    history_file: Optional[Path] = None
    thread_count: int = 0
    log_level: str = "INFO"
    download_source: str = "huggingface"
    tie_break: str = "platform-priority"
    detection_ttl: float = 300.0
    max_network_retries: int = 3
    initial_retry_delay: float = 1.0

    def __post_init__(self) -> None:
        """Validate settings values."""
        if not self.backend_preference:
            raise ValueError("backend_preference must not be empty")

        if self.thread_count < 0:
            raise ValueError("thread_count must be non-negative")

        if self.log_level.upper() not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log_level '{self.log_level}'. "
                f"Valid levels: {list(VALID_LOG_LEVELS)}"
            )

        if self.download_source not in VALID_DOWNLOAD_SOURCES:
            raise ValueError(
                f"Invalid download_source '{self.download_source}'. "
                f"Valid sources: {list(VALID_DOWNLOAD_SOURCES)}"
            )

        if self.tie_break not in VALID_TIE_BREAKS:
            raise ValueError(
                f"Invalid tie_break '{self.tie_break}'. "
                f"Valid policies: {list(VALID_TIE_BREAKS)}"
            )

        if self.detection_ttl < 0:
            raise ValueError("detection_ttl must be non-negative")

        if self.max_network_retries < 0:
            raise ValueError("max_network_retries must be non-negative")

        if self.initial_retry_delay < 0:
            raise ValueError("initial_retry_delay must be non-negative")

    @property
    def explicit_preference(self) -> Optional[str]:
        """The backend preference, or None when selection is automatic."""
        if self.backend_preference.lower() == "auto":
            return None
        return self.backend_preference

    def to_dict(self) -> Dict[str, Any]:
        """Convert settings to a JSON-friendly dictionary."""
        data = {}
        for f in fields(self):
            val = getattr(self, f.name)
            data[f.name] = str(val) if isinstance(val, Path) else val
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Settings":
        """Create settings from a dictionary.

        Unknown keys are ignored so older settings files keep loading.
        """
        path_keys = {"addons_dir", "models_dir", "cache_dir", "history_file"}
        valid_keys = {f.name for f in fields(cls)}

        filtered = {}
        for key, value in data.items():
            if key not in valid_keys:
                continue
            if key in path_keys and value is not None:
                value = Path(value).expanduser()
            filtered[key] = value
        return cls(**filtered)

    @classmethod
    def load(cls, path: Path) -> "Settings":
        """Load settings from a JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_dict(json.load(f))

    def get_hash(self) -> str:
        """Hash of the settings that influence backend selection.

        Returns:
            SHA256 hash (first 16 characters)
        """
        hash_data = {
            "backend_preference": self.backend_preference,
            "addons_dir": str(self.addons_dir),
            "thread_count": self.thread_count,
            "tie_break": self.tie_break,
        }
        config_str = json.dumps(hash_data, sort_keys=True)
        return hashlib.sha256(config_str.encode()).hexdigest()[:16]
