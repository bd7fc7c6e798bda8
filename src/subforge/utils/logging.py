"""Structured logging utilities for subforge.

Every module logs through ``logging.getLogger(__name__)`` below the
``subforge`` root logger. Components that want structured fields use
:func:`get_logger`, which returns a :class:`SubforgeLogger` adapter:

    >>> from subforge.utils.logging import LogConfig, configure_logging, get_logger
    >>> configure_logging(LogConfig(log_level="DEBUG", log_format="json"))
    >>> logger = get_logger("orchestrator")
    >>> logger.info("Backend selected", backend="cuda", attempt=1)
"""

import copy
import json
import logging
import sys
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Literal, Optional, Union

LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
LogFormat = Literal["text", "json"]

ROOT_LOGGER = "subforge"
VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass
class LogConfig:
    """Configuration for subforge logging.

    Attributes:
        log_level: Default log level for all components
        log_format: 'text' for humans, 'json' for log shippers
        log_file: Optional rotating log file
        component_levels: Per-component overrides, e.g. {"hardware": "DEBUG"}
        max_file_size_mb: Rotation threshold
        backup_count: Rotated files to keep
        include_timestamp: Prefix text output with a timestamp
        include_source: Append file/line information
    """

    log_level: LogLevel = "INFO"
    log_format: LogFormat = "text"
    log_file: Optional[str] = None
    component_levels: Dict[str, LogLevel] = field(default_factory=dict)
    max_file_size_mb: int = 10
    backup_count: int = 5
    include_timestamp: bool = True
    include_source: bool = False

    def __post_init__(self) -> None:
        if self.log_level.upper() not in VALID_LEVELS:
            raise ValueError(
                f"Invalid log_level '{self.log_level}'. "
                f"Must be one of: {sorted(VALID_LEVELS)}"
            )
        if self.log_format not in ("text", "json"):
            raise ValueError(
                f"Invalid log_format '{self.log_format}'. "
                "Must be 'text' or 'json'"
            )
        for component, level in self.component_levels.items():
            if level.upper() not in VALID_LEVELS:
                raise ValueError(
                    f"Invalid log level '{level}' for component '{component}'"
                )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LogConfig":
        """Create LogConfig from dictionary."""
        return cls(
            log_level=data.get("log_level", "INFO"),
            log_format=data.get("log_format", "text"),
            log_file=data.get("log_file"),
            component_levels=data.get("component_levels", {}),
            max_file_size_mb=data.get("max_file_size_mb", 10),
            backup_count=data.get("backup_count", 5),
            include_timestamp=data.get("include_timestamp", True),
            include_source=data.get("include_source", False),
        )


class JSONFormatter(logging.Formatter):
    """Render records as one JSON object per line.

    Structured fields passed to :class:`SubforgeLogger` are merged into the
    top-level object next to ``timestamp``, ``level``, ``component`` and
    ``message``.
    """

    def __init__(self, include_source: bool = False) -> None:
        super().__init__()
        self.include_source = include_source

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "component": record.name.split(".")[-1],
            "message": record.getMessage(),
        }

        if self.include_source:
            entry["source"] = {
                "file": record.filename,
                "line": record.lineno,
                "function": record.funcName,
            }

        if hasattr(record, "extra_fields"):
            entry.update(record.extra_fields)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """Human-readable formatter.

    2026-01-05 10:30:45 | INFO     | orchestrator | Backend selected [backend=cuda]
    """

    def __init__(
        self,
        include_timestamp: bool = True,
        include_source: bool = False,
    ) -> None:
        self.include_source = include_source
        if include_timestamp:
            fmt = "%(asctime)s | %(levelname)-8s | %(name)-12s | %(message)s"
        else:
            fmt = "%(levelname)-8s | %(name)-12s | %(message)s"
        super().__init__(fmt=fmt, datefmt="%Y-%m-%d %H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        message = record.getMessage()
        extra_fields = getattr(record, "extra_fields", None)
        if extra_fields:
            extra_str = ", ".join(f"{k}={v}" for k, v in extra_fields.items())
            message = f"{message} [{extra_str}]"

        if self.include_source:
            message = f"{message} ({record.filename}:{record.lineno})"

        # Other handlers see the same record; leave it untouched.
        record = copy.copy(record)
        record.msg = message
        record.args = None
        return super().format(record)


class SubforgeLogger(logging.LoggerAdapter):
    """Logger adapter that turns keyword arguments into structured fields."""

    def __init__(
        self,
        logger: logging.Logger,
        component: str,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(logger, extra or {})
        self.component = component

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra_fields = {}
        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra_fields[key] = kwargs.pop(key)

        if self.extra:
            extra_fields.update(self.extra)

        kwargs.setdefault("extra", {})
        kwargs["extra"]["extra_fields"] = extra_fields
        return msg, kwargs

    def transition(self, request_id: str, state: str, **kwargs: Any) -> None:
        """Log a state machine transition."""
        self.debug(f"{request_id} -> {state}", request_id=request_id, state=state, **kwargs)

    def metric(
        self,
        metric_name: str,
        value: Union[int, float],
        unit: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        """Log a metric value."""
        extra = {"metric_name": metric_name, "metric_value": value}
        if unit:
            extra["metric_unit"] = unit
        extra.update(kwargs)
        self.info(f"Metric: {metric_name}={value}{unit or ''}", **extra)


_log_config: Optional[LogConfig] = None
_configured_loggers: Dict[str, SubforgeLogger] = {}


def _build_formatter(config: LogConfig) -> logging.Formatter:
    if config.log_format == "json":
        return JSONFormatter(include_source=config.include_source)
    return TextFormatter(
        include_timestamp=config.include_timestamp,
        include_source=config.include_source,
    )


def configure_logging(config: Optional[LogConfig] = None) -> None:
    """Install handlers on the ``subforge`` root logger.

    Call once at startup. Calling again replaces the previous handlers.

    Args:
        config: Logging configuration. If None, uses defaults.
    """
    global _log_config

    if config is None:
        config = LogConfig()
    _log_config = config

    level = getattr(logging, config.log_level.upper())
    root_logger = logging.getLogger(ROOT_LOGGER)
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    formatter = _build_formatter(config)

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)
    root_logger.addHandler(console_handler)

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=config.max_file_size_mb * 1024 * 1024,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        root_logger.addHandler(file_handler)

    for component, component_level in config.component_levels.items():
        logging.getLogger(f"{ROOT_LOGGER}.{component}").setLevel(
            getattr(logging, component_level.upper())
        )

    root_logger.propagate = False


def get_logger(component: str) -> SubforgeLogger:
    """Get the structured logger for a component.

    Args:
        component: Component name (e.g. 'orchestrator', 'monitoring')

    Returns:
        Cached SubforgeLogger instance
    """
    if component in _configured_loggers:
        return _configured_loggers[component]

    base_logger = logging.getLogger(f"{ROOT_LOGGER}.{component}")
    if _log_config and component in _log_config.component_levels:
        base_logger.setLevel(
            getattr(logging, _log_config.component_levels[component].upper())
        )

    logger = SubforgeLogger(base_logger, component)
    _configured_loggers[component] = logger
    return logger


def get_config() -> Optional[LogConfig]:
    """Get current logging configuration."""
    return _log_config


def set_level(level: LogLevel, component: Optional[str] = None) -> None:
    """Change a log level at runtime.

    Args:
        level: New log level
        component: Component to change (None for the root logger)
    """
    name = f"{ROOT_LOGGER}.{component}" if component else ROOT_LOGGER
    logging.getLogger(name).setLevel(getattr(logging, level.upper()))


def configure_from_cli(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file: Optional[str] = None,
    verbose: int = 0,
) -> LogConfig:
    """Build and install a LogConfig from command line options.

    ``verbose`` lowers the level to DEBUG when set and wins over
    ``log_level``.
    """
    level = "DEBUG" if verbose else (log_level or "INFO").upper()
    config = LogConfig(
        log_level=level,
        log_format=log_format or "text",
        log_file=log_file,
    )
    configure_logging(config)
    return config
