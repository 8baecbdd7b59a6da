"""
chainvec Observability

Structured logging for the harness and the per-call ``Reporter`` used by the
replay side to collect pass/fail state and human-readable diffs.

Architecture:
    ┌─────────────────────────────────────────────────────────┐
    │                    Application Code                      │
    │  log.info("msg", height=h)      reporter.errorf(...)     │
    └───────────────┬───────────────────────────┬─────────────┘
                    │                           │
    ┌───────────────▼──────────────┐ ┌──────────▼─────────────┐
    │        HarnessLogger          │ │        Reporter        │
    │  layer + structured context   │ │  explicit sinks (tee)  │
    └───────────────┬──────────────┘ └────────────────────────┘
                    │
    ┌───────────────▼──────────────┐
    │ StructuredHandler │ text fmt │
    └──────────────────────────────┘

Reporters are created per vector (and per variant) and handed down explicitly;
nothing here redirects process-wide output.
"""

from __future__ import annotations

import json
import logging
import sys
import threading
import traceback
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import IO, Any, Dict, List, Optional, Sequence

from chainvec.errors import ConfigError

ROOT_LOGGER = "chainvec"

# Serializes line writes to streams shared between reporters (e.g. stderr).
_stream_lock = threading.Lock()


class LogLevel(Enum):
    """Log severity levels."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class Layer(Enum):
    """Harness layers for categorization."""
    EXTRACT = "extract"
    STORE = "store"
    ARCHIVE = "archive"
    RAND = "rand"
    SCHEMA = "schema"
    ENGINE = "engine"
    REPLAY = "replay"
    NODE = "node"
    CONFIG = "config"
    CLI = "cli"


@dataclass
class LogEvent:
    """Structured log event."""
    timestamp: str
    level: str
    logger: str
    message: str
    layer: str = ""
    operation: str = ""
    error_code: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    exception: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, excluding empty values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None and v != "" and v != {}}

    def to_json(self) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), default=str)


class StructuredHandler(logging.Handler):
    """Logging handler that outputs structured JSON."""

    def __init__(self, stream: Any = None):
        super().__init__()
        self.stream = stream or sys.stderr

    def emit(self, record: logging.LogRecord) -> None:
        try:
            event = LogEvent(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
                level=record.levelname.lower(),
                logger=record.name,
                message=record.getMessage(),
                layer=getattr(record, "layer", ""),
                operation=getattr(record, "operation", ""),
                error_code=getattr(record, "error_code", ""),
                context=getattr(record, "context", {}),
            )

            if record.exc_info:
                event.exception = "".join(traceback.format_exception(*record.exc_info))

            self.stream.write(event.to_json() + "\n")
            self.stream.flush()
        except Exception:
            self.handleError(record)


class TextFormatter(logging.Formatter):
    """Human-oriented single-line formatter that appends structured context."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = getattr(record, "context", None)
        if context:
            pairs = " ".join(f"{k}={v}" for k, v in context.items())
            line = f"{line} [{pairs}]"
        return line


def configure_logging(level: str = "info", fmt: str = "text", stream: Any = None) -> None:
    """Install a single handler on the ``chainvec`` logger hierarchy."""
    try:
        log_level = LogLevel(str(level).lower())
    except ValueError:
        raise ConfigError(f"unknown log level: {level!r}") from None

    root = logging.getLogger(ROOT_LOGGER)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if fmt == "json":
        handler: logging.Handler = StructuredHandler(stream)
    else:
        handler = logging.StreamHandler(stream or sys.stderr)
        handler.setFormatter(TextFormatter())

    root.addHandler(handler)
    root.setLevel(getattr(logging, log_level.name))
    root.propagate = False


class HarnessLogger:
    """
    Structured logger for harness components.

    Keyword arguments passed to the log methods travel as structured context.
    """

    def __init__(self, name: str, layer: Layer):
        self.name = name
        self.layer = layer
        self._logger = logging.getLogger(f"{ROOT_LOGGER}.{layer.value}.{name}")

    def _log(
        self,
        level: int,
        message: str,
        operation: str = "",
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        extra = {
            "layer": self.layer.value,
            "operation": operation,
            "error_code": error_code,
            "context": context,
        }
        self._logger.log(level, message, extra=extra, exc_info=exc_info)

    def debug(self, message: str, **context: Any) -> None:
        self._log(logging.DEBUG, message, **context)

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, **context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, **context)

    def error(
        self,
        message: str,
        error_code: str = "",
        exc_info: bool = False,
        **context: Any,
    ) -> None:
        self._log(logging.ERROR, message, error_code=error_code, exc_info=exc_info, **context)


def get_logger(name: str, layer: Layer) -> HarnessLogger:
    """Get a logger for a harness component."""
    return HarnessLogger(name, layer)


# =============================================================================
# REPORTER
# =============================================================================


class Reporter:
    """
    Per-call sink for test progress, failures and diffs.

    Every line goes to each of the reporter's sinks, so a batch run can tee a
    vector's output to the console and its own report file. ``errorf`` marks
    the reporter failed and records the message as a diff.
    """

    def __init__(self, sinks: Optional[Sequence[IO[str]]] = None, prefix: str = ""):
        self._sinks: List[IO[str]] = list(sinks) if sinks is not None else [sys.stderr]
        self._prefix = prefix
        self._failed = False
        self._diffs: List[str] = []

    def child(self, prefix: str) -> "Reporter":
        """A fresh reporter writing to the same sinks with its own failure state."""
        return Reporter(self._sinks, prefix=prefix)

    def _write(self, level: str, message: str) -> None:
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S")
        prefix = f"[{self._prefix}] " if self._prefix else ""
        line = f"{ts} {level:<5} {prefix}{message}\n"
        with _stream_lock:
            for sink in self._sinks:
                sink.write(line)
                sink.flush()

    def log(self, message: str) -> None:
        self._write("INFO", message)

    def logf(self, fmt: str, *args: Any) -> None:
        self.log(fmt % args if args else fmt)

    def errorf(self, fmt: str, *args: Any) -> None:
        message = fmt % args if args else fmt
        self._failed = True
        self._diffs.append(message)
        self._write("ERROR", message)

    @property
    def failed(self) -> bool:
        return self._failed

    @property
    def diffs(self) -> List[str]:
        return list(self._diffs)
