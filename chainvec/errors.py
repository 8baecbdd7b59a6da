"""Error types shared across chainvec.

Input and configuration problems are raised before any work starts; fetch and
serialization problems abort the current unit of work; determinism violations
are reported as test failures by the replay side.
"""

from __future__ import annotations

from typing import Any, Optional


class HarnessError(Exception):
    """Base class for all chainvec errors."""
    pass


class InputError(HarnessError):
    """User-supplied input is empty, malformed or unsupported."""
    pass


class ConfigError(HarnessError):
    """Configuration error."""
    pass


class ValidationError(ConfigError):
    """Configuration validation error."""
    pass


class FetchError(HarnessError):
    """Chain data or an object could not be retrieved."""
    pass


class MissingObjectError(FetchError):
    """An object is absent from every store consulted."""

    def __init__(self, cid: Any, message: str = ""):
        self.cid = cid
        super().__init__(message or f"missing object {cid}")


class SerializationError(HarnessError):
    """Archive or vector encoding/decoding failed."""
    pass


class DeterminismViolation(HarnessError):
    """Replay requested a randomness draw that was never recorded."""

    def __init__(self, message: str, request: Optional[Any] = None):
        self.request = request
        super().__init__(message)


class ExecutionError(HarnessError):
    """The execution engine failed to apply a tipset or message."""
    pass
