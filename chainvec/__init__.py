"""chainvec: conformance test vectors for a blockchain state-transition function.

Extracts real chain history into self-contained vectors (starting state,
messages to apply, recorded randomness, expected outcome) and replays them
against a pluggable execution engine.

Architecture:
    chainvec/
    ├── __init__.py      # Package entry, version, public API
    ├── core.py          # Primitives: sha256, canonical JSON, Cid, links
    ├── errors.py        # Error hierarchy
    ├── config.py        # Layered configuration
    ├── observability.py # Structured logging, Reporter
    ├── blockstore.py    # Memory, tracing and read-through stores
    ├── car.py           # Archive framing
    ├── surgeon.py       # Minimal-closure archive writer
    ├── rand.py          # Recording / replaying randomness
    ├── schema.py        # TestVector model and JSON Schema validation
    ├── chain.py         # Chain types and client interface
    ├── node.py          # JSON-RPC node client
    ├── engine.py        # Execution engine interface, Driver
    ├── codenames.py     # Protocol codenames by epoch
    ├── extract.py       # Tipset extraction
    ├── conformance.py   # Vector execution and comparison
    ├── replay.py        # File / directory / stream replay
    ├── audit.py         # Archive closure audit
    └── cli.py           # Command-line interface
"""

__version__ = "0.3.0"

from chainvec.core import (
    Cid,
    canonical_json_bytes,
    encode_object,
    decode_object,
    format_epoch,
)

from chainvec.errors import (
    HarnessError,
    InputError,
    ConfigError,
    FetchError,
    MissingObjectError,
    SerializationError,
    DeterminismViolation,
    ExecutionError,
)

__all__ = [
    "__version__",
    "Cid",
    "canonical_json_bytes",
    "encode_object",
    "decode_object",
    "format_epoch",
    "HarnessError",
    "InputError",
    "ConfigError",
    "FetchError",
    "MissingObjectError",
    "SerializationError",
    "DeterminismViolation",
    "ExecutionError",
]
