"""Core primitives for chainvec.

This module provides the foundational utilities used throughout the harness:
- Cryptographic hashing (SHA-256)
- Canonical JSON serialization (JCS/RFC8785 subset)
- YAML/JSON loading with consistent encoding
- Content identifiers (``Cid``) and object link extraction
- Base64 helpers for the vector wire format

Design principles:
- Pure functions where possible
- No global mutable state
- Explicit error handling
- Type annotations throughout
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import pathlib
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Tuple, Union

import yaml

CODEC_DAG_JSON = "dagjson"
CODEC_RAW = "raw"
KNOWN_CODECS = (CODEC_DAG_JSON, CODEC_RAW)

SHA256_HEX_RE = re.compile(r"^[a-f0-9]{64}$")
LINK_KEY = "/"


def sha256_bytes(data: bytes) -> str:
    """Compute SHA-256 hash of bytes, returning lowercase hex string."""
    return hashlib.sha256(data).hexdigest()


def load_yaml(path: pathlib.Path) -> Any:
    """Load YAML file with UTF-8 encoding."""
    return yaml.safe_load(pathlib.Path(path).read_text(encoding="utf-8"))


def load_json(path: pathlib.Path) -> Any:
    """Load JSON file with UTF-8 encoding."""
    return json.loads(pathlib.Path(path).read_text(encoding="utf-8"))


def canonical_json_bytes(obj: Any) -> bytes:
    """Serialize object to canonical JSON bytes (JCS/RFC8785 subset).

    Properties:
    - Keys sorted lexicographically
    - No whitespace
    - UTF-8 encoded
    - Floats rejected (use strings/ints for amounts)

    Object identifiers are derived from these bytes, so two engines that build
    the same object must produce the same encoding.
    """
    def _reject_floats(o: Any, path: str = "") -> None:
        if isinstance(o, float):
            raise ValueError(f"Float not allowed in canonical JSON at {path}")
        if isinstance(o, dict):
            for k, v in o.items():
                _reject_floats(v, f"{path}.{k}")
        if isinstance(o, list):
            for i, v in enumerate(o):
                _reject_floats(v, f"{path}[{i}]")

    _reject_floats(obj)
    return json.dumps(
        obj,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    ).encode("utf-8")


def b64encode(data: bytes) -> str:
    return base64.b64encode(bytes(data)).decode("ascii")


def b64decode(text: str) -> bytes:
    """Decode standard base64, rejecting non-alphabet characters."""
    try:
        return base64.b64decode(str(text or ""), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"invalid base64 payload: {e}") from e


def format_epoch(epoch: int) -> str:
    """Render a chain epoch the same way everywhere (ids, paths, logs)."""
    return str(int(epoch))


# ---------------------------------------------------------------------------
# Content identifiers
# ---------------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class Cid:
    """Content identifier: a codec tag plus the SHA-256 digest of the bytes.

    Text form is ``<codec>:<sha256-hex>``.
    """
    codec: str
    digest: str

    def __post_init__(self) -> None:
        if self.codec not in KNOWN_CODECS:
            raise ValueError(f"unknown cid codec: {self.codec!r}")
        if not SHA256_HEX_RE.match(self.digest):
            raise ValueError("cid digest must be 64 lowercase hex chars")

    def __str__(self) -> str:
        return f"{self.codec}:{self.digest}"

    @classmethod
    def parse(cls, text: str) -> "Cid":
        s = str(text or "").strip()
        codec, sep, digest = s.partition(":")
        if not sep:
            raise ValueError(f"malformed cid: {text!r}")
        return cls(codec=codec, digest=digest.lower())

    @classmethod
    def for_data(cls, data: bytes, codec: str = CODEC_RAW) -> "Cid":
        return cls(codec=codec, digest=sha256_bytes(data))

    def verify(self, data: bytes) -> bool:
        """True when ``data`` hashes to this identifier."""
        return sha256_bytes(data) == self.digest

    def to_link(self) -> Dict[str, str]:
        return {LINK_KEY: str(self)}

    @classmethod
    def from_link(cls, value: Any) -> "Cid":
        if not is_link(value):
            raise ValueError(f"not a link object: {value!r}")
        return cls.parse(value[LINK_KEY])


def is_link(value: Any) -> bool:
    return (
        isinstance(value, dict)
        and len(value) == 1
        and isinstance(value.get(LINK_KEY), str)
    )


def encode_object(obj: Any) -> Tuple[Cid, bytes]:
    """Encode a JSON-able object as a dagjson block, returning ``(cid, bytes)``."""
    data = canonical_json_bytes(obj)
    return Cid.for_data(data, CODEC_DAG_JSON), data


def decode_object(data: bytes) -> Any:
    return json.loads(data.decode("utf-8"))


def iter_links(obj: Any) -> Iterator[Cid]:
    """Yield links of a decoded dagjson object in document order."""
    if is_link(obj):
        yield Cid.from_link(obj)
    elif isinstance(obj, dict):
        for key in sorted(obj):
            yield from iter_links(obj[key])
    elif isinstance(obj, list):
        for item in obj:
            yield from iter_links(item)


def block_links(cid: Cid, data: bytes) -> List[Cid]:
    """Return the outgoing links of a block; raw blocks have none."""
    if cid.codec != CODEC_DAG_JSON:
        return []
    return list(iter_links(decode_object(data)))


def coerce_cid(value: Union[Cid, str, Dict[str, str]]) -> Cid:
    """Accept a ``Cid``, its text form, or a ``{"/": ...}`` link."""
    if isinstance(value, Cid):
        return value
    if isinstance(value, dict):
        return Cid.from_link(value)
    return Cid.parse(value)
