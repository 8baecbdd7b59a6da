"""Content-addressed archive (CAR) framing.

Layout::

    uvarint(len(header)) header
    { uvarint(len(section)) section }*

``header`` is canonical JSON ``{"roots": ["<cid>", ...], "version": 1}`` and
each ``section`` is ``uvarint(len(cid)) cid-utf8 data``. Vectors embed the
archive gzip-compressed.
"""

from __future__ import annotations

import gzip
import io
from dataclasses import dataclass
from typing import BinaryIO, Iterator, List, Sequence, Tuple

from chainvec.blockstore import Blockstore
from chainvec.core import Cid, canonical_json_bytes, decode_object
from chainvec.errors import SerializationError

CAR_VERSION = 1
MAX_SECTION_BYTES = 1 << 30


def encode_uvarint(n: int) -> bytes:
    if n < 0:
        raise ValueError("uvarint must be non-negative")
    out = bytearray()
    while True:
        b = n & 0x7F
        n >>= 7
        if n:
            out.append(b | 0x80)
        else:
            out.append(b)
            return bytes(out)


def read_uvarint(stream: BinaryIO) -> int | None:
    """Read one uvarint; ``None`` at a clean end of stream."""
    shift = 0
    result = 0
    first = True
    while True:
        b = stream.read(1)
        if not b:
            if first:
                return None
            raise SerializationError("truncated varint in archive")
        first = False
        result |= (b[0] & 0x7F) << shift
        if not b[0] & 0x80:
            return result
        shift += 7
        if shift > 63:
            raise SerializationError("varint overflow in archive")


def _read_exact(stream: BinaryIO, n: int) -> bytes:
    data = stream.read(n)
    if len(data) != n:
        raise SerializationError(f"truncated archive: wanted {n} bytes, got {len(data)}")
    return data


@dataclass(frozen=True)
class CarHeader:
    roots: Tuple[Cid, ...]
    version: int = CAR_VERSION


class CarWriter:
    """Streams a header followed by blocks; each cid is written once."""

    def __init__(self, out: BinaryIO, roots: Sequence[Cid]):
        self._out = out
        self._written: set[Cid] = set()
        header = canonical_json_bytes({
            "roots": [str(r) for r in roots],
            "version": CAR_VERSION,
        })
        self._out.write(encode_uvarint(len(header)))
        self._out.write(header)

    def write_block(self, cid: Cid, data: bytes) -> bool:
        if cid in self._written:
            return False
        cid_bytes = str(cid).encode("utf-8")
        section = encode_uvarint(len(cid_bytes)) + cid_bytes + bytes(data)
        self._out.write(encode_uvarint(len(section)))
        self._out.write(section)
        self._written.add(cid)
        return True

    @property
    def written(self) -> int:
        return len(self._written)


def read_header(stream: BinaryIO) -> CarHeader:
    n = read_uvarint(stream)
    if n is None:
        raise SerializationError("empty archive")
    try:
        obj = decode_object(_read_exact(stream, n))
        roots = tuple(Cid.parse(r) for r in obj["roots"])
        version = int(obj["version"])
    except (KeyError, TypeError, ValueError) as e:
        raise SerializationError(f"invalid archive header: {e}") from e
    if version != CAR_VERSION:
        raise SerializationError(f"unsupported archive version {version}")
    return CarHeader(roots=roots, version=version)


def iter_blocks(stream: BinaryIO) -> Iterator[Tuple[Cid, bytes]]:
    """Yield ``(cid, data)`` for every section after the header."""
    while True:
        n = read_uvarint(stream)
        if n is None:
            return
        if n > MAX_SECTION_BYTES:
            raise SerializationError(f"archive section too large: {n}")
        section = io.BytesIO(_read_exact(stream, n))
        cid_len = read_uvarint(section)
        if cid_len is None:
            raise SerializationError("empty archive section")
        try:
            cid = Cid.parse(_read_exact(section, cid_len).decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as e:
            raise SerializationError(f"invalid cid in archive: {e}") from e
        yield cid, section.read()


def read_car(stream: BinaryIO) -> Tuple[CarHeader, List[Tuple[Cid, bytes]]]:
    header = read_header(stream)
    return header, list(iter_blocks(stream))


def gunzip(data: bytes) -> bytes:
    try:
        return gzip.decompress(data)
    except (OSError, EOFError) as e:
        raise SerializationError(f"archive is not a valid gzip stream: {e}") from e


def load_car(store: Blockstore, gzipped: bytes, verify: bool = True) -> CarHeader:
    """Import a gzip-compressed archive into ``store``; returns its header."""
    stream = io.BytesIO(gunzip(gzipped))
    header = read_header(stream)
    for cid, data in iter_blocks(stream):
        if verify and not cid.verify(data):
            raise SerializationError(f"archive block does not hash to {cid}")
        store.put(cid, data)
    return header
