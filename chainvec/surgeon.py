"""Minimal-closure archive writer.

A naive walk from a state root would pull in the whole state tree. The surgeon
walks from the requested roots but only descends into children that appear in
an allow-list (the visited set of a traced execution), which yields the
smallest closure that still lets an engine replay that execution.
"""

from __future__ import annotations

import gzip
import io
from typing import AbstractSet, BinaryIO, Iterator, List, Sequence, Tuple

from chainvec.blockstore import Blockstore
from chainvec.car import CarWriter
from chainvec.core import Cid, block_links
from chainvec.errors import MissingObjectError, SerializationError
from chainvec.observability import Layer, get_logger

log = get_logger("surgeon", Layer.ARCHIVE)


class Surgeon:
    """Writes archives of the objects reachable from roots through an allow-list."""

    def __init__(self, store: Blockstore):
        self.store = store

    def _fetch(self, cid: Cid, parent: Cid | None) -> bytes:
        try:
            return self.store.get(cid)
        except MissingObjectError:
            where = f" (linked from {parent})" if parent is not None else " (root)"
            raise MissingObjectError(cid, f"broken closure: object {cid}{where} is not in the store") from None

    def walk(self, contents: AbstractSet[Cid], roots: Sequence[Cid]) -> Iterator[Tuple[Cid, bytes]]:
        """Depth-first, link order, each object once. Roots are always included."""
        seen: set[Cid] = set()
        stack: List[Tuple[Cid, Cid | None]] = [(r, None) for r in reversed(list(roots))]
        while stack:
            cid, parent = stack.pop()
            if cid in seen:
                continue
            seen.add(cid)
            data = self._fetch(cid, parent)
            yield cid, data
            children = [c for c in block_links(cid, data) if c in contents and c not in seen]
            for child in reversed(children):
                stack.append((child, cid))

    def write_car_including(self, out: BinaryIO, contents: AbstractSet[Cid], *roots: Cid) -> int:
        """Write an uncompressed archive to ``out``; returns the block count."""
        w = CarWriter(out, roots)
        for cid, data in self.walk(contents, roots):
            w.write_block(cid, data)
        log.debug("archive written", roots=len(roots), blocks=w.written, allowed=len(contents))
        return w.written

    def build_archive(self, contents: AbstractSet[Cid], *roots: Cid) -> bytes:
        """Return gzip-compressed archive bytes.

        The bytes are only returned once the gzip stream is flushed and closed;
        any failure, closing included, discards the buffer.
        """
        buf = io.BytesIO()
        gz = gzip.GzipFile(fileobj=buf, mode="wb", mtime=0)
        try:
            self.write_car_including(gz, contents, *roots)
            gz.flush()
            gz.close()
            return buf.getvalue()
        except OSError as e:
            raise SerializationError(f"failed to write archive: {e}") from e
