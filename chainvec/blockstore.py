"""Content-addressed object stores.

Three stores compose the extraction stack::

    TracingBlockstore ──► ProxyingBlockstore ──► MemoryBlockstore (local cache)
                                      └────────► node object-read endpoint

``TracingBlockstore`` records which objects one execution touched,
``ProxyingBlockstore`` lets the engine run against a supposedly complete graph
while only cold objects cost a network round-trip.

Every store declares ``supports_tracing``; callers that need the visited set
check that capability instead of probing concrete types.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, FrozenSet, Iterator, Optional, Set, Tuple

from chainvec.core import Cid
from chainvec.errors import FetchError, MissingObjectError
from chainvec.observability import Layer, get_logger

log = get_logger("blockstore", Layer.STORE)


class Blockstore(ABC):
    """Identifier-to-bytes store."""

    supports_tracing: bool = False

    @abstractmethod
    def get(self, cid: Cid) -> bytes:
        """Return the bytes for ``cid`` or raise ``MissingObjectError``."""

    @abstractmethod
    def put(self, cid: Cid, data: bytes) -> None:
        ...

    @abstractmethod
    def has(self, cid: Cid) -> bool:
        ...

    def put_block(self, data: bytes, codec: str) -> Cid:
        """Store ``data`` under its computed identifier."""
        cid = Cid.for_data(data, codec)
        self.put(cid, data)
        return cid


class TraceableBlockstore(Blockstore):
    """Stores that can record the identifiers accessed during a session."""

    supports_tracing = True

    @abstractmethod
    def start_tracing(self) -> None:
        ...

    @abstractmethod
    def finish_tracing(self) -> FrozenSet[Cid]:
        ...


class MemoryBlockstore(Blockstore):
    """Thread-safe in-process store."""

    def __init__(self, blocks: Optional[Dict[Cid, bytes]] = None):
        self._blocks: Dict[Cid, bytes] = dict(blocks or {})
        self._lock = threading.Lock()

    def get(self, cid: Cid) -> bytes:
        with self._lock:
            try:
                return self._blocks[cid]
            except KeyError:
                raise MissingObjectError(cid) from None

    def put(self, cid: Cid, data: bytes) -> None:
        with self._lock:
            self._blocks[cid] = bytes(data)

    def has(self, cid: Cid) -> bool:
        with self._lock:
            return cid in self._blocks

    def delete(self, cid: Cid) -> None:
        with self._lock:
            self._blocks.pop(cid, None)

    def keys(self) -> Set[Cid]:
        with self._lock:
            return set(self._blocks)

    def items(self) -> Iterator[Tuple[Cid, bytes]]:
        with self._lock:
            snapshot = list(self._blocks.items())
        return iter(snapshot)

    def __len__(self) -> int:
        with self._lock:
            return len(self._blocks)


class TracingBlockstore(TraceableBlockstore):
    """Wraps a store and records every distinct id read or written while tracing.

    Results of ``get``/``put``/``has`` are those of the wrapped store; errors
    from it propagate unchanged.
    """

    def __init__(self, inner: Blockstore):
        self.inner = inner
        self._lock = threading.Lock()
        self._tracing = False
        self._traced: Set[Cid] = set()

    def start_tracing(self) -> None:
        with self._lock:
            self._traced = set()
            self._tracing = True

    def finish_tracing(self) -> FrozenSet[Cid]:
        with self._lock:
            self._tracing = False
            traced = frozenset(self._traced)
            self._traced = set()
        log.debug("tracing finished", traced=len(traced))
        return traced

    @property
    def tracing(self) -> bool:
        with self._lock:
            return self._tracing

    def _record(self, cid: Cid) -> None:
        with self._lock:
            if self._tracing:
                self._traced.add(cid)

    def get(self, cid: Cid) -> bytes:
        self._record(cid)
        return self.inner.get(cid)

    def put(self, cid: Cid, data: bytes) -> None:
        self._record(cid)
        self.inner.put(cid, data)

    def has(self, cid: Cid) -> bool:
        return self.inner.has(cid)


class ProxyingBlockstore(Blockstore):
    """Read-through store: local cache first, then the node's object endpoint.

    ``remote`` is a callable returning the raw bytes for a cid (typically
    ``ChainClient.chain_read_obj``). Fetched bytes must hash to the requested
    id before they are cached.
    """

    def __init__(self, local: Blockstore, remote: Callable[[Cid], bytes]):
        self.local = local
        self._remote = remote

    def get(self, cid: Cid) -> bytes:
        if self.local.has(cid):
            return self.local.get(cid)

        log.debug("fetching object from node", cid=str(cid))
        data = self._remote(cid)
        if not cid.verify(data):
            raise FetchError(f"node returned bytes that do not hash to {cid}")
        self.local.put(cid, data)
        return data

    def put(self, cid: Cid, data: bytes) -> None:
        self.local.put(cid, data)

    def has(self, cid: Cid) -> bool:
        return self.local.has(cid)
