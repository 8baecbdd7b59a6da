"""Randomness sources handed to the execution engine.

Extraction wraps the node in a ``RecordingRand`` that logs every draw;
replay answers the same draws from that log with ``ReplayingRand`` and never
reaches for an outside source.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Sequence, Tuple

from chainvec.chain import ChainClient, TipSetKey
from chainvec.errors import DeterminismViolation
from chainvec.observability import Layer, Reporter, get_logger
from chainvec.schema import RAND_KIND_BEACON, RAND_KIND_CHAIN, RandomnessMatch, RandomnessRule

log = get_logger("rand", Layer.RAND)


class Rand(ABC):
    """Source of chain and beacon randomness for one execution."""

    @abstractmethod
    def get_chain_randomness(self, dst: int, epoch: int, entropy: bytes) -> bytes:
        ...

    @abstractmethod
    def get_beacon_randomness(self, dst: int, epoch: int, entropy: bytes) -> bytes:
        ...


class RecordingRand(Rand):
    """Forwards draws to the node at a fixed tipset and records each one."""

    def __init__(self, reporter: Reporter, client: ChainClient, tipset_key: TipSetKey):
        self.reporter = reporter
        self.client = client
        self.tipset_key = tipset_key
        self._lock = threading.Lock()
        self._recorded: List[RandomnessMatch] = []

    def _record(self, rule: RandomnessRule, ret: bytes) -> None:
        with self._lock:
            self._recorded.append(RandomnessMatch(on=rule, ret=bytes(ret)))

    def get_chain_randomness(self, dst: int, epoch: int, entropy: bytes) -> bytes:
        ret = self.client.get_chain_randomness(self.tipset_key, dst, epoch, entropy)
        self._record(RandomnessRule(RAND_KIND_CHAIN, dst, epoch, bytes(entropy)), ret)
        self.reporter.logf("fetched and recorded chain randomness for: dst=%d, epoch=%d", dst, epoch)
        return ret

    def get_beacon_randomness(self, dst: int, epoch: int, entropy: bytes) -> bytes:
        ret = self.client.get_beacon_randomness(self.tipset_key, dst, epoch, entropy)
        self._record(RandomnessRule(RAND_KIND_BEACON, dst, epoch, bytes(entropy)), ret)
        self.reporter.logf("fetched and recorded beacon randomness for: dst=%d, epoch=%d", dst, epoch)
        return ret

    def recorded(self) -> Tuple[RandomnessMatch, ...]:
        """Draws in the order they were made."""
        with self._lock:
            return tuple(self._recorded)


class ReplayingRand(Rand):
    """Answers draws from a recorded log; an unseen draw is a determinism violation."""

    def __init__(self, reporter: Reporter, recorded: Sequence[RandomnessMatch]):
        self.reporter = reporter
        self._table: Dict[RandomnessRule, bytes] = {}
        for match in recorded:
            # first recording wins when the same draw was made twice
            self._table.setdefault(match.on, match.ret)

    def _lookup(self, rule: RandomnessRule) -> bytes:
        ret = self._table.get(rule)
        if ret is None:
            log.warning("unrecorded randomness requested", kind=rule.kind, dst=rule.dst, epoch=rule.epoch)
            raise DeterminismViolation(
                f"no recorded {rule.kind} randomness for dst={rule.dst}, epoch={rule.epoch}, "
                f"entropy={rule.entropy.hex()}",
                request=rule,
            )
        self.reporter.logf("returning recorded %s randomness: dst=%d, epoch=%d", rule.kind, rule.dst, rule.epoch)
        return ret

    def get_chain_randomness(self, dst: int, epoch: int, entropy: bytes) -> bytes:
        return self._lookup(RandomnessRule(RAND_KIND_CHAIN, dst, epoch, bytes(entropy)))

    def get_beacon_randomness(self, dst: int, epoch: int, entropy: bytes) -> bytes:
        return self._lookup(RandomnessRule(RAND_KIND_BEACON, dst, epoch, bytes(entropy)))
