"""Execution engine interface and the driver that invokes it.

The state-transition function itself is not part of chainvec. An engine is
plugged in as a factory named ``package.module:callable`` and must implement
``ExecutionEngine``.
"""

from __future__ import annotations

import importlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from chainvec.blockstore import Blockstore
from chainvec.core import Cid, format_epoch
from chainvec.errors import ConfigError, ExecutionError, HarnessError
from chainvec.observability import Layer, get_logger
from chainvec.rand import Rand
from chainvec.schema import Receipt, Tipset

log = get_logger("engine", Layer.ENGINE)


@dataclass(frozen=True)
class AppliedResult:
    """Outcome of one applied message."""
    exit_code: int
    return_value: bytes
    gas_used: int

    def to_receipt(self) -> Receipt:
        return Receipt(exit_code=self.exit_code, return_value=self.return_value, gas_used=self.gas_used)


@dataclass(frozen=True)
class ExecuteTipsetParams:
    preroot: Cid
    parent_epoch: int
    tipset: Tipset
    exec_epoch: int
    rand: Rand
    network_version: Optional[int] = None


@dataclass(frozen=True)
class ExecutionResult:
    post_state_root: Cid
    receipts_root: Cid
    applied_results: Tuple[AppliedResult, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "post_state_root": str(self.post_state_root),
            "receipts_root": str(self.receipts_root),
            "applied": len(self.applied_results),
        }


class ExecutionEngine(ABC):
    """A state-transition function reading and writing a content-addressed store."""

    @abstractmethod
    def execute_tipset(self, store: Blockstore, params: ExecuteTipsetParams, flush: bool) -> ExecutionResult:
        """Apply every message of ``params.tipset`` on top of ``params.preroot``.

        When ``flush`` is false the engine must not persist anything beyond the
        objects it writes into ``store``.
        """

    @abstractmethod
    def apply_message(
        self,
        store: Blockstore,
        root: Cid,
        epoch: int,
        message: bytes,
        basefee: int,
        network_version: int,
        rand: Rand,
    ) -> Tuple[Cid, AppliedResult]:
        """Apply one serialized message; returns the new state root and its result."""


@dataclass
class DriverOptions:
    disable_flush: bool = False


@dataclass
class Driver:
    """Runs the engine with harness-wide options and normalizes its failures."""
    engine: ExecutionEngine
    options: DriverOptions = field(default_factory=DriverOptions)

    def execute_tipset(self, store: Blockstore, params: ExecuteTipsetParams) -> ExecutionResult:
        expected = sum(len(b.messages) for b in params.tipset.blocks)
        log.debug(
            "executing tipset",
            epoch=format_epoch(params.exec_epoch),
            preroot=str(params.preroot),
            messages=expected,
        )
        try:
            result = self.engine.execute_tipset(store, params, flush=not self.options.disable_flush)
        except HarnessError:
            raise
        except Exception as e:
            raise ExecutionError(f"engine failed to execute tipset at epoch {format_epoch(params.exec_epoch)}: {e}") from e

        if not isinstance(result, ExecutionResult):
            raise ExecutionError(f"engine returned {type(result).__name__}, expected ExecutionResult")
        log.debug("tipset executed", **result.to_dict())
        return result

    def execute_message(
        self,
        store: Blockstore,
        root: Cid,
        epoch: int,
        message: bytes,
        basefee: int,
        network_version: int,
        rand: Rand,
    ) -> Tuple[Cid, AppliedResult]:
        try:
            return self.engine.apply_message(store, root, epoch, message, basefee, network_version, rand)
        except HarnessError:
            raise
        except Exception as e:
            raise ExecutionError(f"engine failed to apply message at epoch {format_epoch(epoch)}: {e}") from e


def load_engine(spec: str, **kwargs: Any) -> ExecutionEngine:
    """Import ``package.module:callable`` and call it to build an engine."""
    module_name, sep, attr = str(spec or "").partition(":")
    if not sep or not module_name or not attr:
        raise ConfigError(f"engine factory must look like 'package.module:callable', got {spec!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigError(f"cannot import engine module {module_name!r}: {e}") from e

    factory: Any = module
    for part in attr.split("."):
        try:
            factory = getattr(factory, part)
        except AttributeError:
            raise ConfigError(f"engine factory {spec!r} not found") from None

    engine = factory(**kwargs)
    if not isinstance(engine, ExecutionEngine):
        raise ConfigError(f"engine factory {spec!r} returned {type(engine).__name__}, not an ExecutionEngine")
    log.info("engine loaded", factory=spec)
    return engine


def results_to_receipts(results: List[AppliedResult]) -> Tuple[Receipt, ...]:
    return tuple(r.to_receipt() for r in results)
