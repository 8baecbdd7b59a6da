"""Vector execution and postcondition comparison.

Each variant of a vector runs against a fresh store loaded from the vector's
archive, with randomness answered only from the vector's recorded draws.
Mismatches are reported through the variant's ``Reporter`` one field at a
time so the diff list reads as a checklist.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from chainvec.blockstore import Blockstore, MemoryBlockstore, ProxyingBlockstore
from chainvec.car import load_car
from chainvec.core import Cid, format_epoch
from chainvec.engine import AppliedResult, Driver, ExecuteTipsetParams
from chainvec.errors import DeterminismViolation, HarnessError, InputError, MissingObjectError
from chainvec.observability import Layer, Reporter, get_logger
from chainvec.rand import ReplayingRand
from chainvec.schema import CLASS_MESSAGE, CLASS_TIPSET, Receipt, TestVector, Variant

log = get_logger("conformance", Layer.REPLAY)

# Applied when a message vector declares no base fee.
DEFAULT_BASE_FEE = 100

FAILURE_DETERMINISM = "determinism-violation"
FAILURE_MISSING_OBJECT = "missing-object"
FAILURE_ERROR = "error"
FAILURE_MISMATCH = "mismatch"

Fallback = Optional[Callable[[Cid], bytes]]


@dataclass
class VariantResult:
    """Outcome of one variant."""
    variant: str
    passed: bool
    diffs: List[str] = field(default_factory=list)
    failure: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"variant": self.variant, "passed": self.passed}
        if self.diffs:
            d["diffs"] = list(self.diffs)
        if self.failure:
            d["failure"] = self.failure
        return d


@dataclass
class VectorOutcome:
    """Outcome of every variant of one vector."""
    id: str
    variants: List[VariantResult] = field(default_factory=list)
    source: str = ""

    @property
    def passed(self) -> bool:
        return all(v.passed for v in self.variants)

    @property
    def diffs(self) -> List[str]:
        return [d for v in self.variants for d in v.diffs]

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "id": self.id,
            "passed": self.passed,
            "variants": [v.to_dict() for v in self.variants],
        }
        if self.source:
            d["source"] = self.source
        return d


def load_vector_store(vector: TestVector, fallback: Fallback = None) -> Blockstore:
    """A fresh store holding the vector's archive, optionally backed by the node."""
    local = MemoryBlockstore()
    load_car(local, vector.car)
    if fallback is None:
        return local
    return ProxyingBlockstore(local, fallback)


def compare_receipt(reporter: Reporter, index: int, expected: Receipt, actual: AppliedResult) -> None:
    if expected.exit_code != actual.exit_code:
        reporter.errorf(
            "receipt %d: exit code of msg did not match; expected: %d, got: %d",
            index, expected.exit_code, actual.exit_code,
        )
    if expected.return_value != actual.return_value:
        reporter.errorf(
            "receipt %d: return value mismatch; expected: %s, got: %s",
            index, expected.return_value.hex(), actual.return_value.hex(),
        )
    if expected.gas_used != actual.gas_used:
        reporter.errorf(
            "receipt %d: gas used mismatch; expected: %d, got: %d",
            index, expected.gas_used, actual.gas_used,
        )


def compare_state_root(reporter: Reporter, expected: Cid, actual: Cid) -> None:
    if expected != actual:
        reporter.errorf("wrong post root cid; expected %s, but got %s", expected, actual)


def _compare_receipt_count(reporter: Reporter, expected: int, actual: int) -> None:
    if expected != actual:
        reporter.errorf("receipt count mismatch; expected: %d, got: %d", expected, actual)


def execute_tipset_vector(
    reporter: Reporter,
    vector: TestVector,
    variant: Variant,
    driver: Driver,
    fallback: Fallback = None,
) -> Cid:
    """Apply every tipset of a tipset-class vector and compare its postconditions.

    Returns the final state root.
    """
    store = load_vector_store(vector, fallback)
    post = vector.postconditions
    root = vector.preconditions.state_tree.root_cid
    receipt_index = 0

    for i, ts in enumerate(vector.apply_tipsets):
        exec_epoch = variant.epoch + ts.epoch_offset
        params = ExecuteTipsetParams(
            preroot=root,
            parent_epoch=exec_epoch - 1,
            tipset=ts,
            exec_epoch=exec_epoch,
            rand=ReplayingRand(reporter, vector.randomness),
            network_version=variant.nv,
        )
        reporter.logf("executing tipset %d at epoch %s", i, format_epoch(exec_epoch))
        result = driver.execute_tipset(store, params)

        for applied in result.applied_results:
            if receipt_index < len(post.receipts):
                compare_receipt(reporter, receipt_index, post.receipts[receipt_index], applied)
            receipt_index += 1

        if i < len(post.receipts_roots):
            if post.receipts_roots[i] != result.receipts_root:
                reporter.errorf(
                    "post receipts root of tipset %d did not match; expected: %s, got: %s",
                    i, post.receipts_roots[i], result.receipts_root,
                )
        else:
            reporter.errorf("no expected receipts root for tipset %d", i)
        root = result.post_state_root

    _compare_receipt_count(reporter, len(post.receipts), receipt_index)
    compare_state_root(reporter, post.state_tree.root_cid, root)
    return root


def execute_message_vector(
    reporter: Reporter,
    vector: TestVector,
    variant: Variant,
    driver: Driver,
    fallback: Fallback = None,
) -> Cid:
    """Apply every message of a message-class vector in order and compare."""
    store = load_vector_store(vector, fallback)
    post = vector.postconditions
    root = vector.preconditions.state_tree.root_cid
    basefee = vector.preconditions.basefee if vector.preconditions.basefee is not None else DEFAULT_BASE_FEE
    rand = ReplayingRand(reporter, vector.randomness)

    for i, m in enumerate(vector.apply_messages):
        epoch = variant.epoch + (m.epoch_offset or 0)
        root, applied = driver.execute_message(store, root, epoch, m.bytes, basefee, variant.nv, rand)
        if i < len(post.receipts):
            compare_receipt(reporter, i, post.receipts[i], applied)

    _compare_receipt_count(reporter, len(post.receipts), len(vector.apply_messages))
    compare_state_root(reporter, post.state_tree.root_cid, root)
    return root


_EXECUTORS = {
    CLASS_MESSAGE: execute_message_vector,
    CLASS_TIPSET: execute_tipset_vector,
}


def _run_variant(
    reporter: Reporter,
    vector: TestVector,
    variant: Variant,
    driver: Driver,
    fallback: Fallback,
) -> VariantResult:
    child = reporter.child(f"{vector.meta.id} {variant.id}")
    failure = ""
    try:
        _EXECUTORS[vector.class_](child, vector, variant, driver, fallback)
    except DeterminismViolation as e:
        failure = FAILURE_DETERMINISM
        child.errorf("determinism violation: %s", e)
    except MissingObjectError as e:
        failure = FAILURE_MISSING_OBJECT
        child.errorf("missing object: %s", e)
    except HarnessError as e:
        failure = FAILURE_ERROR
        child.errorf("execution failed: %s", e)

    if child.failed and not failure:
        failure = FAILURE_MISMATCH
    if child.failed:
        child.log(f"test vector failed for variant {variant.id}")
    else:
        child.log(f"test vector succeeded for variant {variant.id}")
    return VariantResult(variant=variant.id, passed=not child.failed, diffs=child.diffs, failure=failure)


def execute_test_vector(
    reporter: Reporter,
    vector: TestVector,
    driver: Driver,
    fallback: Fallback = None,
) -> VectorOutcome:
    """Run every variant of ``vector``; each variant's outcome is independent."""
    if vector.class_ not in _EXECUTORS:
        raise InputError(f"test vector class {vector.class_} not supported")

    reporter.log(f"executing test vector: {vector.meta.id}")
    outcome = VectorOutcome(id=vector.meta.id)
    for variant in vector.preconditions.variants:
        result = _run_variant(reporter, vector, variant, driver, fallback)
        outcome.variants.append(result)
        log.debug("variant finished", vector=vector.meta.id, variant=variant.id, passed=result.passed)
    return outcome
