"""Tipset extraction: re-execute real chain history into test vectors.

A single reference (``@<height>``, ``@head`` or a tipset key) yields one
vector. A range ``left..right`` walks backwards from ``right`` along parent
links down to ``left`` and writes one ``epoch-<height>.json`` per tipset.
"""

from __future__ import annotations

import pathlib
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from chainvec import __version__
from chainvec.blockstore import Blockstore, MemoryBlockstore, ProxyingBlockstore, TraceableBlockstore, TracingBlockstore
from chainvec.chain import ChainClient, TipSet, parse_tipset_ref
from chainvec.codenames import get_protocol_codename
from chainvec.config import RETAIN_ACCESSED_CIDS
from chainvec.core import format_epoch
from chainvec.engine import Driver, ExecuteTipsetParams, results_to_receipts
from chainvec.errors import (
    ConfigError,
    DeterminismViolation,
    FetchError,
    HarnessError,
    InputError,
    MissingObjectError,
    SerializationError,
)
from chainvec.observability import Layer, Reporter, get_logger
from chainvec.rand import RecordingRand
from chainvec.schema import (
    CLASS_TIPSET,
    SELECTOR_MIN_PROTOCOL_VERSION,
    Block,
    GenerationData,
    Metadata,
    Postconditions,
    Preconditions,
    StateTree,
    TestVector,
    Tipset,
    Variant,
    validate_vector_dict,
    write_vector,
)
from chainvec.surgeon import Surgeon

log = get_logger("extract", Layer.EXTRACT)

RANGE_SEPARATOR = ".."

StoreFactory = Callable[[ChainClient], Tuple[Blockstore, Blockstore]]


@dataclass
class ExtractOptions:
    """What to extract and where to write it."""
    tsk: str
    file: str
    retain: str = RETAIN_ACCESSED_CIDS
    schedule: Optional[Sequence[Tuple[int, str]]] = None


def default_stores(client: ChainClient) -> Tuple[Blockstore, Blockstore]:
    """Return ``(execution store, archive source)``.

    The engine runs against a tracing store over a read-through cache of the
    node; the archive is read from the cache directly so writing it does not
    touch the trace.
    """
    proxy = ProxyingBlockstore(MemoryBlockstore(), client.chain_read_obj)
    return TracingBlockstore(proxy), proxy


def epoch_filename(height: int) -> str:
    return f"epoch-{format_epoch(height)}.json"


def resolve_destination(file: str, height: int) -> pathlib.Path:
    """An existing directory receives ``epoch-<height>.json``; any other path is the file."""
    path = pathlib.Path(file)
    if path.is_dir():
        return path / epoch_filename(height)
    return path


def prepare_range_dir(file: str) -> pathlib.Path:
    path = pathlib.Path(file)
    if path.exists() and not path.is_dir():
        raise InputError(f"path {path} is not a directory")
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise InputError(f"failed to create directory {path}: {e}") from e
    return path


def _pack_blocks(client: ChainClient, ts: TipSet) -> List[Block]:
    blocks: List[Block] = []
    for header in ts.blocks:
        msgs = client.get_block_messages(header.cid)
        packed = msgs.packed()
        log.info("block messages fetched", block=str(header.cid), messages=len(packed))
        blocks.append(Block(miner_addr=header.miner, win_count=header.win_count, messages=tuple(packed)))
    return blocks


def do_extract_tipset(
    client: ChainClient,
    driver: Driver,
    ts: TipSet,
    reporter: Optional[Reporter] = None,
    schedule: Optional[Sequence[Tuple[int, str]]] = None,
    stores: StoreFactory = default_stores,
) -> TestVector:
    """Execute one tipset with tracing and assemble its vector."""
    reporter = reporter or Reporter()
    log.info("extracting tipset", tipset=str(ts.key), height=format_epoch(ts.height), blocks=len(ts.blocks))

    blocks = _pack_blocks(client, ts)
    root = ts.parent_state
    basefee = ts.blocks[0].parent_base_fee
    tipset = Tipset(basefee=basefee, blocks=tuple(blocks))
    log.info("base state", root=str(root), basefee=basefee)

    exec_store, archive_source = stores(client)
    if not exec_store.supports_tracing or not isinstance(exec_store, TraceableBlockstore):
        raise ConfigError(
            f"requested '{RETAIN_ACCESSED_CIDS}' state retention, but no tracing blockstore was present"
        )

    rand = RecordingRand(reporter, client, ts.key)
    params = ExecuteTipsetParams(
        preroot=root,
        parent_epoch=ts.height - 1,
        tipset=tipset,
        exec_epoch=ts.height,
        rand=rand,
    )

    exec_store.start_tracing()
    try:
        result = driver.execute_tipset(exec_store, params)
    finally:
        accessed = exec_store.finish_tracing()
    log.info("tipset executed", accessed=len(accessed), post_root=str(result.post_state_root))

    car = Surgeon(archive_source).build_archive(
        accessed, root, result.post_state_root, result.receipts_root
    )

    codename = get_protocol_codename(ts.height, schedule)
    nv = client.state_network_version(ts.key)
    node_version = client.version()
    network = client.state_network_name()

    return TestVector(
        class_=CLASS_TIPSET,
        meta=Metadata(
            id="@" + format_epoch(ts.height),
            gen=(
                GenerationData(source=f"network:{network}"),
                GenerationData(source=f"tipset:{ts.key}"),
                GenerationData(source="node", version=node_version),
                GenerationData(source="chainvec", version=__version__),
            ),
        ),
        selector={SELECTOR_MIN_PROTOCOL_VERSION: codename},
        randomness=rand.recorded(),
        car=car,
        preconditions=Preconditions(
            variants=(Variant(id=codename, epoch=ts.height, nv=nv),),
            state_tree=StateTree(root_cid=root),
            basefee=basefee,
        ),
        apply_tipsets=(tipset,),
        postconditions=Postconditions(
            state_tree=StateTree(root_cid=result.post_state_root),
            receipts=results_to_receipts(list(result.applied_results)),
            receipts_roots=(result.receipts_root,),
        ),
    )


def _write(vector: TestVector, path: pathlib.Path) -> pathlib.Path:
    errors = validate_vector_dict(vector.to_dict())
    if errors:
        raise SerializationError("extracted vector failed schema validation: " + "; ".join(errors))
    write_vector(vector, path)
    log.info("vector written", path=str(path), id=vector.meta.id)
    return path


def extract_tipset(
    client: ChainClient,
    driver: Driver,
    ts: TipSet,
    path: pathlib.Path,
    reporter: Optional[Reporter] = None,
    schedule: Optional[Sequence[Tuple[int, str]]] = None,
    stores: StoreFactory = default_stores,
) -> pathlib.Path:
    """Extract ``ts`` and write its vector to ``path``."""
    vector = do_extract_tipset(client, driver, ts, reporter=reporter, schedule=schedule, stores=stores)
    return _write(vector, path)


@dataclass
class ExtractOutcome:
    """Vectors written by one extraction run, in the order they were written."""
    written: List[pathlib.Path] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"written": [str(p) for p in self.written]}


def _with_context(e: HarnessError, message: str) -> HarnessError:
    """Rebuild ``e`` with ``message``, keeping its class and payload."""
    if isinstance(e, MissingObjectError):
        return MissingObjectError(e.cid, message)
    if isinstance(e, DeterminismViolation):
        return DeterminismViolation(message, e.request)
    return type(e)(message)


def extract_tipset_range(
    client: ChainClient,
    driver: Driver,
    left: TipSet,
    right: TipSet,
    directory: pathlib.Path,
    reporter: Optional[Reporter] = None,
    schedule: Optional[Sequence[Tuple[int, str]]] = None,
    stores: StoreFactory = default_stores,
) -> ExtractOutcome:
    """Walk from ``right`` back to ``left`` (inclusive), one vector per tipset.

    Tipsets are visited in strictly decreasing height order. The first
    failure aborts the whole range; vectors already written stay on disk.
    """
    if left.height > right.height:
        raise InputError(
            f"range start {left.key} (height {format_epoch(left.height)}) is above "
            f"range end {right.key} (height {format_epoch(right.height)})"
        )
    if left.height == right.height and left.key != right.key:
        raise InputError(f"tipsets {left.key} and {right.key} are distinct tipsets at the same height")

    outcome = ExtractOutcome()
    curr = right
    while True:
        log.info("extracting tipset in range", tipset=str(curr.key), height=format_epoch(curr.height))
        try:
            outcome.written.append(extract_tipset(
                client, driver, curr, directory / epoch_filename(curr.height),
                reporter=reporter, schedule=schedule, stores=stores,
            ))
        except (ConfigError, InputError):
            raise
        except HarnessError as e:
            log.error(
                "tipset extraction failed; aborting range",
                error_code=type(e).__name__,
                tipset=str(curr.key),
                height=format_epoch(curr.height),
                error=str(e),
            )
            raise _with_context(
                e, f"failed to extract tipset {curr.key} at height {format_epoch(curr.height)}: {e}"
            ) from e

        if curr.key == left.key:
            return outcome

        parent_key = curr.parents
        try:
            parent = client.get_tipset(parent_key)
        except FetchError as e:
            raise FetchError(
                f"failed to get parent tipset {parent_key} of tipset at height {format_epoch(curr.height)}: {e}"
            ) from e
        if parent.height < left.height:
            raise InputError(
                f"walked past height {format_epoch(left.height)} without reaching {left.key}; "
                f"it is not an ancestor of {right.key}"
            )
        curr = parent


def validate_options(opts: ExtractOptions) -> List[str]:
    """Reject bad options before any network call; returns the tipset references."""
    if opts.retain != RETAIN_ACCESSED_CIDS:
        raise InputError(f"tipset extraction only supports '{RETAIN_ACCESSED_CIDS}' state retention")
    if not opts.tsk:
        raise InputError("tipset key cannot be empty")
    if not opts.file:
        raise InputError("output file cannot be empty")

    refs = opts.tsk.split(RANGE_SEPARATOR)
    if len(refs) > 2:
        raise InputError("unrecognized tipset format")
    return refs


def run_extract(
    client: ChainClient,
    driver: Driver,
    opts: ExtractOptions,
    reporter: Optional[Reporter] = None,
    stores: StoreFactory = default_stores,
) -> ExtractOutcome:
    """Validate ``opts`` and extract a single tipset or a range.

    Any extraction failure propagates, aborting a range at the failing tipset.
    """
    refs = validate_options(opts)

    if len(refs) == 2:
        left = parse_tipset_ref(client, refs[0])
        right = parse_tipset_ref(client, refs[1])
        if left.key != right.key:
            directory = prepare_range_dir(opts.file)
            return extract_tipset_range(client, driver, left, right, directory, reporter, opts.schedule, stores)
        ts = left
    else:
        ts = parse_tipset_ref(client, opts.tsk)

    path = resolve_destination(opts.file, ts.height)
    return ExtractOutcome(written=[extract_tipset(client, driver, ts, path, reporter, opts.schedule, stores)])
