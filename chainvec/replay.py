"""Replay driver: a single vector file, a directory batch, or an ndjson stream.

Single-file mode lets errors propagate. Directory mode gives every vector its
own ``<stem>.out`` report, or ``<name>.out`` when two inputs share a stem,
tee'd to the console, and never lets one vector's failure stop the rest.
Stream mode reads one vector per line until the end
of the stream and stops at the first line that does not decode.
"""

from __future__ import annotations

import json
import pathlib
import sys
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import IO, Any, Dict, Iterator, List, Optional, Tuple

from chainvec.conformance import Fallback, VectorOutcome, execute_test_vector
from chainvec.engine import Driver
from chainvec.errors import HarnessError, InputError, SerializationError
from chainvec.observability import Layer, Reporter, get_logger
from chainvec.schema import TestVector, load_vector_file, parse_vector

log = get_logger("replay", Layer.REPLAY)

REPORT_SUFFIX = ".out"


@dataclass
class ReplayOptions:
    fallback: Fallback = None
    workers: int = 1
    validate_schema: bool = True


@dataclass
class BatchResult:
    """Per-vector outcomes of a directory or stream run."""
    outcomes: List[VectorOutcome] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)
    reports: Dict[str, str] = field(default_factory=dict)

    @property
    def passed(self) -> int:
        return sum(1 for o in self.outcomes if o.passed)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.passed + len(self.errors)

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "passed": self.passed,
            "failed": self.failed,
            "outcomes": [o.to_dict() for o in self.outcomes],
            "errors": dict(self.errors),
            "reports": dict(self.reports),
        }


def exec_vector(
    reporter: Reporter,
    vector: TestVector,
    driver: Driver,
    opts: Optional[ReplayOptions] = None,
    source: str = "",
) -> VectorOutcome:
    opts = opts or ReplayOptions()
    outcome = execute_test_vector(reporter, vector, driver, fallback=opts.fallback)
    outcome.source = source
    return outcome


def exec_vector_file(
    path: pathlib.Path,
    driver: Driver,
    opts: Optional[ReplayOptions] = None,
    reporter: Optional[Reporter] = None,
) -> VectorOutcome:
    """Decode and execute one vector file; decode and input errors propagate."""
    opts = opts or ReplayOptions()
    vector = load_vector_file(path, validate=opts.validate_schema)
    return exec_vector(reporter or Reporter(), vector, driver, opts, source=str(path))


def report_path(outdir: pathlib.Path, vector_path: pathlib.Path) -> pathlib.Path:
    return outdir / (vector_path.stem + REPORT_SUFFIX)


def report_paths(outdir: pathlib.Path, files: List[pathlib.Path]) -> Dict[pathlib.Path, pathlib.Path]:
    """Map each input to its report; inputs sharing a stem report as ``<name>.out``."""
    stems = Counter(p.stem for p in files)
    paths = {
        p: report_path(outdir, p) if stems[p.stem] == 1 else outdir / (p.name + REPORT_SUFFIX)
        for p in files
    }
    seen: Dict[pathlib.Path, pathlib.Path] = {}
    for vector_path, out_path in paths.items():
        if out_path in seen:
            raise InputError(f"{seen[out_path].name} and {vector_path.name} would both report to {out_path}")
        seen[out_path] = vector_path
    return paths


def _exec_with_report(
    path: pathlib.Path,
    out_path: pathlib.Path,
    driver: Driver,
    opts: ReplayOptions,
    console: IO[str],
) -> Tuple[pathlib.Path, pathlib.Path, Optional[VectorOutcome], str]:
    log.info("processing vector", vector=str(path), report=str(out_path))
    with open(out_path, "w", encoding="utf-8") as out:
        reporter = Reporter([console, out], prefix=path.name)
        try:
            outcome = exec_vector_file(path, driver, opts, reporter)
        except HarnessError as e:
            reporter.errorf("%s", e)
            return path, out_path, None, str(e)
        if not outcome.passed:
            reporter.log(f"vector {outcome.id} failed")
        return path, out_path, outcome, ""


def exec_vector_dir(
    path: pathlib.Path,
    outdir: Optional[pathlib.Path],
    driver: Driver,
    opts: Optional[ReplayOptions] = None,
    console: Optional[IO[str]] = None,
) -> BatchResult:
    """Execute every file in ``path`` (sorted), one report per file in ``outdir``."""
    opts = opts or ReplayOptions()
    if not outdir:
        raise InputError("no output directory provided")
    outdir = pathlib.Path(outdir)
    if outdir.exists() and not outdir.is_dir():
        raise InputError(f"output path {outdir} is not a directory")
    outdir.mkdir(parents=True, exist_ok=True)

    files = sorted(p for p in pathlib.Path(path).iterdir() if p.is_file())
    reports = report_paths(outdir, files)
    console = console or sys.stderr
    result = BatchResult()

    if opts.workers > 1:
        with ThreadPoolExecutor(max_workers=opts.workers) as pool:
            rows = list(pool.map(lambda f: _exec_with_report(f, reports[f], driver, opts, console), files))
    else:
        rows = [_exec_with_report(f, reports[f], driver, opts, console) for f in files]

    for vector_path, out_path, outcome, error in rows:
        result.reports[str(vector_path)] = str(out_path)
        if outcome is not None:
            result.outcomes.append(outcome)
        else:
            result.errors[str(vector_path)] = error

    log.info("directory run finished", passed=result.passed, failed=result.failed)
    return result


def iter_vectors(stream: IO[str], validate: bool = True) -> Iterator[TestVector]:
    """Yield one vector per non-blank line; a line that fails to decode raises."""
    for lineno, line in enumerate(stream, start=1):
        if not line.strip():
            continue
        try:
            obj = json.loads(line)
        except (json.JSONDecodeError, RecursionError) as e:
            raise SerializationError(f"failed to decode test vector on line {lineno}: {e}") from e
        yield parse_vector(obj, validate=validate)


def exec_vectors_stream(
    stream: IO[str],
    driver: Driver,
    opts: Optional[ReplayOptions] = None,
    reporter: Optional[Reporter] = None,
) -> BatchResult:
    """Execute newline-delimited vectors until end of stream."""
    opts = opts or ReplayOptions()
    reporter = reporter or Reporter()
    result = BatchResult()
    for vector in iter_vectors(stream, validate=opts.validate_schema):
        result.outcomes.append(exec_vector(reporter, vector, driver, opts, source="<stdin>"))
    return result
