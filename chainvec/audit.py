"""Closure audit of a vector's embedded archive.

Checks performed:
1. The archive decompresses and its framing parses
2. The header roots include the vector's pre- and post-state roots
3. Every root is present as a block
4. Every block's digest recomputes to its identifier
5. Every dagjson block is in canonical form

Links leaving the archive are expected (they are the parts of the state the
traced execution never touched) and are counted, not failed.
"""

from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import Any, Dict, List, Set

from chainvec.car import gunzip, read_car
from chainvec.core import CODEC_DAG_JSON, Cid, block_links, canonical_json_bytes, decode_object
from chainvec.errors import SerializationError
from chainvec.schema import TestVector


@dataclass
class AuditResult:
    """Result of an archive closure audit."""
    passed: bool = True
    total_blocks: int = 0
    verified_blocks: int = 0
    archive_bytes: int = 0
    roots: List[str] = field(default_factory=list)
    missing_roots: List[str] = field(default_factory=list)
    digest_mismatches: List[Dict[str, Any]] = field(default_factory=list)
    non_canonical_blocks: List[str] = field(default_factory=list)
    pruned_links: int = 0
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "total_blocks": self.total_blocks,
            "verified_blocks": self.verified_blocks,
            "archive_bytes": self.archive_bytes,
            "roots": self.roots,
            "missing_roots": self.missing_roots,
            "digest_mismatches": self.digest_mismatches,
            "non_canonical_blocks": self.non_canonical_blocks,
            "pruned_links": self.pruned_links,
            "warnings": self.warnings,
        }


def _is_canonical(data: bytes) -> bool:
    try:
        return canonical_json_bytes(decode_object(data)) == data
    except (UnicodeDecodeError, ValueError):
        return False


def audit_vector_archive(vector: TestVector) -> AuditResult:
    """Audit the archive embedded in ``vector``."""
    result = AuditResult(archive_bytes=len(vector.car))

    try:
        header, blocks = read_car(io.BytesIO(gunzip(vector.car)))
    except SerializationError as e:
        result.passed = False
        result.warnings.append(f"Unreadable archive: {e}")
        return result

    result.roots = [str(r) for r in header.roots]
    result.total_blocks = len(blocks)

    expected_roots = [vector.preconditions.state_tree.root_cid, vector.postconditions.state_tree.root_cid]
    for root in expected_roots:
        if root not in header.roots:
            result.passed = False
            result.missing_roots.append(str(root))

    present: Set[Cid] = {cid for cid, _ in blocks}
    for root in header.roots:
        if root not in present and str(root) not in result.missing_roots:
            result.passed = False
            result.missing_roots.append(str(root))

    for cid, data in blocks:
        if not cid.verify(data):
            result.passed = False
            result.digest_mismatches.append({"cid": str(cid), "size": len(data)})
            continue
        if cid.codec == CODEC_DAG_JSON:
            if not _is_canonical(data):
                result.passed = False
                result.non_canonical_blocks.append(str(cid))
                continue
            result.pruned_links += sum(1 for link in block_links(cid, data) if link not in present)
        result.verified_blocks += 1

    return result
