import dataclasses
import io

import pytest

import chainsim
from chainvec.audit import audit_vector_archive
from chainvec.core import Cid, encode_object
from chainvec.extract import do_extract_tipset
from chainvec.observability import Reporter


@pytest.fixture
def vector(sim):
    return do_extract_tipset(sim, chainsim.make_driver(disable_flush=True), sim.by_height(103), reporter=Reporter([io.StringIO()]))


def test_extracted_archive_passes(vector):
    result = audit_vector_archive(vector)
    assert result.passed, result.to_dict()
    assert result.total_blocks == result.verified_blocks > 0
    assert str(vector.preconditions.state_tree.root_cid) in result.roots
    assert str(vector.postconditions.receipts_roots[0]) in result.roots
    # untouched shards of the state tree stay outside the archive
    assert result.pruned_links > 0


def test_digest_mismatch(vector):
    roots, blocks = chainsim.archive_blocks(vector.car)
    cid, data = blocks[-1]
    tampered = blocks[:-1] + [(cid, data + b" ")]
    result = audit_vector_archive(dataclasses.replace(vector, car=chainsim.rebuild_archive(roots, tampered)))
    assert not result.passed
    assert result.digest_mismatches == [{"cid": str(cid), "size": len(data) + 1}]


def test_non_canonical_block(vector):
    roots, blocks = chainsim.archive_blocks(vector.car)
    loose = b'{ "z": 1,  "a": 2 }'
    cid = Cid.for_data(loose, "dagjson")
    result = audit_vector_archive(dataclasses.replace(vector, car=chainsim.rebuild_archive(roots, blocks + [(cid, loose)])))
    assert not result.passed
    assert result.non_canonical_blocks == [str(cid)]


def test_missing_roots(vector):
    roots, blocks = chainsim.archive_blocks(vector.car)
    pre = vector.preconditions.state_tree.root_cid
    extra, _ = encode_object({"dangling": True})
    car = chainsim.rebuild_archive([r for r in roots if r != pre] + [extra], blocks)
    result = audit_vector_archive(dataclasses.replace(vector, car=car))
    assert not result.passed
    assert result.missing_roots == [str(pre), str(extra)]


def test_unreadable_archive(vector):
    result = audit_vector_archive(dataclasses.replace(vector, car=b"garbage"))
    assert not result.passed
    assert result.warnings and result.warnings[0].startswith("Unreadable archive")
