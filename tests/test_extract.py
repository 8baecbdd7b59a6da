"""Extraction against the simulated chain."""

import io
import json
import re

import pytest

import chainsim
from chainvec.blockstore import MemoryBlockstore
from chainvec.car import gunzip, read_car
from chainvec.config import RETAIN_ACCESSED_CIDS
from chainvec.errors import ConfigError, ExecutionError, FetchError, InputError
from chainvec.extract import (
    ExtractOptions,
    do_extract_tipset,
    epoch_filename,
    extract_tipset_range,
    resolve_destination,
    run_extract,
    validate_options,
)
from chainvec.schema import CLASS_TIPSET, load_vector_file


def _quiet():
    from chainvec.observability import Reporter
    return Reporter([io.StringIO()])


def test_single_tipset_vector_shape(sim, driver):
    ts = sim.by_height(100)
    v = do_extract_tipset(sim, driver, ts, reporter=_quiet())

    assert v.class_ == CLASS_TIPSET
    assert v.meta.id == "@100"
    assert len(v.apply_tipsets) == 1
    assert len(v.postconditions.receipts) == 2
    assert len(v.postconditions.receipts_roots) == 1
    assert v.preconditions.variants[0].epoch == 100
    assert v.preconditions.variants[0].nv == 10
    assert v.preconditions.variants[0].id == "genesis"
    assert v.selector == {"min_protocol_version": "genesis"}
    assert v.preconditions.state_tree.root_cid == ts.parent_state
    assert v.postconditions.state_tree.root_cid == sim.by_height(101).parent_state
    assert v.apply_tipsets[0].basefee == chainsim.BASE_FEE
    assert v.randomness == ()


def test_messages_packed_bls_first(sim, driver):
    ts = sim.by_height(100)
    v = do_extract_tipset(sim, driver, ts, reporter=_quiet())
    block = v.apply_tipsets[0].blocks[0]
    assert block.miner_addr == "t01000"
    assert block.win_count == 1
    assert block.messages == (chainsim.msg("alice", "bob", 1000, 0), chainsim.msg("bob", "carol", 500, 0))


def test_provenance_entries(sim, driver):
    from chainvec import __version__

    ts = sim.by_height(102)
    v = do_extract_tipset(sim, driver, ts, reporter=_quiet())
    gen = {g.source: g.version for g in v.meta.gen}
    assert gen["network:simnet"] == ""
    assert gen[f"tipset:{ts.key}"] == ""
    assert gen["node"] == chainsim.NODE_VERSION
    assert gen["chainvec"] == __version__
    assert v.preconditions.variants[0].nv == 11


def test_randomness_is_recorded(sim, driver):
    v = do_extract_tipset(sim, driver, sim.by_height(101), reporter=_quiet())
    assert [(m.on.kind, m.on.entropy) for m in v.randomness] == [("chain", b"alice"), ("beacon", b"dave")]
    receipts = v.postconditions.receipts
    assert receipts[1].return_value == v.randomness[0].ret


def test_archive_is_minimal(sim, driver):
    """Only traced objects (plus roots) make it into the archive."""
    v = do_extract_tipset(sim, driver, sim.by_height(103), reporter=_quiet())
    header, blocks = read_car(io.BytesIO(gunzip(v.car)))
    cids = {cid for cid, _ in blocks}

    assert v.preconditions.state_tree.root_cid in cids
    assert v.postconditions.state_tree.root_cid in cids
    assert v.postconditions.receipts_roots[0] in cids
    # block 103 only touches the miner's account, so most of the state is pruned
    assert len(blocks) < len(sim.store)
    assert len(cids) == len(blocks)


def test_extraction_does_not_flush(sim):
    engine = chainsim.SimEngine()
    driver = chainsim.make_driver(disable_flush=True, engine=engine)
    do_extract_tipset(sim, driver, sim.by_height(100), reporter=_quiet())
    assert engine.flush_calls == [False]


def test_non_tracing_store_is_a_config_error(sim, driver):
    def plain_stores(client):
        store = MemoryBlockstore()
        return store, store

    with pytest.raises(ConfigError, match="no tracing blockstore"):
        do_extract_tipset(sim, driver, sim.by_height(100), stores=plain_stores)


def test_engine_failure_propagates_for_single_tipset(sim, tmp_path):
    driver = chainsim.make_driver(engine=chainsim.BrokenEngine())
    opts = ExtractOptions(tsk="@100", file=str(tmp_path / "v.json"))
    with pytest.raises(ExecutionError):
        run_extract(sim, driver, opts, reporter=_quiet())
    assert not (tmp_path / "v.json").exists()


class TestRunExtract:
    def test_single_to_file(self, sim, driver, tmp_path):
        out = tmp_path / "v.json"
        outcome = run_extract(sim, driver, ExtractOptions(tsk="@101", file=str(out)), reporter=_quiet())
        assert outcome.written == [out]
        assert load_vector_file(out).meta.id == "@101"

    def test_single_into_existing_directory(self, sim, driver, tmp_path):
        outcome = run_extract(sim, driver, ExtractOptions(tsk="@head", file=str(tmp_path)), reporter=_quiet())
        assert outcome.written == [tmp_path / "epoch-104.json"]

    def test_by_key(self, sim, driver, tmp_path):
        ts = sim.by_height(102)
        out = tmp_path / "k.json"
        run_extract(sim, driver, ExtractOptions(tsk=str(ts.key), file=str(out)), reporter=_quiet())
        assert load_vector_file(out).meta.id == "@102"

    def test_degenerate_range_is_a_single_extraction(self, sim, driver, tmp_path):
        single = tmp_path / "single.json"
        ranged = tmp_path / "ranged.json"
        run_extract(sim, driver, ExtractOptions(tsk="@101", file=str(single)), reporter=_quiet())
        run_extract(sim, driver, ExtractOptions(tsk="@101..@101", file=str(ranged)), reporter=_quiet())
        assert json.loads(single.read_text()) == json.loads(ranged.read_text())

    def test_range_walks_down_from_right(self, sim, driver, tmp_path):
        outdir = tmp_path / "vectors"
        outcome = run_extract(sim, driver, ExtractOptions(tsk="@100..@104", file=str(outdir)), reporter=_quiet())

        assert [p.name for p in outcome.written] == [epoch_filename(h) for h in (104, 103, 102, 101, 100)]
        assert sorted(p.name for p in outdir.iterdir()) == sorted(p.name for p in outcome.written)

    def test_range_post_roots_chain_together(self, sim, driver, tmp_path):
        run_extract(sim, driver, ExtractOptions(tsk="@100..@102", file=str(tmp_path / "r")), reporter=_quiet())
        v100 = load_vector_file(tmp_path / "r" / "epoch-100.json")
        v101 = load_vector_file(tmp_path / "r" / "epoch-101.json")
        assert v100.postconditions.state_tree.root_cid == v101.preconditions.state_tree.root_cid

    def test_range_into_existing_file_is_rejected(self, sim, driver, tmp_path):
        f = tmp_path / "file"
        f.write_text("x")
        with pytest.raises(InputError, match="not a directory"):
            run_extract(sim, driver, ExtractOptions(tsk="@100..@101", file=str(f)), reporter=_quiet())

    def test_inverted_range_is_rejected(self, sim, driver, tmp_path):
        with pytest.raises(InputError, match="above"):
            run_extract(sim, driver, ExtractOptions(tsk="@103..@101", file=str(tmp_path / "r")), reporter=_quiet())

    def test_missing_parent_halts_the_walk(self, sim, driver, tmp_path):
        sim.missing_tipsets.add(str(sim.by_height(102).key))
        with pytest.raises(FetchError, match="parent tipset .* height 103"):
            run_extract(sim, driver, ExtractOptions(tsk="@100..@104", file=str(tmp_path / "r")), reporter=_quiet())
        assert sorted(p.name for p in (tmp_path / "r").iterdir()) == ["epoch-103.json", "epoch-104.json"]

    def test_fetch_failure_aborts_the_range(self, sim, driver, tmp_path):
        ts = sim.by_height(102)
        for header in ts.blocks:
            del sim.messages[header.cid]

        with pytest.raises(FetchError, match=r"tipset .* at height 102: no messages for block"):
            run_extract(sim, driver, ExtractOptions(tsk="@101..@103", file=str(tmp_path / "r")), reporter=_quiet())
        assert sorted(p.name for p in (tmp_path / "r").iterdir()) == ["epoch-103.json"]

    def test_engine_failure_aborts_the_range(self, sim, tmp_path):
        class FailsAt102(chainsim.SimEngine):
            def execute_tipset(self, store, params, flush):
                if params.exec_epoch == 102:
                    raise RuntimeError("boom")
                return super().execute_tipset(store, params, flush)

        driver = chainsim.make_driver(engine=FailsAt102())
        with pytest.raises(ExecutionError, match=re.escape(str(sim.by_height(102).key))):
            run_extract(sim, driver, ExtractOptions(tsk="@101..@103", file=str(tmp_path / "r")), reporter=_quiet())
        assert not (tmp_path / "r" / "epoch-101.json").exists()


class TestValidateOptions:
    def test_bad_retain_fails_before_any_network_call(self, tmp_path):
        class Untouchable:
            def __getattr__(self, name):
                raise AssertionError(f"client used: {name}")

        opts = ExtractOptions(tsk="@100", file=str(tmp_path / "v.json"), retain="everything")
        with pytest.raises(InputError, match=RETAIN_ACCESSED_CIDS):
            run_extract(Untouchable(), chainsim.make_driver(), opts)

    @pytest.mark.parametrize("tsk,file,match", [
        ("", "out.json", "tipset key cannot be empty"),
        ("@1", "", "output file cannot be empty"),
        ("@1..@2..@3", "out", "unrecognized tipset format"),
    ])
    def test_rejects(self, tsk, file, match):
        with pytest.raises(InputError, match=match):
            validate_options(ExtractOptions(tsk=tsk, file=file))

    def test_returns_refs(self):
        assert validate_options(ExtractOptions(tsk="@1..@head", file="d")) == ["@1", "@head"]


def test_resolve_destination(tmp_path):
    assert resolve_destination(str(tmp_path), 7) == tmp_path / "epoch-7.json"
    assert resolve_destination(str(tmp_path / "x.json"), 7) == tmp_path / "x.json"


def test_range_rejects_non_ancestor(sim, driver, tmp_path):
    forked = chainsim.build_chain([[("t09999", 1, [], [])]] * 3)
    with pytest.raises(InputError, match="not an ancestor"):
        extract_tipset_range(sim, driver, forked.by_height(101), sim.by_height(103), tmp_path, reporter=_quiet())
