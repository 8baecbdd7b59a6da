import pytest

import chainsim
from chainvec.blockstore import MemoryBlockstore
from chainvec.engine import Driver, DriverOptions, ExecuteTipsetParams, load_engine, results_to_receipts
from chainvec.errors import ConfigError, ExecutionError
from chainvec.schema import Block, Receipt, Tipset


def _params(sim, height=100):
    ts = sim.by_height(height)
    msgs = sim.messages[ts.blocks[0].cid].packed()
    return ExecuteTipsetParams(
        preroot=ts.parent_state,
        parent_epoch=height - 1,
        tipset=Tipset(basefee=chainsim.BASE_FEE, blocks=(Block("t01000", 1, tuple(msgs)),)),
        exec_epoch=height,
        rand=chainsim.ClientRand(sim, ts.key),
    )


@pytest.mark.parametrize("disable_flush", [False, True])
def test_driver_passes_flush_flag(sim, disable_flush):
    engine = chainsim.SimEngine()
    driver = Driver(engine, DriverOptions(disable_flush=disable_flush))
    driver.execute_tipset(sim.store, _params(sim))
    assert engine.flush_calls == [not disable_flush]


def test_driver_result_matches_chain(sim):
    result = chainsim.make_driver().execute_tipset(sim.store, _params(sim))
    assert result.post_state_root == sim.by_height(101).parent_state
    assert [r.exit_code for r in result.applied_results] == [0, 0]


def test_engine_exceptions_become_execution_errors(sim):
    driver = chainsim.make_driver(engine=chainsim.BrokenEngine())
    with pytest.raises(ExecutionError, match="epoch 100: engine exploded"):
        driver.execute_tipset(sim.store, _params(sim))


def test_harness_errors_pass_through(sim):
    from chainvec.errors import MissingObjectError

    with pytest.raises(MissingObjectError):
        chainsim.make_driver().execute_tipset(MemoryBlockstore(), _params(sim))


def test_execute_message_applies_one_message(sim):
    root = sim.genesis_root
    driver = chainsim.make_driver()
    new_root, applied = driver.execute_message(
        sim.store, root, 100, chainsim.msg("alice", "bob", 5, 0), 100, 10, chainsim.ClientRand(sim, sim.chain_head().key)
    )
    assert applied.exit_code == 0
    assert new_root != root


def test_load_engine():
    engine = load_engine("chainsim:make_engine")
    assert isinstance(engine, chainsim.SimEngine)


@pytest.mark.parametrize("spec,match", [
    ("", "must look like"),
    ("chainsim", "must look like"),
    ("no_such_module_xyz:factory", "cannot import"),
    ("chainsim:no_such_factory", "not found"),
    ("chainsim:msg", "not an ExecutionEngine"),
])
def test_load_engine_rejects_bad_specs(spec, match):
    with pytest.raises(ConfigError, match=match):
        load_engine(spec, sender="alice")


def test_results_to_receipts():
    from chainvec.engine import AppliedResult

    assert results_to_receipts([AppliedResult(0, b"r", 10)]) == (Receipt(0, b"r", 10),)
