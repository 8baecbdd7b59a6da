import json

import pytest

import chainsim
from chainvec.core import Cid
from chainvec.errors import SerializationError
from chainvec.schema import (
    CLASS_TIPSET,
    Block,
    Metadata,
    Postconditions,
    Preconditions,
    RandomnessMatch,
    RandomnessRule,
    Receipt,
    StateTree,
    TestVector,
    Tipset,
    Variant,
    dumps_vector,
    load_vector_file,
    loads_vector,
    parse_vector,
    validate_vector_dict,
    write_vector,
)


def _vector() -> TestVector:
    pre = Cid.for_data(b"pre", "dagjson")
    post = Cid.for_data(b"post", "dagjson")
    return TestVector(
        class_=CLASS_TIPSET,
        meta=Metadata(id="@100"),
        selector={"min_protocol_version": "genesis"},
        randomness=(RandomnessMatch(RandomnessRule("chain", 7, 100, b"alice"), b"\x01\x02"),),
        car=b"\x1f\x8b",
        preconditions=Preconditions(
            variants=(Variant("genesis", 100, 10),),
            state_tree=StateTree(pre),
            basefee=100,
        ),
        apply_tipsets=(Tipset(basefee=100, blocks=(Block("t01000", 1, (chainsim.msg("alice"),)),)),),
        postconditions=Postconditions(
            state_tree=StateTree(post),
            receipts=(Receipt(0, b"", 150),),
            receipts_roots=(Cid.for_data(b"rcpt", "dagjson"),),
        ),
    )


def test_vector_json_round_trip():
    v = _vector()
    assert loads_vector(dumps_vector(v)) == v
    assert loads_vector(dumps_vector(v, indent=None)) == v


def test_serialized_vector_uses_links_and_base64():
    d = _vector().to_dict()
    assert d["class"] == "tipset"
    assert d["preconditions"]["state_tree"]["root_cid"]["/"].startswith("dagjson:")
    assert d["car"] == "H4s="
    assert d["randomness"][0]["on"]["entropy"] == "YWxpY2U="
    assert "apply_messages" not in d
    assert validate_vector_dict(d) == []


def test_validation_reports_json_paths():
    d = _vector().to_dict()
    d["preconditions"]["variants"] = []
    d["postconditions"]["state_tree"]["root_cid"] = {"/": "nope"}
    errors = validate_vector_dict(d)
    assert any(e.startswith("$.preconditions.variants") for e in errors)
    assert any(e.startswith("$.postconditions.state_tree.root_cid") for e in errors)


def test_parse_vector_rejects_invalid_documents():
    with pytest.raises(SerializationError, match="JSON object"):
        parse_vector([1, 2])
    with pytest.raises(SerializationError, match="schema validation"):
        parse_vector({"class": "tipset"})
    with pytest.raises(SerializationError, match="malformed"):
        parse_vector({"class": "tipset"}, validate=False)
    with pytest.raises(SerializationError, match="decode"):
        loads_vector("{not json")


def test_unknown_class_still_parses():
    d = _vector().to_dict()
    d["class"] = "blocks"
    assert parse_vector(d).class_ == "blocks"


def test_write_vector_is_atomic(tmp_path):
    path = tmp_path / "nested" / "v.json"
    write_vector(_vector(), path)
    assert load_vector_file(path) == _vector()
    assert not (tmp_path / "nested" / "v.json.tmp").exists()
    assert json.loads(path.read_text())["meta"]["id"] == "@100"


def test_load_vector_file_missing(tmp_path):
    with pytest.raises(SerializationError, match="failed to open"):
        load_vector_file(tmp_path / "absent.json")


def test_load_vector_file_not_utf8(tmp_path):
    path = tmp_path / "bad.json"
    path.write_bytes(b"\xff\xfe\x00garbage")
    with pytest.raises(SerializationError, match="failed to decode"):
        load_vector_file(path)


def test_deeply_nested_json_is_a_decode_error():
    with pytest.raises(SerializationError, match="failed to decode"):
        loads_vector("[" * 100000 + "]" * 100000)
