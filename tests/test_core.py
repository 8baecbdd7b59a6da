import pytest

from chainvec.core import (
    CODEC_DAG_JSON,
    CODEC_RAW,
    Cid,
    b64decode,
    b64encode,
    block_links,
    canonical_json_bytes,
    coerce_cid,
    encode_object,
    format_epoch,
    is_link,
)


def test_canonical_json_sorts_keys_and_strips_whitespace():
    assert canonical_json_bytes({"b": 1, "a": [1, 2]}) == b'{"a":[1,2],"b":1}'


def test_canonical_json_rejects_floats():
    with pytest.raises(ValueError, match="Float not allowed"):
        canonical_json_bytes({"a": {"b": 1.5}})


def test_cid_text_form_round_trips():
    cid = Cid.for_data(b"hello")
    assert cid.codec == CODEC_RAW
    assert Cid.parse(str(cid)) == cid
    assert coerce_cid(cid.to_link()) == cid
    assert coerce_cid(str(cid)) == cid


@pytest.mark.parametrize("text", ["", "nocolon", "dagjson:xyz", "cbor:" + "0" * 64])
def test_cid_parse_rejects_malformed(text):
    with pytest.raises(ValueError):
        Cid.parse(text)


def test_cid_verify_detects_tampering():
    cid = Cid.for_data(b"payload")
    assert cid.verify(b"payload")
    assert not cid.verify(b"payload!")


def test_encode_object_yields_dagjson_links_in_key_order():
    leaf_a, _ = encode_object({"v": 1})
    leaf_b, _ = encode_object({"v": 2})
    cid, data = encode_object({"z": leaf_a.to_link(), "a": [leaf_b.to_link(), {"n": 3}]})
    assert cid.codec == CODEC_DAG_JSON
    assert cid.verify(data)
    assert block_links(cid, data) == [leaf_b, leaf_a]


def test_raw_blocks_have_no_links():
    data = b'{"/": "raw:' + b"0" * 64 + b'"}'
    assert block_links(Cid.for_data(data), data) == []


def test_is_link_requires_single_slash_key():
    assert is_link({"/": "raw:" + "0" * 64})
    assert not is_link({"/": "x", "other": 1})
    assert not is_link({"/": 5})


def test_base64_helpers():
    assert b64decode(b64encode(b"\x00\xffabc")) == b"\x00\xffabc"
    assert b64decode("") == b""
    with pytest.raises(ValueError):
        b64decode("not base64!")


def test_format_epoch_is_plain_decimal():
    assert format_epoch(170001) == "170001"
    assert format_epoch(0) == "0"
