import gzip
import io

import pytest

from chainsim import write_car
from chainvec.blockstore import MemoryBlockstore
from chainvec.car import (
    CarWriter,
    encode_uvarint,
    gunzip,
    load_car,
    read_car,
    read_uvarint,
)
from chainvec.core import Cid, encode_object
from chainvec.errors import SerializationError


@pytest.mark.parametrize("n", [0, 1, 127, 128, 300, 2 ** 32])
def test_uvarint(n):
    assert read_uvarint(io.BytesIO(encode_uvarint(n))) == n


def test_uvarint_known_encoding():
    assert encode_uvarint(300) == b"\xac\x02"


def test_read_uvarint_clean_eof_and_truncation():
    assert read_uvarint(io.BytesIO(b"")) is None
    with pytest.raises(SerializationError, match="truncated varint"):
        read_uvarint(io.BytesIO(b"\x80"))


def test_write_and_read_archive():
    leaf = Cid.for_data(b"leaf")
    root, root_data = encode_object({"child": leaf.to_link()})
    buf = io.BytesIO()
    count = write_car(buf, [root], [(root, root_data), (leaf, b"leaf"), (leaf, b"leaf")])
    assert count == 2

    header, blocks = read_car(io.BytesIO(buf.getvalue()))
    assert header.roots == (root,)
    assert header.version == 1
    assert blocks == [(root, root_data), (leaf, b"leaf")]


def test_writer_skips_duplicates():
    buf = io.BytesIO()
    w = CarWriter(buf, [])
    cid = Cid.for_data(b"x")
    assert w.write_block(cid, b"x")
    assert not w.write_block(cid, b"x")
    assert w.written == 1


def test_truncated_section_is_rejected():
    cid = Cid.for_data(b"data")
    buf = io.BytesIO()
    write_car(buf, [cid], [(cid, b"data")])
    with pytest.raises(SerializationError, match="truncated"):
        read_car(io.BytesIO(buf.getvalue()[:-2]))


def test_empty_archive_is_rejected():
    with pytest.raises(SerializationError, match="empty archive"):
        read_car(io.BytesIO(b""))


def test_load_car_verifies_block_digests():
    good = Cid.for_data(b"good")
    buf = io.BytesIO()
    write_car(buf, [good], [(good, b"evil")])
    with pytest.raises(SerializationError, match="does not hash"):
        load_car(MemoryBlockstore(), gzip.compress(buf.getvalue()))


def test_load_car_imports_blocks():
    cid = Cid.for_data(b"v")
    buf = io.BytesIO()
    write_car(buf, [cid], [(cid, b"v")])
    store = MemoryBlockstore()
    header = load_car(store, gzip.compress(buf.getvalue()))
    assert header.roots == (cid,)
    assert store.get(cid) == b"v"


def test_gunzip_rejects_garbage():
    with pytest.raises(SerializationError, match="gzip"):
        gunzip(b"definitely not gzip")
