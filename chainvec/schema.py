"""Test vector data model, JSON (de)serialization and schema validation.

Wire conventions:
- CIDs are link objects ``{"/": "<codec>:<sha256>"}``
- byte strings (messages, return values, entropy, archive) are base64
- integers stay JSON integers (no floats anywhere)

Vectors are immutable once built; replay only reads them.
"""

from __future__ import annotations

import json
import os
import pathlib
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional, Tuple

from jsonschema import Draft202012Validator
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from chainvec.core import Cid, b64decode, b64encode, coerce_cid, load_json
from chainvec.errors import SerializationError

CLASS_MESSAGE = "message"
CLASS_TIPSET = "tipset"
SUPPORTED_CLASSES = (CLASS_MESSAGE, CLASS_TIPSET)

SELECTOR_MIN_PROTOCOL_VERSION = "min_protocol_version"

RAND_KIND_CHAIN = "chain"
RAND_KIND_BEACON = "beacon"

SCHEMAS_DIR = pathlib.Path(__file__).resolve().parent / "schemas"
VECTOR_SCHEMA_ID = "https://chainvec.dev/schemas/test-vector.schema.json"


# ════════════════════════════════════════════════════════════════════════════
# DATA MODEL
# ════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class GenerationData:
    """One provenance entry of a vector."""
    source: str
    version: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"source": self.source}
        if self.version:
            d["version"] = self.version
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "GenerationData":
        return cls(source=str(d["source"]), version=str(d.get("version") or ""))


@dataclass(frozen=True)
class Metadata:
    id: str
    gen: Tuple[GenerationData, ...] = ()
    description: str = ""

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"id": self.id, "gen": [g.to_dict() for g in self.gen]}
        if self.description:
            d["description"] = self.description
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Metadata":
        return cls(
            id=str(d["id"]),
            gen=tuple(GenerationData.from_dict(g) for g in d.get("gen") or []),
            description=str(d.get("description") or ""),
        )


@dataclass(frozen=True)
class Variant:
    """A protocol context (codename, epoch, network version) the vector holds under."""
    id: str
    epoch: int
    nv: int

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "epoch": self.epoch, "nv": self.nv}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Variant":
        return cls(id=str(d["id"]), epoch=int(d["epoch"]), nv=int(d["nv"]))


@dataclass(frozen=True)
class StateTree:
    root_cid: Cid

    def to_dict(self) -> Dict[str, Any]:
        return {"root_cid": self.root_cid.to_link()}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "StateTree":
        return cls(root_cid=coerce_cid(d["root_cid"]))


@dataclass(frozen=True)
class Preconditions:
    variants: Tuple[Variant, ...]
    state_tree: StateTree
    basefee: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "variants": [v.to_dict() for v in self.variants],
            "state_tree": self.state_tree.to_dict(),
        }
        if self.basefee is not None:
            d["basefee"] = self.basefee
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Preconditions":
        basefee = d.get("basefee")
        return cls(
            variants=tuple(Variant.from_dict(v) for v in d.get("variants") or []),
            state_tree=StateTree.from_dict(d["state_tree"]),
            basefee=int(basefee) if basefee is not None else None,
        )


@dataclass(frozen=True)
class Block:
    """A block of an apply tipset; messages are frozen wire bytes."""
    miner_addr: str
    win_count: int
    messages: Tuple[bytes, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "miner_addr": self.miner_addr,
            "win_count": self.win_count,
            "messages": [b64encode(m) for m in self.messages],
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Block":
        return cls(
            miner_addr=str(d["miner_addr"]),
            win_count=int(d["win_count"]),
            messages=tuple(b64decode(m) for m in d.get("messages") or []),
        )


@dataclass(frozen=True)
class Tipset:
    basefee: int
    blocks: Tuple[Block, ...]
    epoch_offset: int = 0

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "basefee": self.basefee,
            "blocks": [b.to_dict() for b in self.blocks],
        }
        if self.epoch_offset:
            d["epoch_offset"] = self.epoch_offset
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Tipset":
        return cls(
            basefee=int(d["basefee"]),
            blocks=tuple(Block.from_dict(b) for b in d.get("blocks") or []),
            epoch_offset=int(d.get("epoch_offset") or 0),
        )


@dataclass(frozen=True)
class ApplyMessage:
    bytes: bytes
    epoch_offset: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"bytes": b64encode(self.bytes)}
        if self.epoch_offset is not None:
            d["epoch_offset"] = self.epoch_offset
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "ApplyMessage":
        off = d.get("epoch_offset")
        return cls(bytes=b64decode(d["bytes"]), epoch_offset=int(off) if off is not None else None)


@dataclass(frozen=True)
class Receipt:
    exit_code: int
    return_value: bytes
    gas_used: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            "return_value": b64encode(self.return_value),
            "gas_used": self.gas_used,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Receipt":
        return cls(
            exit_code=int(d["exit_code"]),
            return_value=b64decode(d.get("return_value") or ""),
            gas_used=int(d["gas_used"]),
        )


@dataclass(frozen=True)
class Postconditions:
    state_tree: StateTree
    receipts: Tuple[Receipt, ...] = ()
    receipts_roots: Tuple[Cid, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state_tree": self.state_tree.to_dict(),
            "receipts": [r.to_dict() for r in self.receipts],
            "receipts_roots": [c.to_link() for c in self.receipts_roots],
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Postconditions":
        return cls(
            state_tree=StateTree.from_dict(d["state_tree"]),
            receipts=tuple(Receipt.from_dict(r) for r in d.get("receipts") or []),
            receipts_roots=tuple(coerce_cid(c) for c in d.get("receipts_roots") or []),
        )


@dataclass(frozen=True)
class RandomnessRule:
    """The inputs of one randomness draw."""
    kind: str
    dst: int
    epoch: int
    entropy: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "dst": self.dst,
            "epoch": self.epoch,
            "entropy": b64encode(self.entropy),
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "RandomnessRule":
        return cls(
            kind=str(d["kind"]),
            dst=int(d["dst"]),
            epoch=int(d["epoch"]),
            entropy=b64decode(d.get("entropy") or ""),
        )


@dataclass(frozen=True)
class RandomnessMatch:
    """A recorded draw: request parameters and the value produced at generation time."""
    on: RandomnessRule
    ret: bytes

    def to_dict(self) -> Dict[str, Any]:
        return {"on": self.on.to_dict(), "ret": b64encode(self.ret)}

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "RandomnessMatch":
        return cls(on=RandomnessRule.from_dict(d["on"]), ret=b64decode(d["ret"]))


@dataclass(frozen=True)
class TestVector:
    """A self-contained before/after state transition."""
    __test__ = False  # not a pytest class

    class_: str
    meta: Metadata
    preconditions: Preconditions
    postconditions: Postconditions
    car: bytes = b""
    selector: Dict[str, str] = field(default_factory=dict)
    randomness: Tuple[RandomnessMatch, ...] = ()
    apply_tipsets: Tuple[Tipset, ...] = ()
    apply_messages: Tuple[ApplyMessage, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "class": self.class_,
            "meta": self.meta.to_dict(),
            "selector": dict(self.selector),
            "randomness": [r.to_dict() for r in self.randomness],
            "car": b64encode(self.car),
            "preconditions": self.preconditions.to_dict(),
        }
        if self.apply_tipsets:
            d["apply_tipsets"] = [t.to_dict() for t in self.apply_tipsets]
        if self.apply_messages:
            d["apply_messages"] = [m.to_dict() for m in self.apply_messages]
        d["postconditions"] = self.postconditions.to_dict()
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "TestVector":
        try:
            return cls(
                class_=str(d["class"]),
                meta=Metadata.from_dict(d["meta"]),
                selector={str(k): str(v) for k, v in (d.get("selector") or {}).items()},
                randomness=tuple(RandomnessMatch.from_dict(r) for r in d.get("randomness") or []),
                car=b64decode(d.get("car") or ""),
                preconditions=Preconditions.from_dict(d["preconditions"]),
                apply_tipsets=tuple(Tipset.from_dict(t) for t in d.get("apply_tipsets") or []),
                apply_messages=tuple(ApplyMessage.from_dict(m) for m in d.get("apply_messages") or []),
                postconditions=Postconditions.from_dict(d["postconditions"]),
            )
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise SerializationError(f"malformed test vector: {e!r}") from e


# ════════════════════════════════════════════════════════════════════════════
# SCHEMA VALIDATION
# ════════════════════════════════════════════════════════════════════════════


@lru_cache(maxsize=1)
def _schema_registry() -> Registry:
    """Registry of every schema shipped in ``chainvec/schemas`` for $ref resolution."""
    resources = []
    for schema_path in sorted(SCHEMAS_DIR.glob("*.schema.json")):
        schema = load_json(schema_path)
        if not isinstance(schema, dict):
            continue
        schema_id = schema.get("$id") or f"https://chainvec.dev/schemas/{schema_path.name}"
        resources.append((schema_id, Resource.from_contents(schema, default_specification=DRAFT202012)))
    return Registry().with_resources(resources)


@lru_cache(maxsize=1)
def vector_validator() -> Draft202012Validator:
    registry = _schema_registry()
    schema = registry.contents(VECTOR_SCHEMA_ID)
    return Draft202012Validator(schema, registry=registry)


def validate_vector_dict(obj: Any) -> List[str]:
    """Return schema violations as ``<json path>: <message>`` strings (empty if valid)."""
    return [
        f"{error.json_path}: {error.message}"
        for error in vector_validator().iter_errors(obj)
    ]


# ════════════════════════════════════════════════════════════════════════════
# FILE FORMAT
# ════════════════════════════════════════════════════════════════════════════


def parse_vector(obj: Any, validate: bool = True) -> TestVector:
    if not isinstance(obj, dict):
        raise SerializationError("test vector must be a JSON object")
    if validate:
        errors = validate_vector_dict(obj)
        if errors:
            raise SerializationError("test vector failed schema validation: " + "; ".join(errors))
    return TestVector.from_dict(obj)


def loads_vector(text: str, validate: bool = True) -> TestVector:
    try:
        obj = json.loads(text)
    except (json.JSONDecodeError, RecursionError) as e:
        raise SerializationError(f"failed to decode test vector: {e}") from e
    return parse_vector(obj, validate=validate)


def dumps_vector(vector: TestVector, indent: Optional[int] = 2) -> str:
    """Serialize a vector; ``indent=None`` yields a single line (ndjson)."""
    if indent is None:
        return json.dumps(vector.to_dict(), separators=(",", ":"))
    return json.dumps(vector.to_dict(), indent=indent)


def load_vector_file(path: pathlib.Path, validate: bool = True) -> TestVector:
    try:
        text = pathlib.Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise SerializationError(f"failed to open test vector {path}: {e}") from e
    except UnicodeDecodeError as e:
        raise SerializationError(f"failed to decode test vector {path}: {e}") from e
    return loads_vector(text, validate=validate)


def write_vector(vector: TestVector, path: pathlib.Path) -> pathlib.Path:
    """Persist a vector; the file only appears once fully written."""
    path = pathlib.Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    try:
        tmp.write_text(dumps_vector(vector) + "\n", encoding="utf-8")
        os.replace(tmp, path)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise SerializationError(f"failed to write test vector {path}: {e}") from e
    return path
