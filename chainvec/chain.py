"""Chain data types and the chain-data client interface.

The client is an external collaborator (a full node); this module only fixes
the shape of what the harness consumes from it.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Sequence, Tuple

from chainvec.core import Cid, b64decode, b64encode, coerce_cid, format_epoch
from chainvec.errors import InputError


@dataclass(frozen=True)
class TipSetKey:
    """Ordered block identifiers of a tipset. Text form ``{cid,cid}``."""
    cids: Tuple[Cid, ...]

    def __str__(self) -> str:
        return "{" + ",".join(str(c) for c in self.cids) + "}"

    def __bool__(self) -> bool:
        return bool(self.cids)

    @classmethod
    def parse(cls, text: str) -> "TipSetKey":
        s = str(text or "").strip()
        if s.startswith("{") and s.endswith("}"):
            s = s[1:-1]
        parts = [p.strip() for p in s.split(",") if p.strip()]
        if not parts:
            raise InputError(f"empty tipset key: {text!r}")
        try:
            return cls(tuple(Cid.parse(p) for p in parts))
        except ValueError as e:
            raise InputError(f"malformed tipset key {text!r}: {e}") from e

    def to_json(self) -> List[Dict[str, str]]:
        return [c.to_link() for c in self.cids]

    @classmethod
    def from_json(cls, value: Sequence[Any]) -> "TipSetKey":
        return cls(tuple(coerce_cid(v) for v in value or []))


@dataclass(frozen=True)
class BlockHeader:
    cid: Cid
    miner: str
    height: int
    parents: TipSetKey
    parent_state_root: Cid
    parent_base_fee: int
    win_count: int

    def to_json(self) -> Dict[str, Any]:
        return {
            "cid": self.cid.to_link(),
            "miner": self.miner,
            "height": self.height,
            "parents": self.parents.to_json(),
            "parent_state_root": self.parent_state_root.to_link(),
            "parent_base_fee": self.parent_base_fee,
            "win_count": self.win_count,
        }

    @classmethod
    def from_json(cls, d: Mapping[str, Any]) -> "BlockHeader":
        return cls(
            cid=coerce_cid(d["cid"]),
            miner=str(d["miner"]),
            height=int(d["height"]),
            parents=TipSetKey.from_json(d.get("parents") or []),
            parent_state_root=coerce_cid(d["parent_state_root"]),
            parent_base_fee=int(d["parent_base_fee"]),
            win_count=int(d.get("win_count") or 0),
        )


@dataclass(frozen=True)
class TipSet:
    """Blocks sharing a height and parent set."""
    blocks: Tuple[BlockHeader, ...]

    def __post_init__(self) -> None:
        if not self.blocks:
            raise ValueError("tipset must contain at least one block")
        heights = {b.height for b in self.blocks}
        if len(heights) != 1:
            raise ValueError(f"tipset blocks disagree on height: {sorted(heights)}")

    @property
    def key(self) -> TipSetKey:
        return TipSetKey(tuple(b.cid for b in self.blocks))

    @property
    def height(self) -> int:
        return self.blocks[0].height

    @property
    def parents(self) -> TipSetKey:
        return self.blocks[0].parents

    @property
    def parent_state(self) -> Cid:
        return self.blocks[0].parent_state_root

    def __str__(self) -> str:
        return f"{self.key}@{format_epoch(self.height)}"

    def to_json(self) -> Dict[str, Any]:
        return {"blocks": [b.to_json() for b in self.blocks]}

    @classmethod
    def from_json(cls, d: Mapping[str, Any]) -> "TipSet":
        return cls(tuple(BlockHeader.from_json(b) for b in d["blocks"]))


@dataclass(frozen=True)
class SignedMessage:
    """A secp-signed message; only ``message`` bytes take part in execution."""
    message: bytes
    signature: bytes = b""


@dataclass(frozen=True)
class BlockMessages:
    bls_messages: Tuple[bytes, ...] = ()
    secpk_messages: Tuple[SignedMessage, ...] = ()
    cids: Tuple[Cid, ...] = field(default=())

    def packed(self) -> List[bytes]:
        """Wire bytes in execution order: BLS messages, then unsigned secp messages."""
        return list(self.bls_messages) + [m.message for m in self.secpk_messages]

    def to_json(self) -> Dict[str, Any]:
        return {
            "bls_messages": [b64encode(m) for m in self.bls_messages],
            "secpk_messages": [
                {"message": b64encode(m.message), "signature": b64encode(m.signature)}
                for m in self.secpk_messages
            ],
            "cids": [c.to_link() for c in self.cids],
        }

    @classmethod
    def from_json(cls, d: Mapping[str, Any]) -> "BlockMessages":
        return cls(
            bls_messages=tuple(b64decode(m) for m in d.get("bls_messages") or []),
            secpk_messages=tuple(
                SignedMessage(b64decode(m["message"]), b64decode(m.get("signature") or ""))
                for m in d.get("secpk_messages") or []
            ),
            cids=tuple(coerce_cid(c) for c in d.get("cids") or []),
        )


class ChainClient(ABC):
    """What the harness needs from a full node."""

    @abstractmethod
    def chain_head(self) -> TipSet:
        ...

    @abstractmethod
    def get_tipset(self, key: TipSetKey) -> TipSet:
        ...

    @abstractmethod
    def get_tipset_by_height(self, height: int) -> TipSet:
        ...

    @abstractmethod
    def get_block_messages(self, block_cid: Cid) -> BlockMessages:
        ...

    @abstractmethod
    def state_network_version(self, key: TipSetKey) -> int:
        ...

    @abstractmethod
    def state_network_name(self) -> str:
        ...

    @abstractmethod
    def version(self) -> str:
        ...

    @abstractmethod
    def chain_read_obj(self, cid: Cid) -> bytes:
        ...

    @abstractmethod
    def get_chain_randomness(self, key: TipSetKey, dst: int, epoch: int, entropy: bytes) -> bytes:
        ...

    @abstractmethod
    def get_beacon_randomness(self, key: TipSetKey, dst: int, epoch: int, entropy: bytes) -> bytes:
        ...


_HEIGHT_REF_RE = re.compile(r"^@(\d+)$")


def parse_tipset_ref(client: ChainClient, ref: str) -> TipSet:
    """Resolve ``@head``, ``@<height>`` or a tipset key to a tipset."""
    s = str(ref or "").strip()
    if not s:
        raise InputError("tipset reference cannot be empty")
    if s == "@head":
        return client.chain_head()
    m = _HEIGHT_REF_RE.match(s)
    if m:
        return client.get_tipset_by_height(int(m.group(1)))
    if s.startswith("@"):
        raise InputError(f"malformed tipset reference: {ref!r}")
    return client.get_tipset(TipSetKey.parse(s))
