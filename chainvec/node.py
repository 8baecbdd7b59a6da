"""JSON-RPC 2.0 chain-data client over HTTP.

Methods are called as ``<namespace>.<Method>`` (namespace from config). Values
on the wire use the harness encodings: tipsets as ``TipSet.to_json``, CIDs as
link objects, bytes as base64.
"""

from __future__ import annotations

import itertools
import json
import threading
import urllib.error
import urllib.request
from typing import Any, List, Optional

from chainvec.chain import BlockMessages, ChainClient, TipSet, TipSetKey
from chainvec.config import NodeConfig
from chainvec.core import Cid, b64decode, b64encode
from chainvec.errors import FetchError, MissingObjectError
from chainvec.observability import Layer, get_logger

log = get_logger("node", Layer.NODE)


class RpcError(FetchError):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, method: str, code: int, message: str):
        self.method = method
        self.code = code
        super().__init__(f"{method}: rpc error {code}: {message}")


class NodeClient(ChainClient):
    """Chain client backed by a node's JSON-RPC endpoint."""

    def __init__(
        self,
        endpoint: str,
        token: str = "",
        timeout: float = 60,
        namespace: str = "Chain",
    ):
        self.endpoint = endpoint
        self.namespace = namespace
        self.timeout = timeout
        self._token = token
        self._ids = itertools.count(1)
        self._id_lock = threading.Lock()

    @classmethod
    def from_config(cls, cfg: NodeConfig) -> "NodeClient":
        return cls(
            endpoint=cfg.endpoint.get(),
            token=cfg.token.get(),
            timeout=cfg.timeout_seconds.get(),
            namespace=cfg.namespace.get(),
        )

    def _next_id(self) -> int:
        with self._id_lock:
            return next(self._ids)

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        """Invoke one RPC method and return its ``result``."""
        name = f"{self.namespace}.{method}"
        payload = {
            "jsonrpc": "2.0",
            "id": self._next_id(),
            "method": name,
            "params": params or [],
        }
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        req = urllib.request.Request(
            self.endpoint,
            data=json.dumps(payload).encode("utf-8"),
            headers=headers,
            method="POST",
        )

        log.debug("rpc call", method=name)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                body = resp.read()
        except urllib.error.HTTPError as e:
            raise FetchError(f"{name}: http {e.code} from {self.endpoint}") from e
        except (urllib.error.URLError, OSError) as e:
            raise FetchError(f"{name}: cannot reach {self.endpoint}: {e}") from e

        try:
            reply = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise FetchError(f"{name}: invalid JSON-RPC reply: {e}") from e
        if not isinstance(reply, dict):
            raise FetchError(f"{name}: invalid JSON-RPC reply")

        err = reply.get("error")
        if err:
            raise RpcError(name, int(err.get("code") or 0), str(err.get("message") or ""))
        return reply.get("result")

    def _decode(self, method: str, fn: Any, value: Any) -> Any:
        try:
            return fn(value)
        except (KeyError, TypeError, ValueError) as e:
            raise FetchError(f"{self.namespace}.{method}: unexpected result shape: {e}") from e

    def chain_head(self) -> TipSet:
        return self._decode("ChainHead", TipSet.from_json, self.call("ChainHead"))

    def get_tipset(self, key: TipSetKey) -> TipSet:
        return self._decode("ChainGetTipSet", TipSet.from_json, self.call("ChainGetTipSet", [key.to_json()]))

    def get_tipset_by_height(self, height: int) -> TipSet:
        result = self.call("ChainGetTipSetByHeight", [int(height), None])
        return self._decode("ChainGetTipSetByHeight", TipSet.from_json, result)

    def get_block_messages(self, block_cid: Cid) -> BlockMessages:
        result = self.call("ChainGetBlockMessages", [block_cid.to_link()])
        return self._decode("ChainGetBlockMessages", BlockMessages.from_json, result)

    def state_network_version(self, key: TipSetKey) -> int:
        return self._decode("StateNetworkVersion", int, self.call("StateNetworkVersion", [key.to_json()]))

    def state_network_name(self) -> str:
        return str(self.call("StateNetworkName"))

    def version(self) -> str:
        result = self.call("Version")
        if isinstance(result, dict):
            return str(result.get("version") or result.get("Version") or "")
        return str(result)

    def chain_read_obj(self, cid: Cid) -> bytes:
        try:
            result = self.call("ChainReadObj", [cid.to_link()])
        except RpcError as e:
            raise MissingObjectError(cid, f"node has no object {cid}: {e}") from e
        return self._decode("ChainReadObj", b64decode, result)

    def _randomness(self, method: str, key: TipSetKey, dst: int, epoch: int, entropy: bytes) -> bytes:
        params: List[Any] = [key.to_json(), int(dst), int(epoch), b64encode(entropy)]
        return self._decode(method, b64decode, self.call(method, params))

    def get_chain_randomness(self, key: TipSetKey, dst: int, epoch: int, entropy: bytes) -> bytes:
        return self._randomness("ChainGetRandomnessFromTickets", key, dst, epoch, entropy)

    def get_beacon_randomness(self, key: TipSetKey, dst: int, epoch: int, entropy: bytes) -> bytes:
        return self._randomness("ChainGetRandomnessFromBeacon", key, dst, epoch, entropy)
