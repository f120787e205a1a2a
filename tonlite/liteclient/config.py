"""Global network configuration: its data model and loading it over HTTP."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import httpx


class NoConnectionsError(Exception):
    """Raised when a configuration lists no lite servers to connect to."""

    def __init__(self, message: str = "no connections established") -> None:
        super().__init__(message)


def _obj(data: Any) -> dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _list(data: Any) -> list[Any]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ValueError(f"expected a JSON array, got {type(data).__name__}")
    return data


@dataclass
class ServerID:
    type: str = ""
    key: str = ""

    @classmethod
    def _from_dict(cls, data: Any) -> ServerID:
        data = _obj(data)
        return cls(type=str(data.get("@type", "")), key=str(data.get("key", "")))


@dataclass
class LiteserverConfig:
    ip: int = 0
    port: int = 0
    id: ServerID = field(default_factory=ServerID)

    @classmethod
    def _from_dict(cls, data: Any) -> LiteserverConfig:
        data = _obj(data)
        return cls(
            ip=int(data.get("ip", 0)),
            port=int(data.get("port", 0)),
            id=ServerID._from_dict(data.get("id")),
        )


@dataclass
class DHTAddress:
    type: str = ""
    ip: int = 0
    port: int = 0

    @classmethod
    def _from_dict(cls, data: Any) -> DHTAddress:
        data = _obj(data)
        return cls(
            type=str(data.get("@type", "")),
            ip=int(data.get("ip", 0)),
            port=int(data.get("port", 0)),
        )


@dataclass
class DHTAddressList:
    type: str = ""
    addrs: list[DHTAddress] = field(default_factory=list)
    version: int = 0
    reinit_date: int = 0
    priority: int = 0
    expire_at: int = 0

    @classmethod
    def _from_dict(cls, data: Any) -> DHTAddressList:
        data = _obj(data)
        return cls(
            type=str(data.get("@type", "")),
            addrs=[DHTAddress._from_dict(item) for item in _list(data.get("addrs"))],
            version=int(data.get("version", 0)),
            reinit_date=int(data.get("reinit_date", 0)),
            priority=int(data.get("priority", 0)),
            expire_at=int(data.get("expire_at", 0)),
        )


@dataclass
class DHTNode:
    type: str = ""
    id: ServerID = field(default_factory=ServerID)
    addr_list: DHTAddressList = field(default_factory=DHTAddressList)
    version: int = 0
    signature: str = ""

    @classmethod
    def _from_dict(cls, data: Any) -> DHTNode:
        data = _obj(data)
        return cls(
            type=str(data.get("@type", "")),
            id=ServerID._from_dict(data.get("id")),
            addr_list=DHTAddressList._from_dict(data.get("addr_list")),
            version=int(data.get("version", 0)),
            signature=str(data.get("signature", "")),
        )


@dataclass
class DHTNodes:
    type: str = ""
    nodes: list[DHTNode] = field(default_factory=list)

    @classmethod
    def _from_dict(cls, data: Any) -> DHTNodes:
        data = _obj(data)
        return cls(
            type=str(data.get("@type", "")),
            nodes=[DHTNode._from_dict(item) for item in _list(data.get("nodes"))],
        )


@dataclass
class DHTConfig:
    type: str = ""
    k: int = 0
    a: int = 0
    static_nodes: DHTNodes = field(default_factory=DHTNodes)

    @classmethod
    def _from_dict(cls, data: Any) -> DHTConfig:
        data = _obj(data)
        return cls(
            type=str(data.get("@type", "")),
            k=int(data.get("k", 0)),
            a=int(data.get("a", 0)),
            static_nodes=DHTNodes._from_dict(data.get("static_nodes")),
        )


@dataclass
class ValidatorZeroState:
    workchain: int = 0
    shard: int = 0
    seqno: int = 0
    root_hash: str = ""
    file_hash: str = ""

    @classmethod
    def _from_dict(cls, data: Any) -> ValidatorZeroState:
        data = _obj(data)
        return cls(
            workchain=int(data.get("workchain", 0)),
            shard=int(data.get("shard", 0)),
            seqno=int(data.get("seqno", 0)),
            root_hash=str(data.get("root_hash", "")),
            file_hash=str(data.get("file_hash", "")),
        )


@dataclass
class ValidatorInitBlock:
    root_hash: str = ""
    seqno: int = 0
    file_hash: str = ""
    workchain: int = 0
    shard: int = 0

    @classmethod
    def _from_dict(cls, data: Any) -> ValidatorInitBlock:
        data = _obj(data)
        return cls(
            root_hash=str(data.get("root_hash", "")),
            seqno=int(data.get("seqno", 0)),
            file_hash=str(data.get("file_hash", "")),
            workchain=int(data.get("workchain", 0)),
            shard=int(data.get("shard", 0)),
        )


@dataclass
class ValidatorHardfork:
    file_hash: str = ""
    seqno: int = 0
    root_hash: str = ""
    workchain: int = 0
    shard: int = 0

    @classmethod
    def _from_dict(cls, data: Any) -> ValidatorHardfork:
        data = _obj(data)
        return cls(
            file_hash=str(data.get("file_hash", "")),
            seqno=int(data.get("seqno", 0)),
            root_hash=str(data.get("root_hash", "")),
            workchain=int(data.get("workchain", 0)),
            shard=int(data.get("shard", 0)),
        )


@dataclass
class ValidatorConfig:
    type: str = ""
    zero_state: ValidatorZeroState = field(default_factory=ValidatorZeroState)
    init_block: ValidatorInitBlock = field(default_factory=ValidatorInitBlock)
    hardforks: list[ValidatorHardfork] = field(default_factory=list)

    @classmethod
    def _from_dict(cls, data: Any) -> ValidatorConfig:
        data = _obj(data)
        return cls(
            type=str(data.get("@type", "")),
            zero_state=ValidatorZeroState._from_dict(data.get("zero_state")),
            init_block=ValidatorInitBlock._from_dict(data.get("init_block")),
            hardforks=[
                ValidatorHardfork._from_dict(item) for item in _list(data.get("hardforks"))
            ],
        )


@dataclass
class GlobalConfig:
    type: str = ""
    dht: DHTConfig = field(default_factory=DHTConfig)
    liteservers: list[LiteserverConfig] = field(default_factory=list)
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)

    @classmethod
    def from_dict(cls, data: Any) -> GlobalConfig:
        """Build a configuration from decoded JSON; missing fields take zero values."""
        data = _obj(data)
        return cls(
            type=str(data.get("@type", "")),
            dht=DHTConfig._from_dict(data.get("dht")),
            liteservers=[
                LiteserverConfig._from_dict(item) for item in _list(data.get("liteservers"))
            ],
            validator=ValidatorConfig._from_dict(data.get("validator")),
        )


def int_to_ip4(ip: int) -> str:
    """Render an integer (possibly negative, as in the config) as dotted IPv4."""
    return ".".join(str((ip >> shift) & 0xFF) for shift in (24, 16, 8, 0))


def get_config_from_url(url: str, timeout: float | None = 30.0) -> GlobalConfig:
    """Download and decode a global configuration."""
    response = httpx.get(url, timeout=timeout, follow_redirects=True)
    return GlobalConfig.from_dict(response.json())