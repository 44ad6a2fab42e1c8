"""Shared value types for the dispatch service."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field


class ErrorCode(enum.IntEnum):
    """Result codes returned by instance management operations."""

    OK = 0
    INSTANCE_EXISTED = 1
    INSTANCE_NOT_EXISTED = 2


class InstanceType(enum.IntEnum):
    """Role an inference instance plays in disaggregated serving."""

    DEFAULT = 0
    PREFILL = 1
    DECODE = 2


@dataclass
class InstanceMetaInfo:
    """Everything the service knows about one registered instance."""

    name: str = ""
    rpc_address: str = ""
    type: InstanceType = InstanceType.DEFAULT
    cluster_ids: list[int] = field(default_factory=list)
    addrs: list[str] = field(default_factory=list)
    k_cache_ids: list[int] = field(default_factory=list)
    v_cache_ids: list[int] = field(default_factory=list)
    dp_size: int = 0
    # milliseconds since the epoch of the latest heartbeat
    latest_timestamp: int = 0


@dataclass
class InstancesPair:
    """The prefill and decode instances chosen to serve one request."""

    prefill_instance_http_addr: str = ""
    decode_instance_http_addr: str = ""


@dataclass
class InstanceIdentityInfo:
    """The part of an instance's description kept in the metadata store."""

    instance_addr: str = ""
    rpc_addr: str = ""
    instance_type: int = int(InstanceType.DEFAULT)

    def debug_string(self) -> str:
        """Return a one-line human readable description."""
        return (
            f"instance_addr: {self.instance_addr}, "
            f"rpc_addr: {self.rpc_addr}, "
            f"instance_type: {self.instance_type}"
        )


@dataclass
class RpcServiceConfig:
    """Settings for the RPC service and its instance manager."""

    etcd_addr: str = ""
    disagg_pd_policy: str = ""
    detect_disconnected_instance_interval: int = 15