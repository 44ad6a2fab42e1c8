"""Registry of inference instances with heartbeat tracking and expiry."""

from __future__ import annotations

import copy
import dataclasses
import logging
import threading
import time

from xllm_dispatch.disagg_pd_policy import DisaggPdPolicy, RoundRobinDisaggPdPolicy
from xllm_dispatch.etcd_client import EtcdClient, EtcdError, KeyValueStore
from xllm_dispatch.types import (
    ErrorCode,
    InstanceIdentityInfo,
    InstanceMetaInfo,
    InstancesPair,
    InstanceType,
    RpcServiceConfig,
)

logger = logging.getLogger(__name__)

ETCD_KEYS_PREFIX = {
    InstanceType.DEFAULT: "XLLM:DEFAULT:",
    InstanceType.PREFILL: "XLLM:PREFILL:",
    InstanceType.DECODE: "XLLM:DECODE:",
}
ETCD_ALL_KEYS_PREFIX = "XLLM:"
DEFAULT_DISAGG_PD_POLICY = "RR"


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _assign(target: InstanceMetaInfo, source: InstanceMetaInfo) -> None:
    """Overwrite every field of target with a copy of source's value."""
    for f in dataclasses.fields(source):
        setattr(target, f.name, copy.copy(getattr(source, f.name)))


def _make_policy(name: str) -> DisaggPdPolicy:
    if not name:
        logger.warning("Not specify disagg pd policy, use `RR` policy as default.")
        name = DEFAULT_DISAGG_PD_POLICY
    if name == "RR":
        return RoundRobinDisaggPdPolicy()
    raise ValueError(f"Not supported disagg pd policy: {name}")


class InstanceMgr:
    """Tracks registered instances and drops those whose heartbeats stop.

    A background thread checks for silent instances every
    ``config.detect_disconnected_instance_interval`` seconds. When a store is
    given, instance identities are also kept in it.
    """

    def __init__(
        self,
        config: RpcServiceConfig,
        store: KeyValueStore | None = None,
        *,
        start_detector: bool = True,
    ) -> None:
        if config.detect_disconnected_instance_interval <= 0:
            raise ValueError("detect_disconnected_instance_interval must be positive")
        self._config = config
        self._interval_s = config.detect_disconnected_instance_interval
        self._lock = threading.Lock()
        self._instances: dict[str, InstanceMetaInfo] = {}
        self._policy = _make_policy(config.disagg_pd_policy)

        if store is not None:
            logger.info("Connect to etcd meta server: %s", config.etcd_addr)
            self._etcd: EtcdClient | None = EtcdClient(store)
        elif config.etcd_addr:
            raise ValueError(
                f"etcd address {config.etcd_addr!r} configured but no store given"
            )
        else:
            logger.info("Disable etcd meta server")
            self._etcd = None

        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        if start_detector:
            self._thread = threading.Thread(
                target=self._detect_loop, name="instance-detector", daemon=True
            )
            self._thread.start()

    def __enter__(self) -> InstanceMgr:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Stop the background detector and wait for it to finish."""
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _detect_loop(self) -> None:
        while not self._stop.wait(self._interval_s):
            self.expire_disconnected()

    def expire_disconnected(self, now_ms: int | None = None) -> list[str]:
        """Remove instances silent for longer than the interval; return their names."""
        if now_ms is None:
            now_ms = _now_ms()
        limit_ms = self._interval_s * 1000
        with self._lock:
            expired = []
            for name, info in self._instances.items():
                silent_ms = now_ms - info.latest_timestamp
                if silent_ms > limit_ms:
                    logger.warning(
                        "Instance maybe disconnected, instance_name: %s, "
                        "last heartbeat interval(s): %s",
                        name,
                        silent_ms / 1000.0,
                    )
                    expired.append(name)
            if not expired:
                return []
            logger.debug(
                "Detect disconnected instance, instance_name: %s", ", ".join(expired)
            )
            self._delete_persistence_metainfo(expired)
            for name in expired:
                self._policy.remove_instance(name, self._instances[name].type)
                del self._instances[name]
            return expired

    def register_instance(
        self, instance_name: str, metainfo: InstanceMetaInfo | None = None
    ) -> ErrorCode:
        """Add an instance; without metainfo it is registered with defaults."""
        if metainfo is None:
            metainfo = InstanceMetaInfo(name=instance_name)
        with self._lock:
            logger.debug("Register instance, instance_name: %s", instance_name)
            if instance_name in self._instances:
                logger.error(
                    "Instance is already registered, instance_name: %s", instance_name
                )
                return ErrorCode.INSTANCE_EXISTED
            stored = InstanceMetaInfo()
            _assign(stored, metainfo)
            self._instances[instance_name] = stored
            self._policy.insert_instance(instance_name, stored)
            self._save_persistence_metainfo(stored)
            return ErrorCode.OK

    def update_instance_metainfo(
        self, instance_name: str, metainfo: InstanceMetaInfo
    ) -> ErrorCode:
        """Replace a registered instance's description and refresh its heartbeat."""
        with self._lock:
            logger.debug("Update instance metainfo, instance_name: %s", instance_name)
            stored = self._instances.get(instance_name)
            if stored is None:
                logger.error(
                    "Instance is not registered, instance_name: %s", instance_name
                )
                return ErrorCode.INSTANCE_NOT_EXISTED
            _assign(stored, metainfo)
            stored.latest_timestamp = _now_ms()
            self._policy.update_instance(instance_name, stored)
            return ErrorCode.OK

    def heartbeat(self, instance_name: str) -> ErrorCode:
        """Record that an instance is alive."""
        with self._lock:
            logger.debug("Receive heartbeat, instance_name: %s", instance_name)
            stored = self._instances.get(instance_name)
            if stored is None:
                logger.error(
                    "Instance is not registered, instance_name: %s", instance_name
                )
                return ErrorCode.INSTANCE_NOT_EXISTED
            stored.latest_timestamp = _now_ms()
            return ErrorCode.OK

    def select_instances_pair(self, only_prefill: bool = False) -> InstancesPair:
        """Choose the instances for the next request using the policy."""
        return self._policy.select_instances_pair(only_prefill)

    def get_instance_info(self, instance_name: str) -> InstanceMetaInfo:
        """Return a copy of an instance's description, or an empty one."""
        with self._lock:
            stored = self._instances.get(instance_name)
            if stored is None:
                logger.error(
                    "Get instance info failed, instance is not registered, "
                    "instance_name: %s",
                    instance_name,
                )
                return InstanceMetaInfo()
            result = InstanceMetaInfo()
            _assign(result, stored)
            return result

    def get_static_decode_list(self, instance_name: str) -> list[str]:
        """Return the names of all decode instances."""
        with self._lock:
            return [
                info.name
                for info in self._instances.values()
                if info.type == InstanceType.DECODE
            ]

    def _key(self, metainfo: InstanceMetaInfo) -> str:
        return ETCD_KEYS_PREFIX[InstanceType(metainfo.type)] + metainfo.name

    def _save_persistence_metainfo(self, metainfo: InstanceMetaInfo) -> None:
        if self._etcd is None:
            return
        key = self._key(metainfo)
        value = InstanceIdentityInfo(
            instance_addr=metainfo.name,
            rpc_addr=metainfo.rpc_address,
            instance_type=int(metainfo.type),
        )
        try:
            self._etcd.set(key, value)
        except EtcdError as exc:
            logger.error("Save instance metainfo to etcd failed, key: %s: %s", key, exc)
            return
        if logger.isEnabledFor(logging.DEBUG):
            try:
                stored = self._etcd.get(key)
            except EtcdError as exc:
                logger.error(
                    "Get instance metainfo from etcd failed, key: %s: %s", key, exc
                )
                return
            logger.debug("Instance after put: %s", stored.debug_string())

    def _delete_persistence_metainfo(self, instance_names: list[str]) -> None:
        if self._etcd is None or not instance_names:
            return
        for name in instance_names:
            key = self._key(self._instances[name])
            try:
                self._etcd.rm(key)
            except EtcdError as exc:
                logger.error(
                    "Delete instance metainfo from etcd failed, key: %s: %s", key, exc
                )
        if logger.isEnabledFor(logging.DEBUG):
            try:
                remaining = self._etcd.get_prefix(ETCD_ALL_KEYS_PREFIX)
            except EtcdError as exc:
                logger.error(
                    "Get instance metainfo from etcd failed, key: %s: %s",
                    ETCD_ALL_KEYS_PREFIX,
                    exc,
                )
                return
            logger.debug(
                "Instances after delete: %s",
                "".join(v.debug_string() + "\n" for v in remaining),
            )