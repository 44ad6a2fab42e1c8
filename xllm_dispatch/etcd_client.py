"""Persistence of instance identities in a key-value metadata store."""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod

from xllm_dispatch.types import InstanceIdentityInfo

_PING_KEY = "XLLM_PING"
_PING_VALUE = "PING"


class EtcdError(Exception):
    """Raised when the metadata store or its contents cannot be used."""


class KeyValueStore(ABC):
    """The operations the client needs from a key-value store."""

    @abstractmethod
    def put(self, key: str, value: str) -> None:
        """Store a value under a key."""

    @abstractmethod
    def get(self, key: str) -> str:
        """Return the value of a key; raise EtcdError if it is absent."""

    @abstractmethod
    def ls(self, prefix: str) -> list[str]:
        """Return the values of all keys with the prefix, ordered by key."""

    @abstractmethod
    def rm(self, key: str) -> None:
        """Delete a key; raise EtcdError if it is absent."""


class InMemoryStore(KeyValueStore):
    """A thread-safe key-value store held in process memory."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: str) -> None:
        with self._lock:
            self._data[key] = value

    def get(self, key: str) -> str:
        with self._lock:
            try:
                return self._data[key]
            except KeyError:
                raise EtcdError(f"Key not found: {key}") from None

    def ls(self, prefix: str) -> list[str]:
        with self._lock:
            return [v for k, v in sorted(self._data.items()) if k.startswith(prefix)]

    def rm(self, key: str) -> None:
        with self._lock:
            if self._data.pop(key, None) is None:
                raise EtcdError(f"Key not found: {key}")


def _decode(text: str, key: str) -> InstanceIdentityInfo:
    try:
        data = json.loads(text)
        addr = data["instance_addr"]
        kind = data["instance_type"]
    except (ValueError, KeyError, TypeError) as exc:
        raise EtcdError(f"etcd get {key} failed: json parse error: {exc}") from exc
    if not isinstance(addr, str):
        raise EtcdError(f"etcd get {key} failed: instance_addr is not a string")
    if isinstance(kind, bool) or not isinstance(kind, int) or not -128 <= kind <= 127:
        raise EtcdError(f"etcd get {key} failed: instance_type is not an int8")
    return InstanceIdentityInfo(instance_addr=addr, instance_type=kind)


class EtcdClient:
    """Reads and writes instance identities as JSON documents.

    Keys look like ``XLLM:PREFILL:<name>`` or ``XLLM:DECODE:<name>``.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store
        try:
            store.put(_PING_KEY, _PING_VALUE)
        except EtcdError as exc:
            raise EtcdError(f"etcd connect to etcd server failed: {exc}") from exc

    def get(self, key: str) -> InstanceIdentityInfo:
        """Return the identity stored under a key."""
        try:
            text = self._store.get(key)
        except EtcdError as exc:
            raise EtcdError(f"etcd get {key} failed: {exc}") from exc
        return _decode(text, key)

    def get_prefix(self, key_prefix: str) -> list[InstanceIdentityInfo]:
        """Return the identities stored under every key with the prefix."""
        try:
            texts = self._store.ls(key_prefix)
        except EtcdError as exc:
            raise EtcdError(f"etcd get {key_prefix} failed: {exc}") from exc
        return [_decode(text, key_prefix) for text in texts]

    def set(self, key: str, value: InstanceIdentityInfo) -> None:
        """Store an identity under a key."""
        text = json.dumps(
            {"instance_addr": value.instance_addr, "instance_type": value.instance_type},
            separators=(",", ":"),
            sort_keys=True,
            ensure_ascii=False,
        )
        try:
            self._store.put(key, text)
        except EtcdError as exc:
            raise EtcdError(f"etcd set {key} failed: {exc}") from exc

    def rm(self, key: str) -> None:
        """Delete a key."""
        try:
            self._store.rm(key)
        except EtcdError as exc:
            raise EtcdError(f"etcd rm {key} failed: {exc}") from exc