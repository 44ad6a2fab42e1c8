"""Policies that choose prefill and decode instances for requests."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod

from xllm_dispatch.types import InstanceMetaInfo, InstancesPair, InstanceType

logger = logging.getLogger(__name__)


def _is_prefill_side(instance_type: InstanceType) -> bool:
    return instance_type in (InstanceType.DEFAULT, InstanceType.PREFILL)


class DisaggPdPolicy(ABC):
    """Keeps the prefill and decode instance slots and selects among them.

    Removed instances leave an empty slot behind so that the positions of
    the remaining instances stay stable.
    """

    def __init__(self) -> None:
        self._prefill_instances: list[InstanceMetaInfo | None] = []
        self._decode_instances: list[InstanceMetaInfo | None] = []
        self._prefill_index: dict[str, int] = {}
        self._decode_index: dict[str, int] = {}
        self._lock = threading.Lock()

    def _side(self, instance_type: InstanceType):
        if _is_prefill_side(instance_type):
            return self._prefill_instances, self._prefill_index, "prefill or default"
        return self._decode_instances, self._decode_index, "decode"

    def insert_instance(self, name: str, info: InstanceMetaInfo) -> bool:
        """Add an instance; return False if the name is already present."""
        with self._lock:
            slots, index, label = self._side(info.type)
            if name in index:
                logger.error(
                    "Insert instance is already existed, name: %s, type: %d",
                    name,
                    int(info.type),
                )
                return False
            slots.append(info)
            index[name] = len(slots) - 1
            logger.debug(
                "DisaggPdPolicy insert instance, name = %s, type = %s, idx = %d",
                name,
                label,
                index[name],
            )
            return True

    def update_instance(self, name: str, info: InstanceMetaInfo) -> bool:
        """Replace an instance's info; return False if it is not present."""
        with self._lock:
            slots, index, label = self._side(info.type)
            idx = index.get(name)
            if idx is None:
                logger.error(
                    "Update instance is not existed, name: %s, type: %d",
                    name,
                    int(info.type),
                )
                return False
            slots[idx] = info
            logger.debug(
                "DisaggPdPolicy update instance, name = %s, type = %s, idx = %d",
                name,
                label,
                idx,
            )
            return True

    def remove_instance(self, name: str, instance_type: InstanceType) -> bool:
        """Empty an instance's slot; return False if it is not present."""
        with self._lock:
            slots, index, label = self._side(instance_type)
            idx = index.pop(name, None)
            if idx is None:
                logger.error(
                    "Remove instance not found, name: %s, type: %d",
                    name,
                    int(instance_type),
                )
                return False
            slots[idx] = None
            logger.debug(
                "DisaggPdPolicy remove instance, name = %s, type = %s, idx = %d",
                name,
                label,
                idx,
            )
            return True

    @abstractmethod
    def select_instances_pair(self, only_prefill: bool = False) -> InstancesPair:
        """Choose the instances that should handle the next request."""

    @abstractmethod
    def reallocate_instances_type(self) -> dict[str, InstanceType]:
        """Decide a new prefill or decode role for instances."""

    @abstractmethod
    def allocate_pd_pairs(self) -> dict[str, list[str]]:
        """Map each prefill instance to the decode instances it pairs with."""


class RoundRobinDisaggPdPolicy(DisaggPdPolicy):
    """Cycles through the live prefill and decode instances in turn."""

    def __init__(self) -> None:
        super().__init__()
        self._next_prefill = 0
        self._next_decode = 0
        logger.info("Enable RoundRobin disaggregated pd policy.")

    @staticmethod
    def _advance(slots: list[InstanceMetaInfo | None], cursor: int) -> tuple[str, int]:
        count = len(slots)
        if count == 0:
            return "", cursor
        start = cursor
        chosen = ""
        while slots[cursor] is None:
            cursor = (cursor + 1) % count
            if cursor == start:
                break
        else:
            chosen = slots[cursor].name
        return chosen, (cursor + 1) % count

    def select_instances_pair(self, only_prefill: bool = False) -> InstancesPair:
        with self._lock:
            pair = InstancesPair()
            if only_prefill:
                first = next((i for i in self._prefill_instances if i is not None), None)
                if first is not None:
                    pair.prefill_instance_http_addr = first.name
                return pair

            pair.prefill_instance_http_addr, self._next_prefill = self._advance(
                self._prefill_instances, self._next_prefill
            )
            pair.decode_instance_http_addr, self._next_decode = self._advance(
                self._decode_instances, self._next_decode
            )
            return pair

    def reallocate_instances_type(self) -> dict[str, InstanceType]:
        return {}

    def allocate_pd_pairs(self) -> dict[str, list[str]]:
        return {}