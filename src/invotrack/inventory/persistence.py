from __future__ import annotations

import copy
import json
import re
from typing import Any, Callable, Dict, List, Optional

from ..logging import get_logger
from .errors import CapacityExceededError, StorageError
from .store import KeyValueStore


LOG = get_logger("inventory-persistence")


def get_storage_key(base_key: str, user_id: Optional[str] = None) -> str:
    """Effective key for a collection; the user id is the only tenancy boundary."""
    if user_id:
        return f"{base_key}_{user_id}"
    return base_key


def _slug(value: Any) -> str:
    s = re.sub(r"[^A-Za-z0-9]+", "-", str(value or "")).strip("-").lower()
    return s[:40] or "item"


def synthesize_id(base_key: str, index: int, item: Dict[str, Any]) -> str:
    name = (
        item.get("description")
        or item.get("file_name")
        or item.get("original_file_name")
        or item.get("catalog_number")
        or item.get("name")
    )
    return f"{base_key}-{index}-{_slug(name)}"


class PersistenceAdapter:
    """Per-user namespaced JSON collections on top of a KeyValueStore.

    With `store=None` the adapter runs in "storage unavailable" mode: reads
    return the seed value and writes are logged and dropped.

    `recover_capacity` is called once when a write hits the store quota
    (normally the janitor's aggressive sweep); the write is then retried a
    single time before the error reaches the caller.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore],
        *,
        recover_capacity: Optional[Callable[[], Any]] = None,
    ) -> None:
        self.store = store
        self.recover_capacity = recover_capacity

    @property
    def available(self) -> bool:
        return self.store is not None

    def _load_raw(self, key: str) -> Optional[Any]:
        if self.store is None:
            return None
        raw = self.store.get(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as exc:
            LOG.warning(f"Stored value for '{key}' is not valid JSON ({exc}); ignoring it")
            return None

    def read(
        self,
        base_key: str,
        user_id: Optional[str] = None,
        seed: Optional[List[Dict[str, Any]]] = None,
    ) -> List[Dict[str, Any]]:
        """Return the stored collection, or a copy of `seed` when absent.

        Every returned item carries a non-empty `id`; missing ones are
        synthesized deterministically from key, index and name.
        """
        fallback = copy.deepcopy(seed) if seed is not None else []
        if self.store is None:
            LOG.debug(f"Storage unavailable; returning seed for '{base_key}'")
            return fallback
        key = get_storage_key(base_key, user_id)
        data = self._load_raw(key)
        if data is None:
            return fallback
        if not isinstance(data, list):
            LOG.warning(f"Stored value for '{key}' is not a list; returning seed")
            return fallback
        items: List[Dict[str, Any]] = []
        for idx, item in enumerate(data):
            if not isinstance(item, dict):
                LOG.warning(f"Dropping non-object entry #{idx} in '{key}'")
                continue
            if not item.get("id"):
                item["id"] = synthesize_id(base_key, idx, item)
            items.append(item)
        return items

    def read_object(self, base_key: str, user_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if self.store is None:
            return None
        key = get_storage_key(base_key, user_id)
        data = self._load_raw(key)
        if data is None or not isinstance(data, dict):
            return None
        return data

    def write(self, base_key: str, data: Any, user_id: Optional[str] = None) -> None:
        """Serialize and persist `data`.

        On CapacityExceededError: run the capacity recovery once, retry once,
        then propagate.
        """
        key = get_storage_key(base_key, user_id)
        if self.store is None:
            LOG.warning(f"Storage unavailable; dropping write to '{key}'")
            return
        try:
            payload = json.dumps(data, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
        except (TypeError, ValueError) as exc:
            raise StorageError(f"Value for '{key}' is not JSON-serializable: {exc}") from exc
        try:
            self.store.set(key, payload)
            return
        except CapacityExceededError:
            if self.recover_capacity is None:
                raise
            LOG.warning(f"Storage quota hit writing '{key}'; clearing staging data and retrying once")
        self.recover_capacity()
        try:
            self.store.set(key, payload)
        except CapacityExceededError:
            LOG.error(f"Write to '{key}' still exceeds storage capacity after cleanup")
            raise
        LOG.info(f"Write to '{key}' succeeded after capacity recovery")

    def write_object(self, base_key: str, data: Dict[str, Any], user_id: Optional[str] = None) -> None:
        self.write(base_key, data, user_id)

    def remove(self, base_key: str, user_id: Optional[str] = None) -> bool:
        key = get_storage_key(base_key, user_id)
        if self.store is None:
            return False
        return self.store.delete(key)
