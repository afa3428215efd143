from __future__ import annotations

import json
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from ..config import MAX_SCAN_RESULT_BYTES, STAGING_MAX_AGE_HOURS
from ..logging import get_logger
from .constants import (
    STAGING_IMAGE_PREFIX,
    STAGING_PREFIXES,
    STAGING_PREVIEW_PREFIX,
    STAGING_SCAN_RESULT_PREFIX,
)
from .errors import CapacityExceededError
from .store import KeyValueStore


LOG = get_logger("inventory-janitor")

_TIMESTAMP_PART = re.compile(r"^\d{13,}$")

# staging entry name -> key prefix
STAGING_ENTRIES: Dict[str, str] = {
    "scan_result": STAGING_SCAN_RESULT_PREFIX,
    "preview": STAGING_PREVIEW_PREFIX,
    "image": STAGING_IMAGE_PREFIX,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def staging_key(prefix: str, scan_id: str, user_id: Optional[str] = None) -> str:
    if user_id:
        return f"{prefix}{user_id}_{scan_id}"
    return f"{prefix}{scan_id}"


def extract_timestamp_ms(key: str) -> Optional[int]:
    """Epoch-milliseconds embedded in a staging key, if any.

    The first "_"-separated part made of 13+ digits is taken; scan ids are
    built as "<epoch-ms>_<file name>".
    """
    for prefix in STAGING_PREFIXES:
        if key.startswith(prefix):
            key = key[len(prefix):]
            break
    for part in key.split("_"):
        if _TIMESTAMP_PART.match(part):
            return int(part)
    return None


class ScanDataJanitor:
    """Bounds the lifetime of short-lived scan staging entries.

    Staging entries (raw OCR result, preview image, compressed image for the
    final record) live directly in the key/value store, keyed by scan
    session. They are removed explicitly once a scan is finalized, or by a
    sweep based on the timestamp embedded in the key.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore],
        *,
        max_age_hours: float = STAGING_MAX_AGE_HOURS,
        max_scan_result_bytes: int = MAX_SCAN_RESULT_BYTES,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.max_age_hours = max_age_hours
        self.max_scan_result_bytes = max_scan_result_bytes
        self.clock = clock

    @staticmethod
    def new_scan_id(file_name: str, *, now_ms: Optional[int] = None) -> str:
        safe = re.sub(r"[^a-zA-Z0-9._-]", "_", file_name or "scan")[:50]
        ts = now_ms if now_ms is not None else int(time.time() * 1000)
        return f"{ts}_{safe}"

    # ---------------- staging ----------------
    def stage_scan(
        self,
        user_id: Optional[str],
        scan_id: str,
        *,
        raw_scan_result: Any = None,
        original_preview_uri: Optional[str] = None,
        compressed_image_uri: Optional[str] = None,
    ) -> Dict[str, bool]:
        """Write the staging entries for one scan session (best effort).

        Returns which entries were stored. Oversized raw results are skipped;
        a full store triggers one aggressive sweep and a single retry.
        """
        stored = {name: False for name in STAGING_ENTRIES}
        if self.store is None:
            LOG.warning("Storage unavailable; scan %s not staged", scan_id)
            return stored
        if not scan_id:
            LOG.warning("stage_scan called without a scan id; nothing staged")
            return stored

        values: Dict[str, Optional[str]] = {
            "scan_result": None,
            "preview": original_preview_uri,
            "image": compressed_image_uri,
        }
        if raw_scan_result is not None:
            text = raw_scan_result if isinstance(raw_scan_result, str) else json.dumps(raw_scan_result, ensure_ascii=False)
            size = len(text.encode("utf-8"))
            if size > self.max_scan_result_bytes:
                LOG.warning(
                    "Raw scan result for %s is %d bytes (limit %d); not staging it",
                    scan_id,
                    size,
                    self.max_scan_result_bytes,
                )
            else:
                values["scan_result"] = text

        for name, value in values.items():
            if not value:
                continue
            key = staging_key(STAGING_ENTRIES[name], scan_id, user_id)
            try:
                self.store.set(key, value)
            except CapacityExceededError:
                LOG.warning("Storage full while staging %s; running emergency sweep", key)
                self.sweep(aggressive=True)
                try:
                    self.store.set(key, value)
                except CapacityExceededError:
                    LOG.error("Could not stage %s even after emergency sweep; skipping", key)
                    continue
            stored[name] = True
        return stored

    def load_scan(self, user_id: Optional[str], scan_id: str) -> Dict[str, Any]:
        out: Dict[str, Any] = {name: None for name in STAGING_ENTRIES}
        if self.store is None or not scan_id:
            return out
        for name, prefix in STAGING_ENTRIES.items():
            raw = self.store.get(staging_key(prefix, scan_id, user_id))
            if raw is None:
                continue
            if name == "scan_result":
                try:
                    out[name] = json.loads(raw)
                except ValueError:
                    out[name] = raw
            else:
                out[name] = raw
        return out

    # ---------------- cleanup ----------------
    def clear_session(self, scan_id: Optional[str], user_id: Optional[str] = None) -> int:
        """Remove the staging entries of one scan session.

        Never guesses: without a scan id nothing is removed.
        """
        if not scan_id:
            LOG.warning("clear_session called without a scan id (user=%s); nothing removed", user_id)
            return 0
        if self.store is None:
            return 0
        removed = 0
        for prefix in STAGING_ENTRIES.values():
            key = staging_key(prefix, scan_id, user_id)
            if self.store.delete(key):
                removed += 1
        LOG.info("Cleared %d staging entr%s for scan %s", removed, "y" if removed == 1 else "ies", scan_id)
        return removed

    def sweep(self, aggressive: bool = False, user_id: Optional[str] = None) -> int:
        """Remove staging entries older than the max age.

        In aggressive mode (storage-pressure recovery) entries without a
        parseable timestamp are removed too. Returns the number removed.
        """
        if self.store is None:
            return 0
        now_ms = int(self.clock().timestamp() * 1000)
        max_age_ms = int(self.max_age_hours * 60 * 60 * 1000)
        to_remove = []
        for prefix in STAGING_PREFIXES:
            scope = f"{prefix}{user_id}_" if user_id else prefix
            for key in self.store.keys(scope):
                ts = extract_timestamp_ms(key)
                if ts is None:
                    if aggressive:
                        to_remove.append(key)
                elif now_ms - ts > max_age_ms:
                    to_remove.append(key)
        removed = 0
        for key in to_remove:
            if self.store.delete(key):
                removed += 1
        if removed:
            LOG.info(
                "Swept %d staging entr%s (aggressive=%s, user=%s)",
                removed,
                "y" if removed == 1 else "ies",
                aggressive,
                user_id or "all",
            )
        return removed
