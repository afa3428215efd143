import os
from dataclasses import dataclass
from typing import Dict, Optional

from dotenv import dotenv_values

from .logging import get_logger

log = get_logger("config")

# Capacity defaults
MAX_INVENTORY_ITEMS = 500
MAX_INVOICE_HISTORY_ITEMS = 10
STAGING_MAX_AGE_HOURS = 24
STORE_QUOTA_BYTES = 5 * 1024 * 1024
MAX_SCAN_RESULT_BYTES = int(0.8 * 1024 * 1024)


@dataclass(frozen=True)
class InventorySettings:
    max_inventory_items: int = MAX_INVENTORY_ITEMS
    max_invoice_history_items: int = MAX_INVOICE_HISTORY_ITEMS
    staging_max_age_hours: float = STAGING_MAX_AGE_HOURS
    store_quota_bytes: Optional[int] = STORE_QUOTA_BYTES
    max_scan_result_bytes: int = MAX_SCAN_RESULT_BYTES
    db_path: Optional[str] = None


def _find_upwards(start_dir: str, filename: str) -> Optional[str]:
    """Return first matching file found when walking up from start_dir.

    This makes running tools from subdirectories (e.g., `src/`) still find
    repository-level config files like `.env`.
    """
    d = os.path.abspath(start_dir or ".")
    while True:
        candidate = os.path.join(d, filename)
        if os.path.isfile(candidate):
            return candidate
        parent = os.path.dirname(d)
        if parent == d:
            return None
        d = parent


def _read_dotenv(dotenv_dir: str) -> Dict[str, str]:
    """Return key/value pairs from the nearest .env; does not mutate environment."""
    path = _find_upwards(dotenv_dir, ".env")
    if not path:
        log.debug(f"No .env found starting from: {os.path.abspath(dotenv_dir)}")
        return {}
    try:
        values = dotenv_values(path)
    except OSError as e:
        log.warning(f"Failed reading .env: {e}")
        return {}
    env = {k: v.strip() for k, v in values.items() if v is not None}
    log.debug(f"Loaded {len(env)} key(s) from .env at {path}")
    return env


def _lookup(name: str, env: Dict[str, str]) -> Optional[str]:
    v = os.environ.get(name)
    if v is not None and v.strip():
        return v.strip()
    v = env.get(name)
    return v if v else None


def _int_setting(name: str, env: Dict[str, str], default: int, *, minimum: int = 1) -> int:
    raw = _lookup(name, env)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning(f"{name}={raw!r} is not an integer; using default {default}")
        return default
    if value < minimum:
        log.warning(f"{name}={value} below minimum {minimum}; using default {default}")
        return default
    return value


def _float_setting(name: str, env: Dict[str, str], default: float) -> float:
    raw = _lookup(name, env)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        log.warning(f"{name}={raw!r} is not a number; using default {default}")
        return default
    if value <= 0:
        log.warning(f"{name}={value} must be positive; using default {default}")
        return default
    return value


def load_inventory_settings(dotenv_dir: Optional[str] = None) -> InventorySettings:
    """Resolve capacity limits and storage location from env, then .env."""
    env = _read_dotenv(dotenv_dir or os.getcwd())
    quota = _int_setting("INVOTRACK_STORE_QUOTA_BYTES", env, STORE_QUOTA_BYTES, minimum=0)
    settings = InventorySettings(
        max_inventory_items=_int_setting("INVOTRACK_MAX_INVENTORY_ITEMS", env, MAX_INVENTORY_ITEMS),
        max_invoice_history_items=_int_setting(
            "INVOTRACK_MAX_INVOICE_HISTORY_ITEMS", env, MAX_INVOICE_HISTORY_ITEMS
        ),
        staging_max_age_hours=_float_setting("INVOTRACK_STAGING_MAX_AGE_HOURS", env, STAGING_MAX_AGE_HOURS),
        # 0 disables the quota
        store_quota_bytes=quota or None,
        max_scan_result_bytes=_int_setting("INVOTRACK_MAX_SCAN_RESULT_BYTES", env, MAX_SCAN_RESULT_BYTES),
        db_path=_lookup("INVOTRACK_DB_PATH", env),
    )
    log.debug(f"Inventory settings: {settings}")
    return settings
