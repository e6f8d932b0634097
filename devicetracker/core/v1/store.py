from __future__ import annotations

from pathlib import Path

from .config import (
    DATASTORE_CONFIG_FILENAME,
    DT_TOOL_VERSION,
    default_settings,
    load_config,
    save_config,
    save_datastore_config,
)
from .records import purge_records
from .users import purge_users, seed_default_users


def init_datastore(store_path: Path) -> Path:
    """Create a datastore directory with the default settings and seed admin.

    Idempotent: an existing dtstore.yml is left untouched.
    """
    store_path = store_path.expanduser().resolve()
    store_path.mkdir(parents=True, exist_ok=True)
    (store_path / "records").mkdir(parents=True, exist_ok=True)
    (store_path / "users").mkdir(parents=True, exist_ok=True)
    if not (store_path / DATASTORE_CONFIG_FILENAME).exists():
        doc = {"devicetracker_version": DT_TOOL_VERSION}
        doc.update(default_settings())
        save_datastore_config(store_path, doc)
    seed_default_users(store_path)
    return store_path


def set_default_datastore(store_path: Path) -> None:
    cfg = load_config()
    cfg["default_datastore"] = str(store_path)
    save_config(cfg)


def reset_datastore(store_path: Path) -> dict:
    """Delete every record and non-seed user and restore the default settings.

    Returns counts of what was removed.
    """
    removed_records = purge_records(store_path)
    removed_users = purge_users(store_path, keep_seed=True)
    doc = {"devicetracker_version": DT_TOOL_VERSION}
    doc.update(default_settings())
    save_datastore_config(store_path, doc)
    seed_default_users(store_path)
    return {"records": removed_records, "users": removed_users}
