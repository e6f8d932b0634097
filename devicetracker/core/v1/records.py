from __future__ import annotations

from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, Optional
import json
import re
import shutil
import yaml

from .config import IGNORED_UPDATE_KEYS
from .ids import new_ulid, now_iso, validate_record_id
from .models import HistoryEvent
from .schema import primary_field


class RecordConflictError(ValueError):
    """Raised when an update carries a stale _rev for the stored record."""


# -------------------------------
# Record Store
#   - records/<id>/record.yml      dynamic fields + _rev (identity is the dir name)
#   - records/<id>/history.ndjson  append-only HistoryEvent journal
# -------------------------------


def _records_dir(store: Path) -> Path:
    p = store / "records"
    p.mkdir(parents=True, exist_ok=True)
    return p


def _record_dir(store: Path, record_id: str) -> Path:
    validate_record_id(record_id)
    return _records_dir(store) / record_id


def _record_file(store: Path, record_id: str) -> Path:
    return _record_dir(store, record_id) / "record.yml"


def _history_file(store: Path, record_id: str) -> Path:
    return _record_dir(store, record_id) / "history.ndjson"


def _read_yaml(p: Path) -> dict:
    with open(p) as f:
        return yaml.safe_load(f) or {}


def _write_yaml(p: Path, data: dict) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "w") as f:
        yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)


def _append_line(p: Path, line: str) -> None:
    p.parent.mkdir(parents=True, exist_ok=True)
    with open(p, "a") as f:
        f.write(line + "\n")


def _read_history(p: Path) -> List[dict]:
    if not p.exists():
        return []
    events: List[dict] = []
    with open(p) as f:
        for n, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                events.append(HistoryEvent.model_validate(json.loads(line)).model_dump())
            except ValueError:
                print(f"[devicetracker] Warning: skipping malformed history line {n} in {p}")
    return events


def _append_event(store: Path, record_id: str, *, user: str, action: str, details: str) -> dict:
    ev = HistoryEvent(id=new_ulid(), date=now_iso(), user=user or "System", action=action, details=details)
    data = ev.model_dump()
    _append_line(_history_file(store, record_id), json.dumps(data, ensure_ascii=False))
    return data


def _strip_reserved(data: Dict) -> Dict:
    return {k: v for k, v in (data or {}).items() if k not in IGNORED_UPDATE_KEYS}


def _assemble(store: Path, record_id: str, data: dict) -> dict:
    out = {"id": record_id}
    out.update({k: v for k, v in data.items() if k != "_rev"})
    out["_rev"] = int(data.get("_rev", 1) or 1)
    out["historyLog"] = _read_history(_history_file(store, record_id))
    return out


# -------------------------------
# Value checks (type-aware via the schema)
# -------------------------------
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")


def _check_values(fields: Optional[List[Dict]], data: Dict, *, require: bool) -> None:
    """Validate values of known fields. Unknown keys are allowed.

    - number: must parse as a number
    - date: must start with YYYY-MM-DD
    - select with options: must be one of them (status is never enforced)
    - required: enforced only when `require` is set (manual creation)
    """
    if not fields:
        return
    for f in fields:
        fid = f.get("id")
        value = data.get(fid)
        blank = value is None or str(value).strip() == ""
        if require and f.get("required") and blank:
            raise ValueError(f"Missing required field: {f.get('label') or fid}")
        if blank or fid not in data:
            continue
        s = str(value).strip()
        ftype = f.get("type", "text")
        if ftype == "number":
            try:
                float(s)
            except ValueError:
                raise ValueError(f"Field '{fid}' must be a number") from None
        elif ftype == "date":
            if _DATE_RE.match(s) is None:
                raise ValueError(f"Field '{fid}' must be a date (YYYY-MM-DD)")
        elif ftype == "select" and fid != "status":
            opts = f.get("options") or []
            if opts and s not in opts:
                raise ValueError(f"Field '{fid}' must be one of: {', '.join(opts)}")


# Public API

def list_records(store: Path) -> List[dict]:
    out: List[dict] = []
    root = _records_dir(store)
    for d in sorted([p for p in root.iterdir() if p.is_dir()]):
        fp = d / "record.yml"
        if not fp.exists():
            continue
        try:
            data = _read_yaml(fp)
            if not isinstance(data, dict):
                data = {}
            out.append(_assemble(store, d.name, data))
        except (OSError, ValueError, yaml.YAMLError) as e:
            print(f"[devicetracker] Warning: skipping unreadable record '{d.name}': {e}")
            continue
    return out


def get_record(store: Path, record_id: str) -> dict:
    fp = _record_file(store, record_id)
    if not fp.exists():
        raise FileNotFoundError(f"Record '{record_id}' not found")
    data = _read_yaml(fp)
    if not isinstance(data, dict):
        data = {}
    return _assemble(store, record_id, data)


def record_exists(store: Path, record_id: str) -> bool:
    return _record_file(store, record_id).exists()


def record_history(store: Path, record_id: str) -> List[dict]:
    if not record_exists(store, record_id):
        raise FileNotFoundError(f"Record '{record_id}' not found")
    return _read_history(_history_file(store, record_id))


def create_record(
    store: Path,
    data: Dict,
    *,
    user: str = "System",
    action: str = "Creation",
    details: str = "Initial registration",
    fields: Optional[List[Dict]] = None,
    record_id: Optional[str] = None,
) -> dict:
    """Store a new record and append its first history event.

    Reserved keys in `data` are ignored. When `fields` is given, values are
    checked against their field types and required fields are enforced.
    """
    if data is not None and not isinstance(data, dict):
        raise ValueError("record data must be an object")
    body = _strip_reserved(data or {})
    _check_values(fields, body, require=True)
    rid = record_id or new_ulid()
    fp = _record_file(store, rid)
    if fp.exists():
        raise FileExistsError(f"Record '{rid}' already exists")
    doc = dict(body)
    doc["_rev"] = 1
    _write_yaml(fp, doc)
    _append_event(store, rid, user=user, action=action, details=details)
    return get_record(store, rid)


def update_record(
    store: Path,
    record_id: str,
    updates: Dict,
    *,
    user: str = "System",
    expected_rev: Optional[int] = None,
    fields: Optional[List[Dict]] = None,
) -> dict:
    """Shallow-merge `updates` into a record and append an "Update" event.

    Keys absent from `updates` are left untouched. If `expected_rev` is given
    and does not match the stored revision, RecordConflictError is raised
    and nothing is written.
    """
    if not isinstance(updates, dict):
        raise ValueError("updates must be an object")
    changes = _strip_reserved(updates)
    if not changes:
        raise ValueError("updates must contain at least one field")
    fp = _record_file(store, record_id)
    if not fp.exists():
        raise FileNotFoundError(f"Record '{record_id}' not found")
    data = _read_yaml(fp)
    if not isinstance(data, dict):
        data = {}
    cur_rev = int(data.get("_rev", 1) or 1)
    if expected_rev is not None:
        try:
            exp = int(expected_rev)
        except (TypeError, ValueError):
            raise ValueError("_rev must be an integer") from None
        if exp != cur_rev:
            raise RecordConflictError(
                f"Record '{record_id}' was modified concurrently (expected revision {exp}, found {cur_rev})"
            )
    _check_values(fields, changes, require=False)
    data.update(changes)
    data["_rev"] = cur_rev + 1
    _write_yaml(fp, data)
    keys = ", ".join(sorted(changes.keys()))
    _append_event(store, record_id, user=user, action="Update", details=f"Properties modified: {keys}")
    return get_record(store, record_id)


def delete_record(store: Path, record_id: str) -> dict:
    """Remove a record and its history entirely (no tombstone)."""
    rec = get_record(store, record_id)
    shutil.rmtree(_record_dir(store, record_id))
    return rec


def purge_records(store: Path) -> int:
    root = _records_dir(store)
    n = 0
    for d in [p for p in root.iterdir() if p.is_dir()]:
        shutil.rmtree(d)
        n += 1
    return n


def upsert_records(
    store: Path,
    records,
    *,
    user: str = "System",
    replace: bool = False,
) -> Dict:
    """Bulk save one record or a list of records.

    - Records whose id exists are shallow-merged (their _rev, when present,
      is checked); other records are created, keeping a client id if given.
    - replace=True deletes every stored record first.
    - Client-supplied historyLog entries are ignored; the server appends its own.
    Records are processed sequentially; a failure leaves earlier writes in place.
    """
    items = records if isinstance(records, list) else [records]
    if not all(isinstance(r, dict) for r in items):
        raise ValueError("records must be objects")
    if replace:
        purge_records(store)
    created: List[str] = []
    updated: List[str] = []
    for r in items:
        rid = str(r.get("id") or r.get("_id") or "").strip() or None
        if rid and record_exists(store, rid):
            changes = _strip_reserved(r)
            if not changes:
                continue
            update_record(store, rid, changes, user=user, expected_rev=r.get("_rev"))
            updated.append(rid)
        else:
            rec = create_record(store, r, user=user, record_id=rid)
            created.append(rec["id"])
    return {"created": created, "updated": updated}


def import_records(
    store: Path,
    candidates: Iterable[Dict],
    *,
    user: str = "System",
    replace: bool = False,
) -> List[dict]:
    """Create one record per reconciled CSV candidate ("Bulk Import" events)."""
    if replace:
        purge_records(store)
    out: List[dict] = []
    for c in candidates:
        out.append(create_record(
            store,
            c,
            user=user,
            action="Bulk Import",
            details="Batch imported from file",
        ))
    return out


# -------------------------------
# Listing helpers (ordering, search, stats)
# -------------------------------

def sort_records(records: List[dict], field: str = "entryDate") -> List[dict]:
    """Reverse order by case-insensitive comparison of the raw string value.

    Values are not parsed as dates; they must share a sortable text format.
    """
    return sorted(records, key=lambda r: str(r.get(field) or "").lower(), reverse=True)


def search_records(records: List[dict], query: str, fields: List[Dict]) -> List[dict]:
    """Keep records where any schema field's value contains `query` (case-insensitive)."""
    q = str(query or "").strip().lower()
    if not q:
        return list(records)
    ids = [f.get("id") for f in fields or []]
    out = []
    for r in records:
        for fid in ids:
            val = r.get(fid)
            if val and q in str(val).lower():
                out.append(r)
                break
    return out


def inventory_stats(records: List[dict]) -> Dict[str, int]:
    def _count(status: str) -> int:
        return sum(1 for r in records if str(r.get("status")).lower() == status)
    return {
        "total": len(records),
        "available": _count("available"),
        "inUse": _count("in use"),
        "needRepair": _count("need repair"),
    }


def equipment_stats(records: List[dict], fields: List[Dict]) -> List[Dict]:
    """Count records per primary field value, largest group first."""
    pf = primary_field(fields)
    if pf is None:
        return []
    counts: Dict[str, int] = defaultdict(int)
    manufacturers: Dict[str, str] = {}
    for r in records:
        key = str(r.get(pf["id"]) or "") or "Unlabeled Equipment"
        if key not in manufacturers:
            manufacturers[key] = str(r.get("deviceType") or "General")
        counts[key] += 1
    stats = [
        {"description": k, "manufacturer": manufacturers[k], "count": v}
        for k, v in counts.items()
    ]
    stats.sort(key=lambda s: s["count"], reverse=True)
    return stats


def display_status(record: Dict, status_options: List[str]) -> str:
    """Return the record status, or 'Unknown' when blank or outside the option set."""
    val = str(record.get("status") or "").strip()
    if not val or val not in (status_options or []):
        return "Unknown"
    return val
