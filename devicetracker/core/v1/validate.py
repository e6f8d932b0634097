from __future__ import annotations
from pathlib import Path
from typing import Dict, List
import json
import yaml

from .config import DATASTORE_CONFIG_FILENAME, FIELD_TYPES, RESERVED_RECORD_KEYS, load_datastore_config
from .ids import validate_record_id


def _rel(p: Path, root: Path) -> str:
    try:
        return str(p.relative_to(root))
    except ValueError:
        return str(p)


def _load_yaml(p: Path):
    with open(p) as f:
        return yaml.safe_load(f)


def _issue(issues: List[Dict], severity: str, code: str, path: str, message: str) -> None:
    issues.append({"severity": severity, "code": code, "path": path, "message": message})


def _scan_settings(store: Path, issues: List[Dict]) -> Dict:
    """Check the schema document and return the fields/status options it declares."""
    cfg_path = DATASTORE_CONFIG_FILENAME
    if not (store / DATASTORE_CONFIG_FILENAME).exists():
        _issue(issues, "warning", "CFG_MISSING", cfg_path,
               "No dtstore.yml; built-in default settings are in effect")
        return {"fields": None, "status_options": None}
    try:
        cfg = load_datastore_config(store)
    except yaml.YAMLError:
        _issue(issues, "error", "CFG_INVALID", cfg_path, "dtstore.yml is not valid YAML")
        return {"fields": None, "status_options": None}

    fields = cfg.get("fields")
    ids: List[str] = []
    if fields is not None and not isinstance(fields, list):
        _issue(issues, "error", "CFG_FIELDS_NOT_LIST", cfg_path, "'fields' must be a list")
        fields = None
    primaries = []
    for idx, f in enumerate(fields or []):
        where = f"{cfg_path}:fields[{idx}]"
        if not isinstance(f, dict):
            _issue(issues, "error", "FIELD_NOT_MAPPING", where, "Field definition must be a mapping")
            continue
        fid = str(f.get("id") or "").strip()
        if not fid:
            _issue(issues, "error", "FIELD_ID_MISSING", where, "Field is missing 'id'")
            continue
        if fid in RESERVED_RECORD_KEYS:
            _issue(issues, "error", "FIELD_ID_RESERVED", where, f"Field id '{fid}' is a reserved record key")
        if fid in ids:
            _issue(issues, "error", "FIELD_ID_DUPLICATE", where, f"Duplicate field id '{fid}'")
        ids.append(fid)
        ftype = f.get("type", "text")
        if ftype not in FIELD_TYPES:
            _issue(issues, "error", "FIELD_TYPE_INVALID", where, f"Unknown field type '{ftype}'")
        if ftype == "select" and fid != "status" and not f.get("options"):
            _issue(issues, "warning", "FIELD_SELECT_NO_OPTIONS", where,
                   f"Select field '{fid}' has no options")
        if f.get("isPrimary"):
            primaries.append(fid)
    if len(primaries) > 1:
        _issue(issues, "error", "FIELD_MULTIPLE_PRIMARY", cfg_path,
               f"More than one primary field: {', '.join(primaries)}")

    statuses = cfg.get("status_options")
    if statuses is not None and not isinstance(statuses, list):
        _issue(issues, "error", "CFG_STATUS_NOT_LIST", cfg_path, "'status_options' must be a list")
        statuses = None
    return {
        "fields": ids if fields is not None else None,
        "status_options": [str(s) for s in statuses] if statuses is not None else None,
    }


def _scan_history(store: Path, hist: Path, issues: List[Dict]) -> None:
    last_date = ""
    with open(hist) as f:
        for idx, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except ValueError:
                _issue(issues, "error", "HIST_JSON", _rel(hist, store), f"Line {idx}: invalid JSON")
                continue
            if not isinstance(obj, dict):
                _issue(issues, "error", "HIST_OBJ", _rel(hist, store), f"Line {idx}: entry must be a JSON object")
                continue
            missing = [k for k in ("id", "date", "action") if not obj.get(k)]
            if missing:
                _issue(issues, "error", "HIST_FIELDS_REQUIRED", _rel(hist, store),
                       f"Line {idx}: missing {', '.join(missing)}")
                continue
            date = str(obj["date"])
            if date < last_date:
                _issue(issues, "error", "HIST_ORDER", _rel(hist, store),
                       f"Line {idx}: event dated {date} is older than the previous event ({last_date})")
            last_date = max(last_date, date)


def _scan_records(store: Path, issues: List[Dict], field_ids, status_options) -> None:
    root = store / "records"
    if not root.exists():
        return
    for stray in sorted(p for p in root.iterdir() if p.is_file()):
        _issue(issues, "error", "REC_LAYOUT_SINGLE_FILE", _rel(stray, store),
               "Records must live under records/<id>/record.yml")
    for d in sorted(p for p in root.iterdir() if p.is_dir()):
        try:
            validate_record_id(d.name)
        except ValueError as e:
            _issue(issues, "error", "REC_ID_INVALID", f"records/{d.name}/", str(e))
            continue
        fp = d / "record.yml"
        if not fp.exists():
            _issue(issues, "error", "REC_YML_MISSING", f"records/{d.name}/", "Missing record.yml")
            continue
        try:
            data = _load_yaml(fp)
        except yaml.YAMLError:
            _issue(issues, "error", "REC_YML_INVALID", _rel(fp, store), "record.yml is not valid YAML")
            continue
        if not isinstance(data, dict):
            _issue(issues, "error", "REC_YML_INVALID", _rel(fp, store), "record.yml must be a YAML mapping")
            continue
        for key in ("id", "historyLog"):
            if key in data:
                _issue(issues, "error", "REC_RESERVED_KEY", _rel(fp, store),
                       f"Do not store '{key}' in record.yml")
        if field_ids is not None:
            stale = sorted(k for k in data if k not in field_ids and k not in RESERVED_RECORD_KEYS)
            if stale:
                _issue(issues, "warning", "REC_STALE_KEYS", _rel(fp, store),
                       f"Keys not in the current schema: {', '.join(stale)}")
        status = data.get("status")
        if status_options is not None and status not in (None, "") and str(status) not in status_options:
            _issue(issues, "warning", "REC_STATUS_UNKNOWN", _rel(fp, store),
                   f"Status '{status}' is not a configured status option")
        hist = d / "history.ndjson"
        if not hist.exists():
            _issue(issues, "warning", "HIST_MISSING", f"records/{d.name}/", "Record has no history.ndjson")
            continue
        _scan_history(store, hist, issues)


def _scan_users(store: Path, issues: List[Dict]) -> None:
    fp = store / "users" / "users.yml"
    if not fp.exists():
        _issue(issues, "warning", "USERS_MISSING", "users/users.yml", "No user directory; run init to seed it")
        return
    try:
        data = _load_yaml(fp)
    except yaml.YAMLError:
        _issue(issues, "error", "USERS_INVALID", _rel(fp, store), "users.yml is not valid YAML")
        return
    if not isinstance(data, list):
        _issue(issues, "error", "USERS_INVALID", _rel(fp, store), "users.yml must be a list")
        return
    seen = set()
    for idx, u in enumerate(data):
        email = str((u or {}).get("email") or "").strip().lower() if isinstance(u, dict) else ""
        if not email:
            _issue(issues, "error", "USER_EMAIL_MISSING", f"users/users.yml[{idx}]", "User is missing an email")
            continue
        if email in seen:
            _issue(issues, "error", "USER_EMAIL_DUPLICATE", f"users/users.yml[{idx}]",
                   f"Duplicate user email '{email}'")
        seen.add(email)


def validate_store(store_path: Path) -> Dict:
    """Validate datastore structure and content.

    Returns a dict: { errors: int, warnings: int, issues: [ {severity, code, path, message} ] }
    """
    issues: List[Dict] = []
    declared = _scan_settings(store_path, issues)
    _scan_records(store_path, issues, declared["fields"], declared["status_options"])
    _scan_users(store_path, issues)

    errors = sum(1 for i in issues if i.get("severity") == "error")
    warnings = sum(1 for i in issues if i.get("severity") == "warning")
    return {"errors": errors, "warnings": warnings, "issues": issues}
