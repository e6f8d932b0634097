from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional
import re

from pydantic import ValidationError

from .config import (
    default_settings,
    load_datastore_config,
    save_datastore_config,
)
from .models import FieldDefinition


# -------------------------------
# Schema Registry
#   - The settings document lives in <store>/dtstore.yml
#   - Field order defines display and CSV export column order
#   - At most one field carries isPrimary
# -------------------------------


def _derive_field_id(label: str) -> str:
    return re.sub(r"\s+", "_", str(label or "").strip().lower())


def _parse_field(raw) -> FieldDefinition:
    if isinstance(raw, FieldDefinition):
        return raw
    if not isinstance(raw, dict):
        raise ValueError("field definitions must be mappings")
    try:
        return FieldDefinition.model_validate(raw)
    except ValidationError as e:
        fid = raw.get("id") or raw.get("label") or "?"
        msgs = "; ".join(f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors())
        raise ValueError(f"Invalid field '{fid}': {msgs}") from None


def _check_fields(fields: List[FieldDefinition]) -> None:
    seen = set()
    for f in fields:
        if f.id in seen:
            raise ValueError(f"Duplicate field id '{f.id}'")
        seen.add(f.id)
    primaries = [f.id for f in fields if f.is_primary]
    if len(primaries) > 1:
        raise ValueError(f"Only one primary field is allowed (got: {', '.join(primaries)})")


def _clean_statuses(values) -> List[str]:
    out: List[str] = []
    for v in values or []:
        s = str(v).strip()
        if s and s not in out:
            out.append(s)
    return out


def _load_fields(store: Path) -> List[FieldDefinition]:
    return [_parse_field(f) for f in get_settings(store)["fields"]]


def _write(store: Path, settings: dict) -> dict:
    doc = {}
    version = load_datastore_config(store).get("devicetracker_version")
    if version:
        doc["devicetracker_version"] = version
    doc.update(settings)
    save_datastore_config(store, doc)
    return get_settings(store)


def _save_fields(store: Path, fields: List[FieldDefinition]) -> dict:
    _check_fields(fields)
    settings = get_settings(store)
    settings["fields"] = [f.to_doc() for f in fields]
    return _write(store, settings)


def _index_of(fields: List[FieldDefinition], field_id: str) -> int:
    for i, f in enumerate(fields):
        if f.id == field_id:
            return i
    raise FileNotFoundError(f"Field '{field_id}' not found")


# Public API

def get_settings(store: Path) -> Dict:
    """Return the settings document with defaults filled in.

    Unparseable field entries are skipped so a hand-edited dtstore.yml never
    blocks reads; save_settings() is strict.
    """
    raw = load_datastore_config(store)
    base = default_settings()
    fields_raw = raw.get("fields")
    fields: List[dict] = []
    if isinstance(fields_raw, list):
        for f in fields_raw:
            try:
                fields.append(_parse_field(f).to_doc())
            except ValueError as e:
                print(f"[devicetracker] Warning: skipping field in settings: {e}")
    else:
        fields = [_parse_field(f).to_doc() for f in base["fields"]]
    statuses = raw.get("status_options")
    imp = raw.get("import") if isinstance(raw.get("import"), dict) else base["import"]
    return {
        "fields": fields,
        "status_options": _clean_statuses(statuses) if isinstance(statuses, list) else base["status_options"],
        "registration_enabled": bool(raw.get("registration_enabled", True)),
        "import": dict(imp),
    }


def save_settings(store: Path, settings: Dict) -> Dict:
    """Replace the whole settings document after validation.

    Accepts the camelCase keys used by browser clients (statusOptions,
    registrationEnabled) as well as the stored snake_case keys.
    """
    if not isinstance(settings, dict):
        raise ValueError("settings must be an object")
    current = get_settings(store)
    fields_raw = settings.get("fields", current["fields"])
    if not isinstance(fields_raw, list):
        raise ValueError("fields must be a list")
    fields = [_parse_field(f) for f in fields_raw]
    _check_fields(fields)
    # Same primary rules as remove_field/edit_field
    cur_primary = next((f["id"] for f in current["fields"] if f.get("isPrimary")), None)
    if cur_primary and cur_primary not in {f.id for f in fields}:
        raise ValueError(f"Cannot remove primary field '{cur_primary}'; designate a new primary field first")
    if cur_primary and not any(f.is_primary for f in fields):
        raise ValueError("A primary field is required; designate another primary field instead")
    statuses =settings.get("status_options", settings.get("statusOptions", current["status_options"]))
    if not isinstance(statuses, list):
        raise ValueError("status_options must be a list")
    reg = settings.get("registration_enabled", settings.get("registrationEnabled", current["registration_enabled"]))
    imp = settings.get("import", current["import"])
    doc = {
        "fields": [f.to_doc() for f in fields],
        "status_options": _clean_statuses(statuses),
        "registration_enabled": bool(reg),
        "import": imp if isinstance(imp, dict) else current["import"],
    }
    return _write(store, doc)


def get_fields(store: Path) -> List[Dict]:
    return get_settings(store)["fields"]


def get_field(store: Path, field_id: str) -> Dict:
    for f in get_fields(store):
        if f.get("id") == field_id:
            return f
    raise FileNotFoundError(f"Field '{field_id}' not found")


def primary_field(fields: List[Dict]) -> Optional[Dict]:
    """Return the field used to group records for summary statistics.

    Falls back to the third field, then the first, when none is flagged.
    """
    if not fields:
        return None
    for f in fields:
        if f.get("isPrimary"):
            return f
    return fields[2] if len(fields) > 2 else fields[0]


def add_field(
    store: Path,
    label: str,
    type: str = "text",
    options: Optional[List[str]] = None,
    is_primary: bool = False,
    *,
    field_id: Optional[str] = None,
    required: bool = False,
) -> Dict:
    """Append a field to the schema.

    The id defaults to the label lowercased with whitespace runs replaced by
    underscores. Reserved record keys and duplicate ids are rejected. Adding a
    primary field clears isPrimary on every other field.
    """
    fid = (field_id or "").strip() or _derive_field_id(label)
    new = _parse_field({
        "id": fid,
        "label": label,
        "type": type,
        "options": options,
        "isPrimary": bool(is_primary),
        "required": bool(required),
    })
    fields = _load_fields(store)
    if any(f.id == new.id for f in fields):
        raise ValueError(f"Field '{new.id}' already exists")
    if new.is_primary:
        for f in fields:
            f.is_primary = False
    fields.append(new)
    return _save_fields(store, fields)


def edit_field(store: Path, field_id: str, **changes) -> Dict:
    """Edit label, type, options, isPrimary or required of an existing field.

    The id is stable. Setting isPrimary clears it everywhere else; clearing
    it on the current primary field is rejected.
    """
    fields = _load_fields(store)
    idx = _index_of(fields, field_id)
    cur = fields[idx].to_doc()
    if "id" in changes and changes["id"] != field_id:
        raise ValueError("Field id cannot be changed")
    if "is_primary" in changes:
        changes["isPrimary"] = changes.pop("is_primary")
    for key in ("label", "type", "options", "isPrimary", "required"):
        if key in changes and changes[key] is not None:
            cur[key] = changes[key]
    updated = _parse_field(cur)
    if fields[idx].is_primary and not updated.is_primary:
        raise ValueError("Cannot unset the primary field; designate another primary field instead")
    if updated.is_primary:
        for f in fields:
            f.is_primary = False
    fields[idx] = updated
    return _save_fields(store, fields)


def remove_field(store: Path, field_id: str) -> Dict:
    """Remove a field from the schema. Existing record values are kept."""
    fields = _load_fields(store)
    idx = _index_of(fields, field_id)
    if fields[idx].is_primary:
        raise ValueError(f"Cannot remove primary field '{field_id}'; designate a new primary field first")
    del fields[idx]
    return _save_fields(store, fields)


def move_field(store: Path, field_id: str, direction: str) -> Dict:
    """Swap a field with its neighbour ('up' or 'down'); no-op at the ends."""
    d = str(direction or "").strip().lower()
    if d not in ("up", "down"):
        raise ValueError("direction must be 'up' or 'down'")
    fields = _load_fields(store)
    idx = _index_of(fields, field_id)
    other = idx - 1 if d == "up" else idx + 1
    if 0 <= other < len(fields):
        fields[idx], fields[other] = fields[other], fields[idx]
    return _save_fields(store, fields)


def add_field_option(store: Path, field_id: str, option: str) -> Dict:
    fields = _load_fields(store)
    idx = _index_of(fields, field_id)
    f = fields[idx]
    if f.type != "select":
        raise ValueError(f"Field '{field_id}' is not a select field")
    opt = str(option or "").strip()
    if opt and opt not in (f.options or []):
        f.options = list(f.options or []) + [opt]
    return _save_fields(store, fields)


def remove_field_option(store: Path, field_id: str, option: str) -> Dict:
    fields = _load_fields(store)
    idx = _index_of(fields, field_id)
    f = fields[idx]
    if f.type != "select":
        raise ValueError(f"Field '{field_id}' is not a select field")
    f.options = [o for o in (f.options or []) if o != option]
    return _save_fields(store, fields)


def add_status_option(store: Path, status: str) -> Dict:
    settings = get_settings(store)
    s = str(status or "").strip()
    if not s or s in settings["status_options"]:
        return settings
    settings["status_options"].append(s)
    return _write(store, settings)


def remove_status_option(store: Path, status: str) -> Dict:
    settings = get_settings(store)
    settings["status_options"] = [s for s in settings["status_options"] if s != status]
    return _write(store, settings)


def set_registration_enabled(store: Path, enabled: bool) -> Dict:
    settings = get_settings(store)
    settings["registration_enabled"] = bool(enabled)
    return _write(store, settings)
