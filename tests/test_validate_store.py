from __future__ import annotations
from pathlib import Path
import json
import sys

import pytest
import yaml

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from devicetracker.core.v1.records import create_record, update_record
from devicetracker.core.v1.schema import add_field, remove_field
from devicetracker.core.v1.store import init_datastore
from devicetracker.core.v1.validate import validate_store


def _codes(res, severity=None):
    return [i["code"] for i in res["issues"] if severity is None or i["severity"] == severity]


@pytest.fixture()
def store(tmp_path: Path) -> Path:
    return init_datastore(tmp_path / "store")


def test_fresh_store_is_clean(store: Path):
    create_record(store, {"equipmentDescription": "Laptop", "status": "Available"})
    res = validate_store(store)
    assert res["errors"] == 0, res
    assert res["warnings"] == 0, res


def test_values_for_removed_fields_are_warnings_only(store: Path):
    add_field(store, "Vendor")
    rec = create_record(store, {"vendor": "ACME", "status": "Available"})
    update_record(store, rec["id"], {"comments": "ok"})
    remove_field(store, "vendor")
    res = validate_store(store)
    assert res["errors"] == 0
    assert _codes(res, "warning") == ["REC_STALE_KEYS"]
    assert "vendor" in res["issues"][0]["message"]


def test_unknown_status_is_a_warning(store: Path):
    create_record(store, {"status": "On Loan"})
    res = validate_store(store)
    assert res["errors"] == 0
    assert "REC_STATUS_UNKNOWN" in _codes(res, "warning")


def test_history_out_of_order_is_an_error(store: Path):
    rec = create_record(store, {"status": "Available"})
    hist = store / "records" / rec["id"] / "history.ndjson"
    with open(hist, "a") as f:
        f.write(json.dumps({"id": "E2", "date": "2000-01-01T00:00:00.000Z", "action": "Update"}) + "\n")
        f.write("not json\n")
        f.write(json.dumps({"id": "E3", "action": "Update"}) + "\n")
    codes = _codes(validate_store(store), "error")
    assert "HIST_ORDER" in codes
    assert "HIST_JSON" in codes
    assert "HIST_FIELDS_REQUIRED" in codes


def test_identity_or_history_stored_in_record_file_is_an_error(store: Path):
    rec = create_record(store, {"status": "Available"})
    fp = store / "records" / rec["id"] / "record.yml"
    data = yaml.safe_load(fp.read_text())
    data["id"] = rec["id"]
    data["historyLog"] = []
    fp.write_text(yaml.safe_dump(data, sort_keys=False))
    res = validate_store(store)
    assert _codes(res, "error").count("REC_RESERVED_KEY") == 2


def test_bad_record_layout(store: Path):
    (store / "records" / "stray.yml").write_text("a: 1\n")
    (store / "records" / "bad id!").mkdir()
    (store / "records" / "empty").mkdir()
    codes = _codes(validate_store(store), "error")
    assert "REC_LAYOUT_SINGLE_FILE" in codes
    assert "REC_ID_INVALID" in codes
    assert "REC_YML_MISSING" in codes


def test_schema_problems_reported(store: Path):
    doc = yaml.safe_load((store / "dtstore.yml").read_text())
    doc["fields"] += [
        {"id": "historyLog", "label": "History"},
        {"id": "assetTag", "label": "Dup"},
        {"id": "weight", "label": "Weight", "type": "float"},
        {"id": "model", "label": "Model", "isPrimary": True},
        {"label": "No id"},
    ]
    (store / "dtstore.yml").write_text(yaml.safe_dump(doc, sort_keys=False))
    codes = _codes(validate_store(store), "error")
    for code in ("FIELD_ID_RESERVED", "FIELD_ID_DUPLICATE", "FIELD_TYPE_INVALID",
                 "FIELD_MULTIPLE_PRIMARY", "FIELD_ID_MISSING"):
        assert code in codes


def test_duplicate_user_emails_reported(store: Path):
    fp = store / "users" / "users.yml"
    users = yaml.safe_load(fp.read_text())
    dup = dict(users[0], id="X", email=users[0]["email"].upper())
    fp.write_text(yaml.safe_dump(users + [dup, {"id": "Y", "name": "No Email"}], sort_keys=False))
    codes = _codes(validate_store(store), "error")
    assert "USER_EMAIL_DUPLICATE" in codes
    assert "USER_EMAIL_MISSING" in codes


def test_missing_settings_and_users_are_warnings(tmp_path: Path):
    bare = tmp_path / "bare"
    bare.mkdir()
    res = validate_store(bare)
    assert res["errors"] == 0
    assert set(_codes(res, "warning")) == {"CFG_MISSING", "USERS_MISSING"}
