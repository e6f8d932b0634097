from __future__ import annotations
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from devicetracker.core.v1.records import (
    RecordConflictError,
    create_record,
    get_record,
    list_records,
    update_record,
    delete_record,
    upsert_records,
    import_records,
    record_history,
    sort_records,
    search_records,
    inventory_stats,
    equipment_stats,
    display_status,
)
from devicetracker.core.v1.schema import add_field, get_fields


@pytest.fixture()
def store(tmp_path: Path) -> Path:
    p = tmp_path / "store"
    p.mkdir()
    return p


def test_create_record_assigns_id_revision_and_creation_event(store: Path):
    rec = create_record(store, {"equipmentDescription": "Laptop", "assetTag": "A-1"}, user="Alice")
    assert len(rec["id"]) == 26
    assert rec["_rev"] == 1
    assert rec["equipmentDescription"] == "Laptop"
    assert len(rec["historyLog"]) == 1
    ev = rec["historyLog"][0]
    assert ev["action"] == "Creation"
    assert ev["user"] == "Alice"
    assert ev["details"] == "Initial registration"
    assert ev["date"].endswith("Z")
    # Layout: identity is the directory name, not a stored key
    stored = (store / "records" / rec["id"] / "record.yml").read_text()
    assert "historyLog" not in stored
    assert "\nid:" not in stored and not stored.startswith("id:")


def test_reserved_keys_in_create_payload_are_ignored(store: Path):
    rec = create_record(store, {
        "id": "client-id",
        "historyLog": [{"id": "x", "date": "1999", "action": "Forged"}],
        "_rev": 42,
        "assetTag": "A-2",
    })
    assert rec["id"] != "client-id"
    assert rec["_rev"] == 1
    assert [e["action"] for e in rec["historyLog"]] == ["Creation"]


def test_update_is_shallow_merge_with_update_event(store: Path):
    rec = create_record(store, {"assetTag": "A-1", "status": "Available", "location": "Lab"})
    out = update_record(store, rec["id"], {"status": "In Use", "comments": "desk 4"}, user="Bob")
    assert out["status"] == "In Use"
    assert out["comments"] == "desk 4"
    assert out["location"] == "Lab"
    assert out["assetTag"] == "A-1"
    assert out["_rev"] == 2
    last = out["historyLog"][-1]
    assert last["action"] == "Update"
    assert last["user"] == "Bob"
    assert last["details"] == "Properties modified: comments, status"


def test_history_is_append_only_and_ordered(store: Path):
    rec = create_record(store, {"assetTag": "A-1"})
    for i in range(3):
        update_record(store, rec["id"], {"comments": f"c{i}"})
    hist = record_history(store, rec["id"])
    assert [e["action"] for e in hist] == ["Creation", "Update", "Update", "Update"]
    dates = [e["date"] for e in hist]
    assert dates == sorted(dates)
    assert hist[0] == rec["historyLog"][0]


def test_stale_revision_is_rejected_without_write(store: Path):
    rec = create_record(store, {"status": "Available"})
    update_record(store, rec["id"], {"status": "In Use"}, expected_rev=1)
    with pytest.raises(RecordConflictError):
        update_record(store, rec["id"], {"status": "Missing"}, expected_rev=1)
    cur = get_record(store, rec["id"])
    assert cur["status"] == "In Use"
    assert cur["_rev"] == 2
    assert len(cur["historyLog"]) == 2


def test_update_requires_changes_and_existing_record(store: Path):
    rec = create_record(store, {"status": "Available"})
    with pytest.raises(ValueError):
        update_record(store, rec["id"], {"_rev": 1})
    with pytest.raises(FileNotFoundError):
        update_record(store, "01HZZZZZZZZZZZZZZZZZZZZZZZ", {"status": "x"})


def test_invalid_record_id_rejected(store: Path):
    with pytest.raises(ValueError):
        get_record(store, "../etc")


def test_typed_values_checked_against_schema(store: Path):
    add_field(store, "Cost", "number")
    add_field(store, "Purchased", "date")
    add_field(store, "Condition", "select", ["New", "Used"])
    fields = get_fields(store)
    with pytest.raises(ValueError):
        create_record(store, {"cost": "cheap"}, fields=fields)
    with pytest.raises(ValueError):
        create_record(store, {"purchased": "last week"}, fields=fields)
    with pytest.raises(ValueError):
        create_record(store, {"condition": "Broken"}, fields=fields)
    # status is a select but never enforced
    rec = create_record(store, {"cost": "12.5", "purchased": "2024-03-01", "condition": "Used",
                                "status": "Somewhere"}, fields=fields)
    assert rec["status"] == "Somewhere"
    assert list_records(store) == [get_record(store, rec["id"])]


def test_required_fields_enforced_on_creation_only(store: Path):
    add_field(store, "Owner Email", required=True)
    fields = get_fields(store)
    with pytest.raises(ValueError):
        create_record(store, {"assetTag": "A-1"}, fields=fields)
    rec = create_record(store, {"assetTag": "A-1", "owner_email": "a@b.c"}, fields=fields)
    out = update_record(store, rec["id"], {"comments": "ok"}, fields=fields)
    assert out["comments"] == "ok"


def test_delete_is_hard(store: Path):
    rec = create_record(store, {"assetTag": "A-1"})
    delete_record(store, rec["id"])
    assert list_records(store) == []
    assert not (store / "records" / rec["id"]).exists()
    with pytest.raises(FileNotFoundError):
        get_record(store, rec["id"])


def test_upsert_merges_known_ids_and_creates_the_rest(store: Path):
    a = create_record(store, {"assetTag": "A-1", "status": "Available"})
    res = upsert_records(store, [
        {"id": a["id"], "status": "Missing", "historyLog": []},
        {"assetTag": "B-1"},
        {"id": "legacy-7", "assetTag": "C-1"},
    ], user="Admin")
    assert res["updated"] == [a["id"]]
    assert len(res["created"]) == 2
    assert "legacy-7" in res["created"]
    cur = get_record(store, a["id"])
    assert cur["status"] == "Missing"
    assert cur["assetTag"] == "A-1"
    assert [e["action"] for e in cur["historyLog"]] == ["Creation", "Update"]
    assert len(list_records(store)) == 3


def test_upsert_replace_drops_existing_records(store: Path):
    create_record(store, {"assetTag": "A-1"})
    create_record(store, {"assetTag": "A-2"})
    res = upsert_records(store, {"assetTag": "only"}, replace=True)
    recs = list_records(store)
    assert [r["assetTag"] for r in recs] == ["only"]
    assert res["created"] == [recs[0]["id"]]


def test_import_records_writes_bulk_import_events(store: Path):
    out = import_records(store, [{"assetTag": "X"}, {"assetTag": "Y"}], user="Importer")
    assert len(out) == 2
    for rec in out:
        ev = rec["historyLog"][0]
        assert ev["action"] == "Bulk Import"
        assert ev["details"] == "Batch imported from file"
        assert ev["user"] == "Importer"


def test_malformed_history_line_is_skipped(store: Path, capsys):
    rec = create_record(store, {"assetTag": "A-1"})
    hist = store / "records" / rec["id"] / "history.ndjson"
    with open(hist, "a") as f:
        f.write("{not json\n")
    assert len(get_record(store, rec["id"])["historyLog"]) == 1
    assert "malformed history line" in capsys.readouterr().out


def test_sort_search_and_stats():
    recs = [
        {"id": "1", "entryDate": "2024-01-05", "equipmentDescription": "Laptop", "status": "Available",
         "deviceType": "Dell"},
        {"id": "2", "entryDate": "2024-03-01", "equipmentDescription": "Laptop", "status": "in use"},
        {"id": "3", "entryDate": "2023-12-31", "equipmentDescription": "", "status": "Need Repair",
         "comments": "Screen cracked"},
        {"id": "4", "equipmentDescription": "Scanner", "status": "Gone"},
    ]
    assert [r["id"] for r in sort_records(recs)] == ["2", "1", "3", "4"]

    fields = [{"id": "entryDate"}, {"id": "equipmentDescription", "isPrimary": True}, {"id": "comments"}]
    assert [r["id"] for r in search_records(recs, "SCREEN", fields)] == ["3"]
    assert search_records(recs, "dell", fields) == []  # deviceType is not a schema field here
    assert len(search_records(recs, "  ", fields)) == 4

    assert inventory_stats(recs) == {"total": 4, "available": 1, "inUse": 1, "needRepair": 1}

    eq = equipment_stats(recs, fields)
    assert eq[0] == {"description": "Laptop", "manufacturer": "Dell", "count": 2}
    descs = {e["description"]: e for e in eq}
    assert descs["Unlabeled Equipment"]["manufacturer"] == "General"
    assert descs["Scanner"]["count"] == 1


def test_display_status_unknown_for_unrecognized_values():
    opts = ["Available", "In Use"]
    assert display_status({"status": "In Use"}, opts) == "In Use"
    assert display_status({"status": "Lost"}, opts) == "Unknown"
    assert display_status({}, opts) == "Unknown"
