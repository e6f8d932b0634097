from __future__ import annotations
from pathlib import Path
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from devicetracker.core.v1.config import DEFAULT_FIELDS
from devicetracker.core.v1.reconcile import (
    decode_csv_bytes,
    export_csv,
    infer_status,
    reconcile,
    resolve_header,
    split_csv_line,
)


SMALL_SCHEMA = [
    {"id": "entryDate", "label": "Entry Date", "type": "text"},
    {"id": "equipmentDescription", "label": "Equipment Description", "type": "text", "isPrimary": True},
    {"id": "status", "label": "Status", "type": "select"},
]


def test_missing_status_without_owner_is_available():
    csv_text = '"Entry Date","Equipment Description","Status"\n"2024-01-01","Laptop A",""'
    out = reconcile(csv_text, SMALL_SCHEMA)
    assert out == [{"entryDate": "2024-01-01", "equipmentDescription": "Laptop A", "status": "Available"}]


def test_missing_status_with_owner_is_in_use():
    csv_text = (
        '"Entry Date","Equipment Description","Current Owner","Status"\n'
        '"2024-01-01","Laptop A","Alice",""'
    )
    out = reconcile(csv_text, SMALL_SCHEMA)
    assert len(out) == 1
    assert out[0]["status"] == "In Use"
    assert out[0]["currentOwner"] == "Alice"


@pytest.mark.parametrize("owner", ["", "N/A", "n/a", "\u2014", "   "])
def test_placeholder_owners_infer_available(owner):
    assert infer_status({"currentOwner": owner}) == "Available"


def test_explicit_status_is_kept():
    csv_text = "Equipment Description,Current Owner,Status\nPhone,Bob,Missing"
    assert reconcile(csv_text, SMALL_SCHEMA)[0]["status"] == "Missing"


def test_header_only_or_empty_input_yields_nothing():
    assert reconcile('"Entry Date","Status"', SMALL_SCHEMA) == []
    assert reconcile('"Entry Date","Status"\n\n   \n', SMALL_SCHEMA) == []
    assert reconcile("", SMALL_SCHEMA) == []


@pytest.mark.parametrize("header", ["Qty", "QTY", " qty ", "No", "#", "Sr. No", "Quantity"])
def test_counter_headers_never_populate_a_field(header):
    schema = SMALL_SCHEMA + [{"id": "qty", "label": "Qty", "type": "number"}, {"id": "no", "label": "No"}]
    csv_text = f"{header},Equipment Description\n5,Mouse"
    out = reconcile(csv_text, schema)
    assert out == [{"equipmentDescription": "Mouse", "status": "Available"}]


def test_headers_resolve_by_text_not_position():
    csv_text = "Status,Location,Equipment Description\nTaken,Shelf 2,Monitor"
    out = reconcile(csv_text, DEFAULT_FIELDS)
    assert out == [{"status": "Taken", "location": "Shelf 2", "equipmentDescription": "Monitor"}]


def test_header_whitespace_and_case_normalized():
    assert resolve_header("  SERIAL NUMBER / IMEI ", DEFAULT_FIELDS) == "serialNumber"
    assert resolve_header("type (device / accessory / pc)", DEFAULT_FIELDS) == "deviceType"
    assert resolve_header("\ufeffEntry   Date", DEFAULT_FIELDS) == "entryDate"


def test_custom_fields_resolve_by_label_or_id_and_unknown_headers_drop():
    schema = SMALL_SCHEMA + [{"id": "warranty_end", "label": "Warranty End", "type": "date"}]
    csv_text = "Warranty End,warranty_end,Colour,Equipment Description\n2026-01-01,2027-01-01,Red,Dock"
    out = reconcile(csv_text, schema)
    assert out[0]["equipmentDescription"] == "Dock"
    # Both columns resolve to the same id; the later column wins
    assert out[0]["warranty_end"] == "2027-01-01"
    assert "Colour" not in out[0] and "colour" not in out[0]


def test_rows_with_no_resolved_columns_are_skipped():
    assert reconcile("Colour,Size\nRed,L\nBlue,M", SMALL_SCHEMA) == []


def test_short_rows_fill_missing_cells_with_empty_strings():
    csv_text = "Equipment Description,Location,Comments\nCable"
    out = reconcile(csv_text, DEFAULT_FIELDS)
    assert out == [{"equipmentDescription": "Cable", "location": "", "comments": "", "status": "Available"}]


def test_quoted_commas_and_escaped_quotes():
    assert split_csv_line('"a, b","say ""hi""", c ') == ["a, b", 'say "hi"', "c"]
    csv_text = 'Equipment Description,Comments\n"Laptop, 14""","needs ""new"" battery"'
    out = reconcile(csv_text, DEFAULT_FIELDS)
    assert out[0]["equipmentDescription"] == 'Laptop, 14"'
    assert out[0]["comments"] == 'needs "new" battery'


def test_malformed_quoting_falls_back_instead_of_failing():
    cells = split_csv_line('"unterminated,b,c')
    assert len(cells) >= 2
    out = reconcile('Equipment Description,Location\n"Broken "quote" row,Lab', DEFAULT_FIELDS)
    assert len(out) == 1
    assert out[0]["location"] == "Lab"


def test_crlf_and_row_order_preserved():
    csv_text = "Equipment Description\r\nA\r\nB\r\n\r\nC\r\n"
    assert [c["equipmentDescription"] for c in reconcile(csv_text, DEFAULT_FIELDS)] == ["A", "B", "C"]


def test_repair_keywords_are_opt_in():
    csv_text = "Equipment Description,Comments\nPhone,not booting since May"
    assert reconcile(csv_text, DEFAULT_FIELDS)[0]["status"] == "Available"
    out = reconcile(csv_text, DEFAULT_FIELDS, repair_keywords=["Not Booting", "repair"])
    assert out[0]["status"] == "Need Repair"
    # Owner rule wins over comment keywords
    owned = "Equipment Description,Current Owner,Comments\nPhone,Carol,needs repair"
    assert reconcile(owned, DEFAULT_FIELDS, repair_keywords=["repair"])[0]["status"] == "In Use"


def test_decode_csv_bytes_handles_boms_and_utf16():
    text = "Equipment Description\nCafé"
    assert decode_csv_bytes(b"\xef\xbb\xbf" + text.encode("utf-8")) == text
    assert decode_csv_bytes(text.encode("utf-16")) == text
    assert decode_csv_bytes(text.encode("utf-16-le")) == text
    assert decode_csv_bytes(b"") == ""


def test_export_quotes_every_value_and_uses_labels():
    fields = [{"id": "a", "label": "Name"}, {"id": "b", "label": "Note, long"}]
    out = export_csv([{"a": 'Say "x"', "b": None}, {"a": "y"}], fields)
    lines = out.split("\n")
    assert lines[0] == 'Name,"Note, long"'
    assert lines[1] == '"Say ""x""",""'
    assert lines[2] == '"y",""'


def test_export_then_reconcile_round_trips_aliased_fields():
    records = [
        {"id": "r1", "entryDate": "2024-01-02", "equipmentDescription": "Laptop, 14\"",
         "serialNumber": "SN-1", "assetTag": "A-1", "deviceType": "PC", "currentOwner": "Dana",
         "comments": 'has "sticker"', "location": "HQ", "status": "In Use"},
        {"id": "r2", "entryDate": "2024-01-03", "equipmentDescription": "Mouse", "serialNumber": "",
         "assetTag": "A-2", "deviceType": "Accessory", "currentOwner": "", "comments": "",
         "location": "Store", "status": "Need Repair"},
    ]
    csv_text = export_csv(records, DEFAULT_FIELDS)
    back = reconcile(csv_text, DEFAULT_FIELDS)
    assert len(back) == 2
    for orig, got in zip(records, back):
        for f in DEFAULT_FIELDS:
            assert got[f["id"]] == str(orig.get(f["id"]) or "")
