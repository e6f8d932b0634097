from __future__ import annotations
from pathlib import Path
import io
import sys

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

pytest.importorskip("qrcode", reason="qrcode not installed; label tests skipped")
PIL_Image = pytest.importorskip("PIL.Image", reason="Pillow not installed; label tests skipped")

from devicetracker.core.v1.labels import check_dependencies, compose_label_image, generate_label_for_record
from devicetracker.core.v1.records import create_record


def test_dependencies_reported_available():
    assert check_dependencies() == {"qrcode": True, "pillow": True}


def test_label_png_for_record(tmp_path: Path):
    store = tmp_path / "store"
    store.mkdir()
    rec = create_record(store, {"equipmentDescription": "ThinkPad X1 Carbon Gen 11", "assetTag": "A-77",
                                "serialNumber": "SN123"})
    res = generate_label_for_record(store, rec["id"], dpi=203)
    assert res["png"].startswith(b"\x89PNG")
    assert res["filename"] == f"label_{rec['id']}.png"
    img = PIL_Image.open(io.BytesIO(res["png"]))
    assert img.size == (600, 300)
    assert round(img.info["dpi"][0]) == 203


def test_compose_label_without_title_or_tags():
    img = compose_label_image({"id": "01HXYZ"}, None, label_size=(400, 200))
    assert img.size == (400, 200)


def test_unknown_record_raises(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        generate_label_for_record(tmp_path, "01HZZZZZZZZZZZZZZZZZZZZZZZ")
