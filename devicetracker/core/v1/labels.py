from __future__ import annotations

import base64
import importlib.util
import io
import os
from pathlib import Path
from typing import List, Optional, Tuple

import qrcode
from PIL import Image, ImageDraw, ImageFont

from .records import get_record
from .schema import get_fields, primary_field


def check_dependencies() -> dict:
    """Return availability of the label rendering libraries."""
    return {
        "qrcode": importlib.util.find_spec("qrcode") is not None,
        "pillow": importlib.util.find_spec("PIL") is not None,
    }


def _make_qr(data: str, box_size: int = 8, border: int = 2) -> Image.Image:
    qr = qrcode.QRCode(version=None, error_correction=qrcode.constants.ERROR_CORRECT_M,
                       box_size=box_size, border=border)
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    if not isinstance(img, Image.Image):
        img = img.get_image()
    return img.convert("RGB")


def _wrap_text(draw: ImageDraw.ImageDraw, text: str, font, max_width: int) -> List[str]:
    words = (text or "").split()
    lines: List[str] = []
    cur = ""
    for w in words:
        tmp = (cur + (" " if cur else "") + w).strip()
        if draw.textbbox((0, 0), tmp, font=font)[2] <= max_width:
            cur = tmp
        else:
            if cur:
                lines.append(cur)
            cur = w
    if cur:
        lines.append(cur)
    return lines or [text or ""]


def _load_font(size: int):
    """TrueType font at `size` from DT_LABEL_FONT or common locations, else PIL's default."""
    candidates = [
        os.environ.get("DT_LABEL_FONT"),
        "DejaVuSans.ttf",
        "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
        "/Library/Fonts/Arial.ttf",
        "/System/Library/Fonts/Supplemental/Arial.ttf",
    ]
    for path in candidates:
        if not path:
            continue
        try:
            return ImageFont.truetype(path, size=size)
        except OSError:
            continue
    return ImageFont.load_default()


def compose_label_image(
    record: dict,
    title_field: Optional[str] = None,
    *,
    label_size: Tuple[int, int] = (600, 300),
    padding: int = 16,
    text_size: int = 24,
) -> Image.Image:
    """Compose an asset label: QR of the record id on the left, text on the right.

    Text shows the `title_field` value (usually the primary field), the asset
    tag and serial number when present, and the record id.
    """
    rid = str(record.get("id", ""))
    title = str(record.get(title_field) or "") if title_field else ""

    width, height = label_size
    img = Image.new("RGB", (width, height), "white")
    draw = ImageDraw.Draw(img)

    code_max = min(height - 2 * padding, width // 2 - 2 * padding)
    code_img = _make_qr(rid).resize((code_max, code_max), Image.NEAREST)
    img.paste(code_img, (padding, (height - code_max) // 2))

    text_x = padding + code_max + padding
    text_w = width - text_x - padding
    base_sz = max(8, int(text_size))
    title_font = _load_font(int(round(base_sz * 1.2)))
    normal_font = _load_font(base_sz)

    y = padding
    for ln in _wrap_text(draw, title or "Unlabeled Equipment", title_font, text_w):
        draw.text((text_x, y), ln, fill=(0, 0, 0), font=title_font)
        tb = draw.textbbox((0, 0), ln, font=title_font)
        y += (tb[3] - tb[1]) + 2
    y += 6
    for key, caption in (("assetTag", "Asset"), ("serialNumber", "S/N")):
        val = record.get(key)
        if not val:
            continue
        for ln in _wrap_text(draw, f"{caption}: {val}", normal_font, text_w):
            draw.text((text_x, y), ln, fill=(0, 0, 0), font=normal_font)
            tb = draw.textbbox((0, 0), ln, font=normal_font)
            y += (tb[3] - tb[1]) + 2

    fw, fh = draw.textbbox((0, 0), rid, font=normal_font)[2:]
    draw.text((width - padding - fw, height - padding - fh), rid, fill=(120, 120, 120), font=normal_font)
    return img


def image_to_png_bytes(img: Image.Image, dpi: Optional[int] = None) -> bytes:
    bio = io.BytesIO()
    save_kwargs = {"format": "PNG"}
    # pHYs chunk so printers honor physical size
    if dpi and dpi > 0:
        save_kwargs["dpi"] = (dpi, dpi)
    img.save(bio, **save_kwargs)
    return bio.getvalue()


def generate_label_for_record(
    store: Path,
    record_id: str,
    *,
    size: Tuple[int, int] = (600, 300),
    dpi: int = 300,
    text_size: int = 24,
) -> dict:
    """Render the label PNG for a record.

    Returns dict with keys: 'id', 'png' (bytes), 'png_base64', 'filename'.
    """
    rec = get_record(store, record_id)
    pf = primary_field(get_fields(store))
    img = compose_label_image(rec, pf.get("id") if pf else None, label_size=size, text_size=text_size)
    png = image_to_png_bytes(img, dpi=dpi)
    return {
        "id": record_id,
        "png": png,
        "png_base64": base64.b64encode(png).decode("ascii"),
        "filename": f"label_{record_id}.png",
    }
