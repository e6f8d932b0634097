from __future__ import annotations

from typing import Dict, Iterable, List, Optional
import csv
import io
import re


# -----------------------
# CSV reconciliation: spreadsheet headers -> schema field ids
# -----------------------

# Common spreadsheet spellings mapped to canonical field ids. Keys are
# normalized with _norm_header().
HEADER_ALIASES: Dict[str, str] = {
    "entry date": "entryDate",
    "equipment description": "equipmentDescription",
    "part number": "partNumber",
    "serial number/imei": "serialNumber",
    "asset tag": "assetTag",
    "type (device/accessory/pc)": "deviceType",
    "released to": "releasedTo",
    "core id": "coreId",
    "manager": "manager",
    "gate pass (y/n)": "gatePass",
    "returned": "returned",
    "current owner": "currentOwner",
    "comments": "comments",
    "location": "location",
    "status": "status",
}

# Pure sequence/quantity counters never populate a field.
COUNTER_HEADERS = frozenset({"no", "qty", "quantity", "sr no", "s.no", "s no", "sr. no", "#"})

OWNER_PLACEHOLDERS = frozenset({"n/a", "\u2014"})

# Fallback split: commas followed by an even number of quotes
_SPLIT_RE = re.compile(r',(?=(?:[^"]*"[^"]*")*[^"]*$)')


def _norm_header(val: str | None) -> str:
    s = str(val or "").replace("\ufeff", "").strip().lower()
    s = " ".join(s.split())
    return re.sub(r"\s*/\s*", "/", s)


def _unquote(cell: str) -> str:
    s = str(cell or "").strip()
    if len(s) >= 2 and s[0] == '"' and s[-1] == '"':
        s = s[1:-1].replace('""', '"')
    elif s.startswith('"'):
        s = s[1:]
    elif s.endswith('"'):
        s = s[:-1]
    return s.strip()


def decode_csv_bytes(b: bytes) -> str:
    """Decode uploaded CSV bytes, handling common BOMs and UTF-16 files.

    - UTF-8 BOM: decode with 'utf-8-sig'
    - UTF-16 BOM: decode with 'utf-16' (auto-detects endianness)
    - Many NUL bytes: assume UTF-16-LE without BOM
    - Otherwise UTF-8 with errors ignored
    """
    if not b:
        return ""
    if b.startswith(b"\xef\xbb\xbf"):
        return b.decode("utf-8-sig", errors="ignore")
    if b.startswith(b"\xff\xfe") or b.startswith(b"\xfe\xff"):
        return b.decode("utf-16", errors="ignore")
    nul_ratio = b.count(b"\x00") / max(1, len(b))
    if nul_ratio > 0.05:
        return b.decode("utf-16-le", errors="ignore")
    return b.decode("utf-8", errors="ignore")


def sanitize_csv_text(text: str) -> str:
    """Remove embedded NULs and stray BOM, normalize newlines to LF."""
    if not isinstance(text, str):
        text = str(text or "")
    text = text.replace("\ufeff", "").replace("\x00", "")
    return text.replace("\r\n", "\n").replace("\r", "\n")


def split_csv_line(line: str) -> List[str]:
    """Split one CSV line on commas outside quotes; trim and unquote each cell.

    Malformed quoting falls back to a regex split instead of failing.
    """
    try:
        rows = list(csv.reader(io.StringIO(line), skipinitialspace=True, strict=True))
        cells = rows[0] if rows else []
        return [c.strip() for c in cells]
    except csv.Error:
        return [_unquote(c) for c in _SPLIT_RE.split(line)]


def resolve_header(header: str, fields: List[Dict]) -> Optional[str]:
    """Return the field id a CSV header maps to, or None if it is dropped.

    Order: counter columns are dropped, then the alias table, then an exact
    case-insensitive match on schema labels or ids.
    """
    key = _norm_header(header)
    if not key or key in COUNTER_HEADERS:
        return None
    if key in HEADER_ALIASES:
        return HEADER_ALIASES[key]
    for f in fields or []:
        if _norm_header(f.get("label")) == key or _norm_header(f.get("id")) == key:
            return f.get("id")
    return None


def infer_status(candidate: Dict, repair_keywords: Iterable[str] = ()) -> str:
    """Default status for a row without one.

    'In Use' when a real current owner is present; otherwise 'Need Repair'
    if comments contain a configured keyword; otherwise 'Available'.
    """
    owner = str(candidate.get("currentOwner") or "").strip()
    if owner and owner.lower() not in OWNER_PLACEHOLDERS:
        return "In Use"
    comments = str(candidate.get("comments") or "").lower()
    if comments and any(k and k in comments for k in repair_keywords):
        return "Need Repair"
    return "Available"


def reconcile(raw_text: str, fields: List[Dict], *, repair_keywords: Iterable[str] = ()) -> List[Dict]:
    """Map raw CSV text onto the schema and return candidate records in row order.

    The first line is the header; fewer than two lines yields []. Columns
    resolve by header text, not position. Missing trailing cells become "".
    Rows that populate no field are skipped.
    """
    text = sanitize_csv_text(raw_text).strip()
    if not text:
        return []
    lines = text.split("\n")
    if len(lines) < 2:
        return []
    keywords = [str(k).strip().lower() for k in repair_keywords if str(k).strip()]

    column_map: Dict[int, str] = {}
    for idx, header in enumerate(split_csv_line(lines[0])):
        fid = resolve_header(header, fields)
        if fid:
            column_map[idx] = fid

    out: List[Dict] = []
    for raw in lines[1:]:
        line = raw.strip()
        if not line:
            continue
        values = split_csv_line(line)
        candidate: Dict[str, str] = {}
        for idx, fid in column_map.items():
            candidate[fid] = values[idx] if idx < len(values) else ""
        if not candidate:
            continue
        if not candidate.get("status"):
            candidate["status"] = infer_status(candidate, keywords)
        out.append(candidate)
    return out


def export_csv(records: List[Dict], fields: List[Dict]) -> str:
    """Render records as CSV: field labels as header, every value quoted."""
    def _q(val) -> str:
        s = "" if val is None else str(val)
        return '"' + s.replace('"', '""') + '"'

    labels = [str(f.get("label", "")) for f in fields]
    header = ",".join(_q(lb) if ("," in lb or '"' in lb) else lb for lb in labels)
    rows = [",".join(_q(r.get(f.get("id"))) for f in fields) for r in records]
    return "\n".join([header] + rows)
