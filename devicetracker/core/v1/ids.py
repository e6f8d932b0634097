import os
import re
import time
from datetime import datetime, timezone

_CROCKFORD32 = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

# Record ids are ULIDs when generated here; client-supplied ids (bulk upsert)
# only need to be safe as directory names.
RECORD_ID_REGEX = r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$"


def _to_base32(data: bytes) -> str:
    # Crockford Base32 without padding; only used for the fixed 16-byte ULID
    bits = 0
    value = 0
    out = []
    for b in data:
        value = (value << 8) | b
        bits += 8
        while bits >= 5:
            out.append(_CROCKFORD32[(value >> (bits - 5)) & 0x1F])
            bits -= 5
    if bits:
        out.append(_CROCKFORD32[(value << (5 - bits)) & 0x1F])
    return "".join(out)


def new_ulid() -> str:
    """Generate a 26-char Crockford Base32 ULID string.
    Time component is milliseconds since epoch (48 bits), plus 80 bits of randomness.
    """
    ts_ms = int(time.time() * 1000)
    ts_bytes = ts_ms.to_bytes(6, "big")
    rand_bytes = os.urandom(10)
    return _to_base32(ts_bytes + rand_bytes)[:26]


def now_iso() -> str:
    """UTC timestamp with millisecond precision, e.g. 2024-01-01T10:00:00.123Z."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def validate_record_id(record_id: str) -> None:
    """Raise ValueError unless record_id is safe to use as a directory name."""
    if not isinstance(record_id, str) or not record_id:
        raise ValueError("record id is required")
    if re.fullmatch(RECORD_ID_REGEX, record_id) is None:
        raise ValueError(f"Invalid record id '{record_id}'")
