from __future__ import annotations

import json
import math
import re
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any

_SEGMENT_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def iso_days_ago(days: float) -> str:
    return (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()


def _base36(n: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if n == 0:
        return "0"
    out = []
    while n:
        n, r = divmod(n, 36)
        out.append(digits[r])
    return "".join(reversed(out))


def new_id(prefix: str) -> str:
    """
    Monotonic-plus-random identifier, e.g. proj_lx3k9q2a_4f9c1e2d.

    Millisecond timestamp in base36 followed by 32 random bits; always a valid
    single path segment.
    """
    stamp = _base36(int(time.time() * 1000))
    return f"{prefix}_{stamp}_{secrets.token_hex(4)}"


def is_path_segment(name: str) -> bool:
    """True when `name` is usable as one directory name (no separators, no dot-dirs)."""
    if not name or name in (".", ".."):
        return False
    return bool(_SEGMENT_RE.match(name))


def dumps_or_none(obj: Any) -> str | None:
    if obj is None:
        return None
    return json.dumps(obj, sort_keys=True)


def loads_or_none(raw: str | None) -> Any:
    if raw is None or raw == "":
        return None
    return json.loads(raw)


def format_bytes(n: int) -> str:
    if n <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    i = min(int(math.floor(math.log(n, 1024))), len(units) - 1)
    return f"{n / (1024 ** i):.2f} {units[i]}"
