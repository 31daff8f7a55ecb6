"""Small shared helpers: text normalisation, timestamps, hashing, JSON files."""
from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import orjson


# --- Text -----------------------------------------------------------------------

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_BLANK_RUNS = re.compile(r"\n{3,}")
_SPACE_RUNS = re.compile(r"[ \t]{2,}")


def clean_text(text: str) -> str:
    """
    Normalise editor output before chunking: drop control characters (tabs
    and newlines survive), turn non-breaking spaces into spaces, remove
    zero-width spaces, and squeeze blank-line and space runs.
    """
    text = _CONTROL_CHARS.sub("", text)
    text = text.replace("\u00a0", " ").replace("\u200b", "")
    text = _BLANK_RUNS.sub("\n\n", text)
    return _SPACE_RUNS.sub(" ", text).strip()


def truncate_text(text: str, max_chars: int = 300) -> str:
    return text if len(text) <= max_chars else text[:max_chars].rstrip() + "..."


# --- Timestamps -----------------------------------------------------------------

def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse an ISO-8601 string (``Z`` suffix allowed) or datetime into an
    aware UTC datetime. Returns None for empty or unparseable input.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        try:
            dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat(dt: datetime) -> str:
    """UTC ISO-8601, full precision, so stored stamps compare equal on re-read."""
    return parse_timestamp(dt).isoformat()


# --- Hashing --------------------------------------------------------------------

def fingerprint(data: Any) -> str:
    """Stable SHA-256 over a JSON-serialisable structure."""
    return hashlib.sha256(orjson.dumps(data, option=orjson.OPT_SORT_KEYS)).hexdigest()


# --- JSON files -----------------------------------------------------------------

def save_json(data: Any, path: str | Path) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(orjson.dumps(data, option=orjson.OPT_INDENT_2 | orjson.OPT_NON_STR_KEYS))


def load_json(path: str | Path) -> Any:
    return orjson.loads(Path(path).read_bytes())
