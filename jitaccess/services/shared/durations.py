"""
Duration strings of the form used across requests and config: one or more
<integer><unit> groups, unit ∈ d/h/m/s (e.g. "1h", "2h30m", "7d", "15m").
"""

import re
from datetime import timedelta

from jitaccess.services.shared.errors import InvalidDuration

_DURATION_RE = re.compile(r"^(\d+[dhms])+$")
_GROUP_RE    = re.compile(r"(\d+)([dhms])")
_WORD_RE     = re.compile(r"(\d+)\s*([a-z]+)")

_UNIT_SECONDS = {"d": 86400, "h": 3600, "m": 60, "s": 1}

_UNIT_WORDS = {
    "d": "d", "day": "d", "days": "d",
    "h": "h", "hr": "h", "hrs": "h", "hour": "h", "hours": "h",
    "m": "m", "min": "m", "mins": "m", "minute": "m", "minutes": "m",
    "s": "s", "sec": "s", "secs": "s", "second": "s", "seconds": "s",
}


def parse_duration(value: str) -> timedelta:
    """Parse "2h30m" style strings. Raises InvalidDuration on anything else."""
    text = (value or "").strip()
    if not _DURATION_RE.match(text):
        raise InvalidDuration(
            f"invalid duration format {value!r}: use combinations like 1h, 30m, 2h30m, 7d"
        )
    seconds = sum(int(n) * _UNIT_SECONDS[u] for n, u in _GROUP_RE.findall(text))
    return timedelta(seconds=seconds)


def format_duration(value: timedelta) -> str:
    """Inverse of parse_duration for whole-second durations: 5400s → "1h30m"."""
    remaining = int(value.total_seconds())
    if remaining <= 0:
        return "0s"
    parts = []
    for unit in ("d", "h", "m", "s"):
        count, remaining = divmod(remaining, _UNIT_SECONDS[unit])
        if count:
            parts.append(f"{count}{unit}")
    return "".join(parts)


def normalize_duration(value: str) -> str:
    """
    Rewrite human forms into the compact grammar:
      "2 hours" → "2h", "1 hour 30 minutes" → "1h30m", "90 Mins" → "90m".
    Input that cannot be fully rewritten is returned lower-cased with spaces
    removed so that parse_duration reports the problem.
    """
    text = (value or "").strip().lower()
    fallback = text.replace(" ", "")
    groups = _WORD_RE.findall(text)
    if not groups or _WORD_RE.sub("", text).strip(" ,"):
        return fallback
    out = []
    for number, word in groups:
        unit = _UNIT_WORDS.get(word)
        if unit is None:
            return fallback
        out.append(f"{number}{unit}")
    return "".join(out)
