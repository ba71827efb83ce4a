# cogs/Legislature/durations.py
import re
import time
from datetime import datetime, timezone

DEFAULT_DURATION_MS = 60_000

UNIT_MS = {
    "d": 24 * 60 * 60 * 1000,
    "h": 60 * 60 * 1000,
    "m": 60 * 1000,
    "s": 1000,
}

_TOKEN = re.compile(r"(\d+)([dhms])")


def now_ms() -> int:
    """Default clock: epoch milliseconds."""
    return int(time.time() * 1000)


def parse_duration(text: str) -> int:
    """Parse strings like ``1h30m`` or ``2d 5s`` into milliseconds.

    Tokens may come in any order and anything that is not ``<int><unit>`` is
    ignored. Empty or unparseable input yields one minute rather than an error,
    so this cannot be used to detect malformed input.
    """
    total = sum(int(value) * UNIT_MS[unit] for value, unit in _TOKEN.findall(text or ""))
    return total or DEFAULT_DURATION_MS


def format_time_left(ms: int) -> str:
    if ms <= 0:
        return "0s"
    sec = -(-ms // 1000)
    days, rem = divmod(sec, 86400)
    hours, rem = divmod(rem, 3600)
    minutes, seconds = divmod(rem, 60)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"


def to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def discord_timestamp(ms: int, style: str = "F") -> str:
    return f"<t:{ms // 1000}:{style}>"
