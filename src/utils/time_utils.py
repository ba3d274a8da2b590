"""Timestamp helpers shared by the indexer and the attestation service."""
import time
from typing import Any, Optional

# Anything above this is treated as milliseconds (10^10 seconds is year 2286).
MILLISECONDS_THRESHOLD = 10_000_000_000


def normalize_timestamp(value: Any) -> int:
    """
    Normalize a timestamp to whole seconds.

    Sources report either seconds or milliseconds. Values above
    MILLISECONDS_THRESHOLD are divided by 1000. Apply exactly once per field
    per write: a normalized value is below the threshold, so a second pass is
    a no-op for any realistic date.
    """
    if value is None or value == "":
        return 0
    if isinstance(value, str):
        v = value.strip()
        ts = int(v, 16) if v.startswith("0x") else int(float(v))
    else:
        ts = int(value)
    if ts > MILLISECONDS_THRESHOLD:
        ts = ts // 1000
    return ts


def optional_timestamp(value: Any) -> Optional[int]:
    """Like normalize_timestamp, but keeps "unset" (None/0) as None."""
    ts = normalize_timestamp(value)
    return ts or None


def now_sec() -> int:
    return int(time.time())
