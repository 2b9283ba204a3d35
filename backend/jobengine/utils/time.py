from datetime import datetime, timezone
import time
from typing import Optional


def utc_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def parse_iso_to_epoch(value: str) -> int:
    normalized = value.replace("Z", "+00:00") if value.endswith("Z") else value
    if len(normalized) == 10:
        normalized = f"{normalized}T00:00:00+00:00"
    dt = datetime.fromisoformat(normalized)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def seconds_since(value: Optional[str], now: Optional[float] = None) -> float:
    if not value:
        return 0.0
    current = time.time() if now is None else now
    return max(0.0, current - parse_iso_to_epoch(value))
