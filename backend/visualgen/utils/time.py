from datetime import datetime, timezone
import time


def utc_now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


def epoch_ms() -> int:
    return int(time.time() * 1000)


def parse_iso_to_epoch(value: str) -> int:
    normalized = value.replace("Z", "+00:00") if value.endswith("Z") else value
    if len(normalized) == 10:
        normalized = f"{normalized}T00:00:00+00:00"
    dt = datetime.fromisoformat(normalized)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())
