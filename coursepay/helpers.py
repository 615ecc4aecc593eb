import time
from datetime import datetime, timezone
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def now_ms() -> int:
    return int(time.time() * 1000)


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def to_price(v) -> int:
    # prices are whole VND; fractions are floored, non-numbers raise
    if v is None:
        return 0
    return int(float(v) // 1)
