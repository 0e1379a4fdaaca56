import time
import secrets
from datetime import datetime, timezone
import hmac
from typing import Optional


_B36 = "0123456789abcdefghijklmnopqrstuvwxyz"


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def ct_equal(a: str, b: str) -> bool:
    # bytes: str compare_digest rejects non-ascii input
    return hmac.compare_digest(a.encode("utf-8", "surrogatepass"),
                               b.encode("utf-8", "surrogatepass"))


def base36(n: int) -> str:
    if n < 0:
        raise ValueError("base36 needs a non-negative integer")
    if n == 0:
        return "0"
    out = []
    while n:
        n, rem = divmod(n, 36)
        out.append(_B36[rem])
    return "".join(reversed(out))


def gen_order_id(prefix: str = "ORD") -> str:
    """ORD-<ms timestamp, base36>-<5 random base36 chars>, upper-cased."""
    stamp = base36(int(time.time() * 1000))
    rand = "".join(secrets.choice(_B36) for _ in range(5))
    return f"{prefix}-{stamp}-{rand}".upper()


def format_idr(amount: int | float | str) -> str:
    # Indonesian grouping uses dots: Rp 65.000
    return "Rp " + f"{int(amount):,}".replace(",", ".")


def escape_html(text: object = "") -> str:
    return (
        str(text)
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
    )
