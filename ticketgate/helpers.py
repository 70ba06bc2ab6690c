import hmac
import re
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def new_id() -> str:
    # ticket ids are printed into the QR code as-is
    return str(uuid.uuid4())


def to_iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def clean_email(email: Optional[str]) -> Optional[str]:
    """Stripped address if it looks deliverable, else None. Case is kept."""
    if not email:
        return None
    email = email.strip()
    return email if _EMAIL_RE.match(email) else None


def ct_equal(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return False
    return hmac.compare_digest(a.encode(), b.encode())


def bearer_token(authorization: Optional[str]) -> str:
    # "Bearer <token>" -> "<token>"; anything else -> ""
    if not authorization:
        return ""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()
