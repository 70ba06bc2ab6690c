# ticketgate/lookup.py
"""
Fuzzy ticket lookup for when a code cannot be scanned.

A broad LIKE query pulls at most a few hundred recent candidates, every
candidate gets a score from independent signals (email, name tokens,
ticket id fragment, recency, redemption penalty), and the positive ones
come back best first. Equal scores keep the store order (newest first).
"""
from __future__ import annotations
import re
from typing import Any, Dict, List, Optional

from .helpers import now_ts
from .model.store import TicketStore

TOP_N = 25

# email, query contains "@"
W_EMAIL_EXACT = 1000
W_EMAIL_PLUSLESS_EXACT = 940
W_EMAIL_PREFIX = 860
W_EMAIL_PLUSLESS_PREFIX = 820
W_EMAIL_SUBSTR = 700
W_EMAIL_PLUSLESS_SUBSTR = 660
# email, plain text query
W_EMAIL_TEXT_PREFIX = 420
W_EMAIL_TEXT_SUBSTR = 300

# name, per query token
W_NAME_EXACT = 120
W_NAME_PREFIX = 90
W_NAME_SUBSTR = 60
W_NAME_FUZZY = 80
FUZZY_FLOOR = 0.7

# ticket id fragment
W_ID_EXACT = 1000
W_ID_PREFIX = 920
W_ID_SUBSTR = 540

RECENT_WEEK_BONUS = 20
RECENT_MONTH_BONUS = 10
SCANNED_PENALTY = 20

DAY = 24 * 3600

_HEX_FRAGMENT = re.compile(r"^[0-9a-f-]{4,}$", re.IGNORECASE)
_WS = re.compile(r"\s+")


def normalize_whitespace(s: str) -> str:
    return _WS.sub(" ", s.strip())


def strip_plus_tag(email: str) -> str:
    """local+tag@domain -> local@domain"""
    at = email.find("@")
    if at == -1:
        return email
    local = email[:at]
    plus = local.find("+")
    if plus == -1:
        return email
    return local[:plus] + email[at:]


def looks_like_id_fragment(q: str) -> bool:
    return _HEX_FRAGMENT.match(q) is not None


def levenshtein(a: str, b: str) -> int:
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        cur = [i] + [0] * len(b)
        for j, cb in enumerate(b, 1):
            cur[j] = min(
                cur[j - 1] + 1,               # insertion
                prev[j] + 1,                  # deletion
                prev[j - 1] + (ca != cb),     # substitution
            )
        prev = cur
    return prev[-1]


def similarity(a: str, b: str) -> float:
    longest = max(len(a), len(b)) or 1
    return 1.0 - levenshtein(a, b) / longest


def name_score(name: str, query: str) -> int:
    # both already lower-cased and whitespace-normalized
    tokens = query.split()
    parts = name.split()
    if not tokens or not parts:
        return 0
    score = 0
    for token in tokens:
        best = 0
        for part in parts:
            if part == token:
                best = max(best, W_NAME_EXACT)
            elif part.startswith(token):
                best = max(best, W_NAME_PREFIX)
            elif token in part:
                best = max(best, W_NAME_SUBSTR)
            else:
                sim = similarity(part, token)
                if sim >= FUZZY_FLOOR:
                    best = max(best, round(sim * W_NAME_FUZZY))
        score += best
    return score


def email_score(email: str, q: str) -> int:
    if not email:
        return 0
    score = 0
    if "@" in q:
        email_plain = strip_plus_tag(email)
        q_plain = strip_plus_tag(q)
        if email == q:
            score += W_EMAIL_EXACT
        if email_plain == q_plain:
            score += W_EMAIL_PLUSLESS_EXACT
        if email.startswith(q):
            score += W_EMAIL_PREFIX
        if email_plain.startswith(q_plain):
            score += W_EMAIL_PLUSLESS_PREFIX
        if q in email:
            score += W_EMAIL_SUBSTR
        if q_plain in email_plain:
            score += W_EMAIL_PLUSLESS_SUBSTR
    else:
        if email.startswith(q):
            score += W_EMAIL_TEXT_PREFIX
        if q in email:
            score += W_EMAIL_TEXT_SUBSTR
    return score


def ticket_id_score(ticket_id: str, q_raw: str) -> int:
    if not looks_like_id_fragment(q_raw):
        return 0
    tid = ticket_id.lower()
    q = q_raw.lower()
    if tid == q:
        return W_ID_EXACT
    if tid.startswith(q):
        return W_ID_PREFIX
    if q in tid:
        return W_ID_SUBSTR
    return 0


def recency_bonus(created_at: Optional[float], now: float) -> int:
    if created_at is None:
        return 0
    age_days = (now - float(created_at)) / DAY
    if age_days < 7:
        return RECENT_WEEK_BONUS
    if age_days < 30:
        return RECENT_MONTH_BONUS
    return 0


def score(row: Dict[str, Any], q_raw: str,
          now: Optional[float] = None) -> int:
    now = now_ts() if now is None else now
    q = normalize_whitespace(q_raw).lower()
    email = (row.get("email") or "").lower()
    name = normalize_whitespace(row.get("student_name") or "").lower()

    total = email_score(email, q)
    total += name_score(name, q)
    total += ticket_id_score(row.get("ticket_id") or "", q_raw)
    total += recency_bonus(row.get("created_at"), now)
    if row.get("scanned_at") is not None:
        total -= SCANNED_PENALTY
    return total


def rank(rows: List[Dict[str, Any]], q_raw: str, top_n: int = TOP_N,
         now: Optional[float] = None) -> List[Dict[str, Any]]:
    now = now_ts() if now is None else now
    scored = [(score(r, q_raw, now), r) for r in rows]
    scored = [sr for sr in scored if sr[0] > 0]
    # sorted() is stable: ties keep candidate order
    scored = sorted(scored, key=lambda sr: sr[0], reverse=True)
    return [r for _, r in scored[:top_n]]


async def lookup(store: TicketStore, q_raw: str) -> List[Dict[str, Any]]:
    q = (q_raw or "").strip()
    if not q:
        return []
    # the plus-stripped form finds "a@x" for a query of "a+tag@x"
    terms = [q, strip_plus_tag(q.lower())]
    candidates = await store.search_candidates(terms)
    return rank(candidates, q)
