"""
Ranking behaviour of the fuzzy ticket lookup.

Most cases exercise the pure scoring functions with hand-built candidate
rows; the last few go through the store to cover the LIKE prefilter.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import run_async
from ticketgate import lookup as lk

NOW = 1_750_000_000.0
OLD = NOW - 90 * lk.DAY


def _row(ticket_id, name, email, scanned_at=None, created_at=OLD,
         event_id="evt-spring"):
    return {
        "ticket_id": ticket_id,
        "event_id": event_id,
        "email": email,
        "student_name": name,
        "scanned_at": scanned_at,
        "created_at": created_at,
    }


# ---------------------------------------------------------------------------
# building blocks
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("a,b,expected", [
    ("", "", 0),
    ("abc", "", 3),
    ("", "abc", 3),
    ("kitten", "sitting", 3),
    ("flaw", "lawn", 2),
    ("same", "same", 0),
])
def test_levenshtein(a, b, expected):
    assert lk.levenshtein(a, b) == expected


def test_strip_plus_tag():
    assert lk.strip_plus_tag("a+work@example.com") == "a@example.com"
    assert lk.strip_plus_tag("a@example.com") == "a@example.com"
    assert lk.strip_plus_tag("no-at-sign+x") == "no-at-sign+x"


def test_id_fragment_detection():
    assert lk.looks_like_id_fragment("3f2a")
    assert lk.looks_like_id_fragment("3F2A-9C")
    assert not lk.looks_like_id_fragment("3f2")       # too short
    assert not lk.looks_like_id_fragment("john")
    assert not lk.looks_like_id_fragment("3f2a 9c")


def test_name_token_weights():
    assert lk.name_score("john smith", "john") == lk.W_NAME_EXACT
    assert lk.name_score("johnny appleseed", "john") == lk.W_NAME_PREFIX
    assert lk.name_score("mary-jo", "jo") == lk.W_NAME_SUBSTR
    # best part per token, summed across tokens
    assert lk.name_score("john smith", "john smith") == 2 * lk.W_NAME_EXACT


def test_name_fuzzy_match_above_floor_only():
    # one substitution in six letters: similarity 5/6
    assert lk.name_score("jonson", "jonsen") == round(5 / 6 * lk.W_NAME_FUZZY)
    # far away: nothing
    assert lk.name_score("smith", "brown") == 0


def test_name_match_ignores_case_and_whitespace():
    row = _row("t1", "  John   SMITH ", "x@example.com")
    assert lk.score(row, "  john  smith", now=NOW) == 2 * lk.W_NAME_EXACT


# ---------------------------------------------------------------------------
# ranking
# ---------------------------------------------------------------------------

def test_unscanned_exact_name_beats_scanned_prefix():
    rows = [
        _row("t-a", "Johnny Appleseed", "apple@example.com",
             scanned_at=NOW - 60),
        _row("t-b", "John Smith", "smith@example.com"),
    ]
    ranked = lk.rank(rows, "john", now=NOW)
    assert [r["ticket_id"] for r in ranked] == ["t-b", "t-a"]


def test_redemption_penalty_breaks_equal_name_scores():
    rows = [
        _row("t-used", "John Smith", "a@example.com", scanned_at=NOW - 60),
        _row("t-fresh", "John Smith", "b@example.com"),
    ]
    ranked = lk.rank(rows, "john", now=NOW)
    assert [r["ticket_id"] for r in ranked] == ["t-fresh", "t-used"]
    assert (lk.score(rows[1], "john", now=NOW)
            - lk.score(rows[0], "john", now=NOW)) == lk.SCANNED_PENALTY


def test_plus_tag_query_matches_plain_address_below_exact():
    plain = _row("t-plain", None, "a@example.com")
    exact = _row("t-exact", None, "a+work@example.com")
    q = "a+work@example.com"

    plain_score = lk.score(plain, q, now=NOW)
    exact_score = lk.score(exact, q, now=NOW)
    assert plain_score > 0
    assert exact_score > plain_score
    assert [r["ticket_id"] for r in lk.rank([plain, exact], q, now=NOW)] == [
        "t-exact", "t-plain"
    ]


def test_text_query_uses_lower_email_weights():
    row = _row("t1", None, "parent@example.com")
    assert lk.score(row, "parent", now=NOW) == (
        lk.W_EMAIL_TEXT_PREFIX + lk.W_EMAIL_TEXT_SUBSTR
    )


def test_ticket_id_fragment_signals():
    tid = "3f2a9c1e-0b4d-4e55-9a77-1c2d3e4f5a6b"
    row = _row(tid, None, "x@example.com")
    assert lk.score(row, tid, now=NOW) == lk.W_ID_EXACT
    assert lk.score(row, "3F2A9C1E", now=NOW) == lk.W_ID_PREFIX
    assert lk.score(row, "0b4d-4e55", now=NOW) == lk.W_ID_SUBSTR


def test_recency_nudge():
    fresh = _row("t1", "Ada", "x@example.com", created_at=NOW - 2 * lk.DAY)
    month = _row("t2", "Ada", "x@example.com", created_at=NOW - 20 * lk.DAY)
    old = _row("t3", "Ada", "x@example.com")
    base = lk.score(old, "ada", now=NOW)
    assert lk.score(fresh, "ada", now=NOW) == base + lk.RECENT_WEEK_BONUS
    assert lk.score(month, "ada", now=NOW) == base + lk.RECENT_MONTH_BONUS


def test_ties_keep_candidate_order():
    rows = [_row(f"t{i}", "Ada Byron", f"p{i}@example.com") for i in range(5)]
    ranked = lk.rank(rows, "ada", now=NOW)
    assert [r["ticket_id"] for r in ranked] == [f"t{i}" for i in range(5)]


def test_non_positive_scores_are_dropped():
    rows = [
        _row("t-hit", "Ada Byron", "a@example.com"),
        # only the penalty applies
        _row("t-miss", "Grace Hopper", "g@example.com", scanned_at=NOW),
    ]
    assert [r["ticket_id"] for r in lk.rank(rows, "ada", now=NOW)] == ["t-hit"]


def test_result_is_capped():
    rows = [_row(f"t{i}", "Ada", f"p{i}@example.com") for i in range(60)]
    assert len(lk.rank(rows, "ada", now=NOW)) == lk.TOP_N


# ---------------------------------------------------------------------------
# through the store
# ---------------------------------------------------------------------------

def test_empty_query_never_touches_the_store():
    store = MagicMock()
    store.search_candidates = AsyncMock()
    assert run_async(lk.lookup(store, "   ")) == []
    store.search_candidates.assert_not_called()


def test_lookup_finds_plain_address_for_tagged_query(store, event_id):
    run_async(store.add_ticket_for_email(
        email="a@example.com", event_id=event_id, student_name="Ada Byron"
    ))
    results = run_async(lk.lookup(store, "a+work@example.com"))
    assert [r["email"] for r in results] == ["a@example.com"]


def test_lookup_by_ticket_id_prefix(store, event_id):
    tid, _ = run_async(store.add_ticket_for_email(
        email="parent@example.com", event_id=event_id
    ))
    results = run_async(lk.lookup(store, tid[:8]))
    assert results[0]["ticket_id"] == tid


@pytest.mark.parametrize("q", ["%", "_", "100%", "a_b", "\\"])
def test_like_wildcards_are_literal(store, event_id, q):
    run_async(store.add_ticket_for_email(
        email="parent@example.com", event_id=event_id, student_name="Ada"
    ))
    assert run_async(lk.lookup(store, q)) == []
