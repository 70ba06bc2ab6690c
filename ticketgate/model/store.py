# model/store.py
"""
Relational ticket store: events, customers, tickets.

All statements are single-statement or single-transaction; the two writes
that matter for correctness are

- the customer upsert (identity preserved on email conflict), and
- the conditional scan update (`... WHERE scanned_at IS NULL`), which lets
  exactly one of N racing scanners win.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import text

from ..helpers import new_id, now_ts
from ..infra.sql import Database
from ..infra.timings import timeit

CANDIDATE_LIMIT = 200

# columns every ticket listing returns
_TICKET_COLUMNS = """
    t.id AS ticket_id, t.event_id, t.customer_id, t.student_name,
    t.scanned_at, t.created_at, c.email, e.name AS event_name
"""


class CustomerHasTickets(Exception):
    pass


def escape_like(q: str) -> str:
    return (
        q.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    )


class TicketStore:
    def __init__(self, db: Database) -> None:
        self.db = db
        self.gated = db.gated

    # ------------------------------------------------------------------
    # issuance
    # ------------------------------------------------------------------
    async def upsert_customer(
            self, email: str, stripe_customer_id: str) -> int:
        async with timeit("store.upsert_customer"):
            async with self.gated():
                async with self.db.sessions() as s:
                    async with s.begin():
                        return await self._upsert_customer(
                            s, email, stripe_customer_id
                        )

    async def _upsert_customer(self, s, email: str,
                               stripe_customer_id: str) -> int:
        row = (await s.execute(text("""
            INSERT INTO customers (email, stripe_customer_id, created_at)
            VALUES (:email, :scid, :now)
            ON CONFLICT (email) DO UPDATE
              SET stripe_customer_id = excluded.stripe_customer_id
            RETURNING id
        """), {
            "email": email, "scid": stripe_customer_id or "", "now": now_ts()
        })).first()
        return int(row[0])

    async def insert_ticket(
        self,
        *,
        ticket_id: str,
        event_id: str,
        customer_id: int,
        student_name: Optional[str],
    ) -> None:
        async with timeit("store.insert_ticket"):
            async with self.gated():
                async with self.db.sessions() as s:
                    async with s.begin():
                        await s.execute(text("""
                            INSERT INTO tickets (
                              id, event_id, customer_id, student_name,
                              scanned_at, created_at
                            ) VALUES (
                              :id, :event_id, :customer_id, :student_name,
                              NULL, :now
                            )
                        """), {
                            "id": ticket_id,
                            "event_id": event_id,
                            "customer_id": customer_id,
                            "student_name": student_name,
                            "now": now_ts(),
                        })

    async def add_ticket_for_email(
        self,
        *,
        email: str,
        event_id: str,
        student_name: Optional[str] = None,
        stripe_customer_id: str = "",
    ) -> Tuple[str, int]:
        """Manual issuance (admin): upsert customer + ticket, one txn."""
        ticket_id = new_id()
        async with self.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    customer_id = await self._upsert_customer(
                        s, email, stripe_customer_id
                    )
                    await s.execute(text("""
                        INSERT INTO tickets (
                          id, event_id, customer_id, student_name,
                          scanned_at, created_at
                        ) VALUES (
                          :id, :event_id, :customer_id, :student_name,
                          NULL, :now
                        )
                    """), {
                        "id": ticket_id,
                        "event_id": event_id,
                        "customer_id": customer_id,
                        "student_name": student_name,
                        "now": now_ts(),
                    })
        return ticket_id, customer_id

    # ------------------------------------------------------------------
    # check-in
    # ------------------------------------------------------------------
    async def get_ticket(self, ticket_id: str) -> Optional[Dict[str, Any]]:
        async with timeit("store.get_ticket"):
            async with self.gated():
                async with self.db.sessions() as s:
                    row = (await s.execute(text(f"""
                        SELECT {_TICKET_COLUMNS}
                        FROM tickets t
                        JOIN customers c ON c.id = t.customer_id
                        JOIN events e ON e.id = t.event_id
                        WHERE t.id = :id
                    """), {"id": ticket_id})).mappings().first()
        return dict(row) if row else None

    async def mark_scanned(self, ticket_id: str, ts: float) -> bool:
        """True if this call flipped the ticket from issued to redeemed."""
        async with timeit("store.mark_scanned"):
            async with self.gated():
                async with self.db.sessions() as s:
                    async with s.begin():
                        res = await s.execute(text("""
                            UPDATE tickets SET scanned_at = :ts
                            WHERE id = :id AND scanned_at IS NULL
                        """), {"id": ticket_id, "ts": ts})
        return res.rowcount == 1

    # ------------------------------------------------------------------
    # lookup
    # ------------------------------------------------------------------
    async def search_candidates(
            self, terms: List[str], limit: int = CANDIDATE_LIMIT
    ) -> List[Dict[str, Any]]:
        """Broad substring match of any term on name, email or ticket id."""
        params: Dict[str, Any] = {"lim": int(limit)}
        ors = []
        for i, term in enumerate(dict.fromkeys(t.lower() for t in terms)):
            params[f"like{i}"] = f"%{escape_like(term)}%"
            ors.append(
                f"lower(t.student_name) LIKE :like{i} ESCAPE '\\' "
                f"OR lower(c.email) LIKE :like{i} ESCAPE '\\' "
                f"OR lower(t.id) LIKE :like{i} ESCAPE '\\'"
            )
        if not ors:
            return []
        where = " OR ".join(ors)
        async with timeit("store.search_candidates"):
            async with self.gated():
                async with self.db.sessions() as s:
                    rows = (await s.execute(text(f"""
                        SELECT t.id AS ticket_id, t.event_id, c.email,
                               t.student_name, t.scanned_at, t.created_at
                        FROM tickets t
                        JOIN customers c ON c.id = t.customer_id
                        WHERE {where}
                        ORDER BY t.created_at DESC
                        LIMIT :lim
                    """), params)).mappings().all()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # events
    # ------------------------------------------------------------------
    async def create_event(
        self, name: str, stripe_price_id: str,
        event_id: Optional[str] = None,
    ) -> str:
        event_id = event_id or new_id()
        now = now_ts()
        async with self.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    await s.execute(text("""
                        INSERT INTO events (
                          id, name, stripe_price_id, created_at, updated_at
                        ) VALUES (:id, :name, :price, :now, :now)
                    """), {
                        "id": event_id, "name": name,
                        "price": stripe_price_id, "now": now,
                    })
        return event_id

    async def get_event(self, event_id: str) -> Optional[Dict[str, Any]]:
        async with self.gated():
            async with self.db.sessions() as s:
                row = (await s.execute(text("""
                    SELECT id, name, stripe_price_id, created_at, updated_at
                    FROM events WHERE id = :id
                """), {"id": event_id})).mappings().first()
        return dict(row) if row else None

    async def list_events_with_stats(self) -> List[Dict[str, Any]]:
        async with timeit("store.list_events"):
            async with self.gated():
                async with self.db.sessions() as s:
                    rows = (await s.execute(text("""
                        SELECT
                          e.id, e.name, e.stripe_price_id,
                          e.created_at, e.updated_at,
                          COUNT(t.id) AS ticket_count,
                          COALESCE(SUM(
                            CASE WHEN t.scanned_at IS NOT NULL
                                 THEN 1 ELSE 0 END
                          ), 0) AS scanned_count
                        FROM events e
                        LEFT JOIN tickets t ON t.event_id = e.id
                        GROUP BY e.id, e.name, e.stripe_price_id,
                                 e.created_at, e.updated_at
                        ORDER BY e.created_at DESC
                    """))).mappings().all()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # administrative
    # ------------------------------------------------------------------
    async def list_tickets(
        self,
        *,
        event_id: Optional[str] = None,
        email: Optional[str] = None,
        unscanned_only: bool = False,
    ) -> List[Dict[str, Any]]:
        where = []
        params: Dict[str, Any] = {}
        if event_id is not None:
            where.append("t.event_id = :event_id")
            params["event_id"] = event_id
        if email is not None:
            where.append("c.email = :email")
            params["email"] = email
        if unscanned_only:
            where.append("t.scanned_at IS NULL")
        clause = ("WHERE " + " AND ".join(where)) if where else ""
        async with self.gated():
            async with self.db.sessions() as s:
                rows = (await s.execute(text(f"""
                    SELECT {_TICKET_COLUMNS}
                    FROM tickets t
                    JOIN customers c ON c.id = t.customer_id
                    JOIN events e ON e.id = t.event_id
                    {clause}
                    ORDER BY t.created_at DESC
                """), params)).mappings().all()
        return [dict(r) for r in rows]

    async def reset_scan(self, ticket_id: str) -> bool:
        # destructive override: the only path that clears scanned_at
        async with self.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    res = await s.execute(text("""
                        UPDATE tickets SET scanned_at = NULL
                        WHERE id = :id AND scanned_at IS NOT NULL
                    """), {"id": ticket_id})
        return res.rowcount == 1

    async def delete_ticket(self, ticket_id: str) -> bool:
        async with self.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    res = await s.execute(
                        text("DELETE FROM tickets WHERE id = :id"),
                        {"id": ticket_id},
                    )
        return res.rowcount == 1

    async def list_customers(self) -> List[Dict[str, Any]]:
        async with self.gated():
            async with self.db.sessions() as s:
                rows = (await s.execute(text("""
                    SELECT c.id, c.email, c.stripe_customer_id, c.created_at,
                           COUNT(t.id) AS ticket_count
                    FROM customers c
                    LEFT JOIN tickets t ON t.customer_id = c.id
                    GROUP BY c.id, c.email, c.stripe_customer_id,
                             c.created_at
                    ORDER BY c.created_at DESC
                """))).mappings().all()
        return [dict(r) for r in rows]

    async def delete_customer(self, email: str) -> bool:
        async with self.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    owned = (await s.execute(text("""
                        SELECT COUNT(t.id) FROM tickets t
                        JOIN customers c ON c.id = t.customer_id
                        WHERE c.email = :email
                    """), {"email": email})).scalar_one()
                    if owned:
                        raise CustomerHasTickets(
                            f"{email} still owns {owned} ticket(s)"
                        )
                    res = await s.execute(
                        text("DELETE FROM customers WHERE email = :email"),
                        {"email": email},
                    )
        return res.rowcount == 1
