from __future__ import annotations
from typing import Optional
from sqlalchemy import text

from ...helpers import now_ts
from ...infra.sql import Database


class Ledger:
    """Expiring key/value namespace in the `ledger_entries` table.

    Expired rows are treated as absent and reclaimed by `claim` inside the
    same INSERT, so create-if-absent stays one statement.
    """

    def __init__(self, *, db: Database) -> None:
        self.db = db
        self.gated = db.gated

    async def claim(self, key: str, value: str, ttl_seconds: int) -> bool:
        now = now_ts()
        async with self.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    row = (await s.execute(text("""
                      INSERT INTO ledger_entries(key, value, expires_at)
                      VALUES (:k, :v, :exp)
                      ON CONFLICT (key) DO UPDATE
                        SET value = excluded.value,
                            expires_at = excluded.expires_at
                        WHERE ledger_entries.expires_at <= :now
                      RETURNING key
                    """), {
                        "k": key, "v": value,
                        "exp": now + ttl_seconds, "now": now,
                    })).first()
        return row is not None

    async def replace(self, key: str, value: str) -> bool:
        async with self.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    res = await s.execute(text("""
                      UPDATE ledger_entries SET value = :v
                      WHERE key = :k AND expires_at > :now
                    """), {"k": key, "v": value, "now": now_ts()})
        return res.rowcount == 1

    async def put(self, key: str, value: str, ttl_seconds: int) -> None:
        now = now_ts()
        async with self.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    await s.execute(text("""
                      INSERT INTO ledger_entries(key, value, expires_at)
                      VALUES (:k, :v, :exp)
                      ON CONFLICT (key) DO UPDATE
                        SET value = excluded.value,
                            expires_at = excluded.expires_at
                    """), {"k": key, "v": value, "exp": now + ttl_seconds})

    async def get(self, key: str) -> Optional[str]:
        async with self.gated():
            async with self.db.sessions() as s:
                row = (await s.execute(text("""
                  SELECT value FROM ledger_entries
                  WHERE key = :k AND expires_at > :now
                """), {"k": key, "now": now_ts()})).first()
        return row[0] if row else None

    async def release(self, key: str) -> None:
        async with self.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    await s.execute(
                        text("DELETE FROM ledger_entries WHERE key = :k"),
                        {"k": key},
                    )

    async def purge_expired(self) -> int:
        async with self.gated():
            async with self.db.sessions() as s:
                async with s.begin():
                    res = await s.execute(
                        text(
                            "DELETE FROM ledger_entries "
                            "WHERE expires_at <= :now"
                        ),
                        {"now": now_ts()},
                    )
        return res.rowcount
