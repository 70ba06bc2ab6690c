from typing import Optional

import redis.asyncio as redis

from ... import config
from ...infra.sql import Database

# values of an idempotency record
PROCESSING = "processing"
COMPLETED = "completed"


# Factory keeps server.py simple and constructor-agnostic:
def new_ledger(*, db: Optional[Database] = None,
               r: Optional[redis.Redis] = None,
               backend: Optional[str] = None):
    backend = (backend or config.LEDGER_BACKEND).lower()
    if backend == "pg":
        from ._postgres import Ledger
        if db is None:
            raise RuntimeError("Ledger(pg) requires db=Database")
        return Ledger(db=db)
    else:
        from ._redis import Ledger
        if r is None:
            raise RuntimeError("Ledger(redis) requires r=redis.Redis")
        return Ledger(r=r)


def k_webhook(transaction_id: str) -> str:
    return f"stripe:processed:{transaction_id}"


def k_login(token: str) -> str:
    return f"login:{token}"


__all__ = [
    "new_ledger", "PROCESSING", "COMPLETED", "k_webhook", "k_login",
]
