from __future__ import annotations
import logging
import secrets
from typing import Callable, Optional

from .helpers import ct_equal
from .model.ledger import k_login

logger = logging.getLogger(__name__)


class AuthGate:
    """Operator login backed by the ledger's key/value namespace.

    A session maps token -> the secret that was valid at login time. A
    token only validates while that stored secret still equals the
    currently configured one, so rotating the secret logs everyone out.
    There is no per-token revocation besides expiry.
    """

    def __init__(self, ledger, secret: Callable[[], str],
                 ttl_seconds: int) -> None:
        self.ledger = ledger
        self.secret = secret
        self.ttl_seconds = ttl_seconds

    async def login(self, private_code: Optional[str]) -> Optional[str]:
        configured = self.secret()
        if not configured or not private_code:
            return None
        if not ct_equal(private_code, configured):
            logger.info("operator login rejected")
            return None
        token = secrets.token_urlsafe(32)
        await self.ledger.put(k_login(token), configured, self.ttl_seconds)
        return token

    async def is_valid(self, token: Optional[str]) -> bool:
        if not token:
            return False
        configured = self.secret()
        if not configured:
            return False
        stored = await self.ledger.get(k_login(token))
        if stored is None:
            return False
        return ct_equal(stored, configured)
