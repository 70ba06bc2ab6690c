import logging
import os
from dataclasses import dataclass
from typing import Optional

from .errors import ConfigError

# ----------------------------
# Config & Constants
# ----------------------------
DATABASE_URL = os.environ.get(
    "DATABASE_URL", "sqlite:///./data/ticketgate.db"
)
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
REDIS_MAX_CONN = int(os.getenv("REDIS_MAX_CONN", "64"))

PAYMENT_PROVIDER = os.getenv("PAYMENT_PROVIDER", "stripe").lower()  # stripe | mock
LEDGER_BACKEND = os.getenv("LEDGER_BACKEND", "redis").lower()  # redis | pg

# providers stop retrying well before this
IDEMPOTENCY_TTL_SECONDS = int(
    os.getenv("IDEMPOTENCY_TTL_SECONDS", str(30 * 24 * 3600))
)
SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS", str(24 * 3600)))
STORE_TIMEOUT_SECONDS = float(os.getenv("STORE_TIMEOUT_SECONDS", "5.0"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


def operator_secret() -> str:
    # read on every call: rotating the env value invalidates all sessions
    return os.environ.get("OPERATOR_SECRET", "")


def stripe_webhook_secret() -> str:
    return os.environ.get("STRIPE_WEBHOOK_SECRET", "")


def mock_secret() -> str:
    return os.environ.get("MOCK_SECRET", "supersecret")


@dataclass(frozen=True)
class MailSettings:
    api_url: str
    api_key: str
    from_email: str
    from_name: str
    timeout: float = 10.0


def load_mail_settings() -> Optional[MailSettings]:
    """Mail block from the environment.

    Returns None when mail is not configured at all, raises ConfigError
    when it is configured only partially.
    """
    api_url = os.getenv("MAIL_API_URL", "https://api.resend.com/emails")
    api_key = os.getenv("MAIL_API_KEY", "")
    from_email = os.getenv("MAIL_FROM", "")
    from_name = os.getenv("MAIL_FROM_NAME", "Vender Tickets")

    if not api_key and not from_email:
        return None
    if not api_key or not from_email:
        raise ConfigError(
            "mail configuration is incomplete: set both MAIL_API_KEY and "
            "MAIL_FROM (or neither)"
        )
    return MailSettings(
        api_url=api_url,
        api_key=api_key,
        from_email=from_email,
        from_name=from_name,
        timeout=float(os.getenv("MAIL_TIMEOUT_SECONDS", "10.0")),
    )


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
