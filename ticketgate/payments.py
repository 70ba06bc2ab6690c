from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional
import base64
import hashlib
import hmac
import json

import stripe

from . import config
from .errors import SignatureError

CHECKOUT_COMPLETED = "checkout.session.completed"
STRIPE_TOLERANCE_SECONDS = 300


@dataclass
class Purchase:
    """Purchase data pulled out of a checkout-completed notification."""
    transaction_id: str
    email: str
    event_id: str
    event_name: str
    student_name: Optional[str]
    provider_customer_id: str


def _obj(value: Any, what: str) -> Dict[str, Any]:
    # absent -> empty; present but not an object -> malformed payload
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise SignatureError(f"Malformed payload: {what} is not an object")
    return value


def _text(value: Any, what: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise SignatureError(f"Malformed payload: {what} is not a string")
    return value


def _customer_ref(customer: Any) -> str:
    if isinstance(customer, str):
        return customer
    if isinstance(customer, dict):
        return _text(customer.get("id"), "customer.id")
    if customer is None:
        return ""
    raise SignatureError("Malformed payload: customer")


def _first_custom_text(custom_fields: Any) -> Optional[str]:
    if not custom_fields:
        return None
    if not isinstance(custom_fields, list):
        raise SignatureError("Malformed payload: custom_fields is not a list")
    first = _obj(custom_fields[0], "custom_fields[0]")
    text = _obj(first.get("text"), "custom_fields[0].text")
    return _text(text.get("value"), "custom_fields[0].text.value") or None


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class PaymentAdapter(ABC):
    signature_header = ""

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        """Authenticate the raw body and parse it. Raises SignatureError."""
        ...

    def event_type(self, event: dict) -> str:
        return _text(event.get("type"), "type")

    def is_checkout_completed(self, event: dict) -> bool:
        return self.event_type(event) == CHECKOUT_COMPLETED

    def transaction_id(self, event: dict) -> str:
        return _text(self._session(event).get("id"), "session id")

    def purchase(self, event: dict) -> Purchase:
        """Pull the purchase out of a checkout session.

        Raises SignatureError when the session has the wrong shape. Absent
        fields come back empty; deciding whether they are required is up to
        the caller.
        """
        session = self._session(event)
        details = _obj(session.get("customer_details"), "customer_details")
        metadata = _obj(session.get("metadata"), "metadata")
        email = (_text(details.get("email"), "customer_details.email")
                 or _text(session.get("customer_email"), "customer_email"))
        return Purchase(
            transaction_id=_text(session.get("id"), "session id"),
            email=email,
            event_id=_text(metadata.get("event_id"), "metadata.event_id"),
            event_name=_text(metadata.get("event_name"),
                             "metadata.event_name"),
            student_name=_first_custom_text(session.get("custom_fields")),
            provider_customer_id=_customer_ref(session.get("customer")),
        )

    def _session(self, event: dict) -> Dict[str, Any]:
        data = _obj(event.get("data"), "data")
        return _obj(data.get("object"), "data.object")

    def _parse(self, payload: bytes) -> dict:
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise SignatureError("Invalid JSON")
        if not isinstance(event, dict):
            raise SignatureError("Invalid JSON")
        return event


# ----------------------------
# Stripe implementation
# ----------------------------
class StripeAdapter(PaymentAdapter):
    signature_header = "stripe-signature"

    def __init__(self, webhook_secret: str,
                 tolerance: int = STRIPE_TOLERANCE_SECONDS) -> None:
        self.webhook_secret = webhook_secret
        self.tolerance = tolerance

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(self.signature_header) or ""
        if not sig or not self.webhook_secret:
            raise SignatureError("Invalid signature")
        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError:
            raise SignatureError("Invalid payload encoding")
        try:
            stripe.WebhookSignature.verify_header(
                body, sig, self.webhook_secret, self.tolerance
            )
        except stripe.SignatureVerificationError:
            raise SignatureError("Invalid signature")
        return self._parse(payload)


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    signature_header = "x-mockpay-signature"

    def __init__(self, secret: str) -> None:
        self.secret = secret

    def sign(self, payload: bytes) -> str:
        mac = hmac.new(self.secret.encode(), payload, hashlib.sha256).digest()
        return base64.b64encode(mac).decode()

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(self.signature_header)
        expected = self.sign(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise SignatureError("Invalid signature")
        return self._parse(payload)


def new_adapter(provider: Optional[str] = None) -> PaymentAdapter:
    provider = (provider or config.PAYMENT_PROVIDER).lower()
    if provider == "mock":
        return MockPay(config.mock_secret())
    if provider == "stripe":
        return StripeAdapter(config.stripe_webhook_secret())
    raise ValueError(f"unknown payment provider: {provider}")
