# ticketgate/issuance.py
"""
Webhook -> ticket issuance.

Order of operations per delivery:

  1. verify signature over the raw body        (no state touched)
  2. drop everything but checkout-completed    (ack, no state touched)
  3. extract the purchase, rejecting bad shape (no state touched)
  4. claim the idempotency record `processing` (atomic create-if-absent)
  5. upsert the customer by email
  6. insert the ticket
  7. flip the record to `completed`, TTL kept
  8. hand the confirmation mail to the caller  (best effort, after commit)

A failure in 5-6 releases the record so the provider's retry can run the
whole sequence again. Missing email/event id can never succeed on retry, so
it is acknowledged and logged for manual reconciliation.
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from .errors import PermanentDataError, TransientStoreError
from .helpers import new_id
from .infra.timings import timeit
from .mailer import TicketMail
from .model.ledger import COMPLETED, PROCESSING, k_webhook
from .model.store import TicketStore
from .payments import PaymentAdapter, Purchase

logger = logging.getLogger(__name__)

ISSUED = "issued"
DUPLICATE = "duplicate"
IGNORED = "ignored"
MISSING_DATA = "missing_data"


@dataclass
class IssueResult:
    status: str
    transaction_id: str = ""
    ticket_id: Optional[str] = None
    mail: Optional[TicketMail] = None


class IssuancePipeline:
    def __init__(
        self,
        *,
        adapter: PaymentAdapter,
        store: TicketStore,
        ledger,
        ttl_seconds: int,
        store_timeout: float,
    ) -> None:
        self.adapter = adapter
        self.store = store
        self.ledger = ledger
        self.ttl_seconds = ttl_seconds
        self.store_timeout = store_timeout

    async def handle(self, payload: bytes, headers: dict) -> IssueResult:
        # SignatureError propagates: caller answers 400
        event = self.adapter.verify_webhook(payload, headers)

        if not self.adapter.is_checkout_completed(event):
            logger.debug("ignoring event type=%s",
                         self.adapter.event_type(event))
            return IssueResult(status=IGNORED)

        # shape errors surface here, before any state is touched
        purchase = self.adapter.purchase(event)
        txn = purchase.transaction_id
        if not txn:
            logger.error("checkout event without session id, not issuing")
            return IssueResult(status=MISSING_DATA)

        key = k_webhook(txn)
        try:
            async with timeit("ledger.claim"):
                claimed = await self.ledger.claim(
                    key, PROCESSING, self.ttl_seconds
                )
        except Exception as e:
            # nothing written yet, nothing to undo
            logger.exception("idempotency claim failed txn=%s", txn)
            raise TransientStoreError("ledger unavailable") from e

        if not claimed:
            logger.info("[idempotency] %s already processed or processing",
                        txn)
            return IssueResult(status=DUPLICATE, transaction_id=txn)

        try:
            self._validate(purchase)
        except PermanentDataError as e:
            # record stays claimed: redeliveries are no-ops as well
            logger.error("missing critical data txn=%s: %s", txn, e)
            return IssueResult(status=MISSING_DATA, transaction_id=txn)

        ticket_id = new_id()
        try:
            await asyncio.wait_for(
                self._write(purchase, ticket_id), self.store_timeout
            )
        except Exception as e:
            logger.exception("ticket creation failed txn=%s", txn)
            await self._release(key)
            raise TransientStoreError("ticket store write failed") from e

        # point of no return: the ticket row is durable
        try:
            await self.ledger.replace(key, COMPLETED)
        except Exception:
            # still `processing`, which blocks redeliveries just the same
            logger.exception("could not mark %s completed", txn)

        logger.info("issued ticket=%s txn=%s event=%s",
                    ticket_id, txn, purchase.event_id)
        return IssueResult(
            status=ISSUED,
            transaction_id=txn,
            ticket_id=ticket_id,
            mail=TicketMail(
                recipient_email=purchase.email,
                ticket_id=ticket_id,
                event_name=purchase.event_name or "Event",
                student_name=purchase.student_name or "Student",
            ),
        )

    def _validate(self, purchase: Purchase) -> Purchase:
        missing = []
        if not purchase.email:
            missing.append("email")
        if not purchase.event_id:
            missing.append("event_id")
        if missing:
            raise PermanentDataError(
                "missing " + ", ".join(missing),
                transaction_id=purchase.transaction_id,
            )
        return purchase

    async def _write(self, purchase: Purchase, ticket_id: str) -> None:
        customer_id = await self.store.upsert_customer(
            purchase.email, purchase.provider_customer_id
        )
        await self.store.insert_ticket(
            ticket_id=ticket_id,
            event_id=purchase.event_id,
            customer_id=customer_id,
            student_name=purchase.student_name,
        )

    async def _release(self, key: str) -> None:
        try:
            await self.ledger.release(key)
        except Exception:
            # retries stay blocked until the record expires
            logger.exception("could not release idempotency record %s", key)
