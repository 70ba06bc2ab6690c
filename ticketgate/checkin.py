from __future__ import annotations
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional

from .helpers import now_ts, to_iso
from .model.store import TicketStore

logger = logging.getLogger(__name__)

INVALID = "invalid"
WRONG_EVENT = "wrong_event"
ALREADY_SCANNED = "already_scanned"
VALID = "valid"


@dataclass
class ScanResult:
    status: str
    ticketId: Optional[str] = None
    eventId: Optional[str] = None
    eventName: Optional[str] = None
    email: Optional[str] = None
    studentName: Optional[str] = None
    scannedAt: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.status == INVALID:
            return {"status": INVALID}
        out = asdict(self)
        if self.status == WRONG_EVENT:
            out.pop("scannedAt")
        return out


def _from_row(status: str, row: Dict[str, Any],
              scanned_at: Optional[float] = None) -> ScanResult:
    return ScanResult(
        status=status,
        ticketId=row["ticket_id"],
        eventId=row["event_id"],
        eventName=row["event_name"],
        email=row["email"],
        studentName=row["student_name"],
        scannedAt=to_iso(scanned_at),
    )


async def check_in(store: TicketStore, ticket_id: str,
                   event_id: str) -> ScanResult:
    """Redeem `ticket_id` for `event_id`.

    Precedence: unknown ticket, then wrong event (even if already used),
    then already scanned. Only the last branch writes, and the write is
    conditional on `scanned_at IS NULL`: of N concurrent scans exactly one
    sees `valid`, the rest get `already_scanned` with the winner's time.
    """
    row = await store.get_ticket(ticket_id)
    if row is None:
        logger.info("scan invalid ticket=%s", ticket_id)
        return ScanResult(status=INVALID)

    if row["event_id"] != event_id:
        logger.info("scan wrong event ticket=%s belongs=%s asked=%s",
                    ticket_id, row["event_id"], event_id)
        return _from_row(WRONG_EVENT, row)

    if row["scanned_at"] is not None:
        return _from_row(ALREADY_SCANNED, row, row["scanned_at"])

    ts = now_ts()
    if await store.mark_scanned(ticket_id, ts):
        logger.info("scan valid ticket=%s event=%s", ticket_id, event_id)
        return _from_row(VALID, row, ts)

    # lost the race to another scanner; report the committed time
    row = await store.get_ticket(ticket_id)
    if row is None:
        # deleted between read and write
        return ScanResult(status=INVALID)
    return _from_row(ALREADY_SCANNED, row, row["scanned_at"])
