# ticketgate/admin.py
"""
Administrative console: events, tickets, customers.

    python -m ticketgate.admin create-event --name "Spring Gala" --price price_123
    python -m ticketgate.admin tickets --event <event-id>
    python -m ticketgate.admin reset-scan <ticket-id>

Uses the same DATABASE_URL / mail settings as the server.
"""
from __future__ import annotations
import argparse
import asyncio
import sys
from typing import Any, Dict, List, Optional

from . import config
from .errors import ConfigError
from .helpers import clean_email, to_iso
from .infra.sql import make_database
from .mailer import TicketMail, deliver, new_mailer
from .model.db import create_schema
from .model.ledger import new_ledger
from .model.store import CustomerHasTickets, TicketStore


def _fmt_ticket(t: Dict[str, Any]) -> str:
    status = (
        f"SCANNED ({to_iso(t['scanned_at'])})" if t["scanned_at"] is not None
        else "NOT SCANNED"
    )
    return "\n".join([
        f"  ticket   {t['ticket_id']}",
        f"  event    {t['event_name']} ({t['event_id']})",
        f"  customer {t['email']} (id {t['customer_id']})",
        f"  name     {t['student_name'] or 'N/A'}",
        f"  status   {status}",
        f"  created  {to_iso(t['created_at'])}",
    ])


def _print_tickets(rows: List[Dict[str, Any]]) -> None:
    if not rows:
        print("no tickets found")
        return
    for t in rows:
        print(_fmt_ticket(t))
        print()
    print(f"{len(rows)} ticket(s)")


async def cmd_create_event(store: TicketStore, args, mailer) -> int:
    event_id = await store.create_event(args.name, args.price)
    print(f"event created: {event_id}")
    return 0


async def cmd_events(store: TicketStore, args, mailer) -> int:
    rows = await store.list_events_with_stats()
    if not rows:
        print("no events found")
        return 0
    for e in rows:
        print(
            f"{e['id']}  {e['name']}  price={e['stripe_price_id']}  "
            f"tickets={e['ticket_count']} scanned={e['scanned_count']}"
        )
    return 0


async def cmd_tickets(store: TicketStore, args, mailer) -> int:
    rows = await store.list_tickets(event_id=args.event, email=args.email)
    _print_tickets(rows)
    return 0


async def cmd_ticket(store: TicketStore, args, mailer) -> int:
    t = await store.get_ticket(args.ticket_id)
    if t is None:
        print(f"ticket not found: {args.ticket_id}", file=sys.stderr)
        return 1
    print(_fmt_ticket(t))
    return 0


async def cmd_add_ticket(store: TicketStore, args, mailer) -> int:
    email = clean_email(args.email)
    if email is None:
        print(f"invalid email: {args.email}", file=sys.stderr)
        return 1
    event = await store.get_event(args.event)
    if event is None:
        print(f"event not found: {args.event}", file=sys.stderr)
        return 1
    ticket_id, customer_id = await store.add_ticket_for_email(
        email=email,
        event_id=args.event,
        student_name=args.name,
    )
    print(f"ticket created: {ticket_id} (customer {customer_id})")
    if args.send_email:
        ok = await deliver(mailer, TicketMail(
            recipient_email=email,
            ticket_id=ticket_id,
            event_name=event["name"],
            student_name=args.name or "Student",
        ))
        print("email sent" if ok else "email FAILED (ticket kept)")
    return 0


async def cmd_reset_scan(store: TicketStore, args, mailer) -> int:
    if not args.yes:
        print("refusing to reset without --yes", file=sys.stderr)
        return 2
    if await store.reset_scan(args.ticket_id):
        print(f"scan reset: {args.ticket_id}")
        return 0
    print(f"ticket not found or not scanned: {args.ticket_id}",
          file=sys.stderr)
    return 1


async def cmd_delete_ticket(store: TicketStore, args, mailer) -> int:
    if not args.yes:
        print("refusing to delete without --yes", file=sys.stderr)
        return 2
    if await store.delete_ticket(args.ticket_id):
        print(f"ticket deleted: {args.ticket_id}")
        return 0
    print(f"ticket not found: {args.ticket_id}", file=sys.stderr)
    return 1


async def cmd_customers(store: TicketStore, args, mailer) -> int:
    rows = await store.list_customers()
    if not rows:
        print("no customers found")
        return 0
    for c in rows:
        print(f"{c['id']:>6}  {c['email']}  tickets={c['ticket_count']}  "
              f"stripe={c['stripe_customer_id'] or '-'}")
    return 0


async def cmd_delete_customer(store: TicketStore, args, mailer) -> int:
    try:
        deleted = await store.delete_customer(args.email)
    except CustomerHasTickets as e:
        print(f"not deleted: {e}", file=sys.stderr)
        return 1
    if not deleted:
        print(f"customer not found: {args.email}", file=sys.stderr)
        return 1
    print(f"customer deleted: {args.email}")
    return 0


async def cmd_send_reminders(store: TicketStore, args, mailer) -> int:
    event = await store.get_event(args.event)
    if event is None:
        print(f"event not found: {args.event}", file=sys.stderr)
        return 1
    rows = await store.list_tickets(event_id=args.event, unscanned_only=True)
    sent = failed = 0
    for t in rows:
        ok = await deliver(mailer, TicketMail(
            recipient_email=t["email"],
            ticket_id=t["ticket_id"],
            event_name=event["name"],
            student_name=t["student_name"] or "Student",
            reminder=True,
        ))
        if ok:
            sent += 1
        else:
            failed += 1
    print(f"reminders sent={sent} failed={failed}")
    return 0 if failed == 0 else 1


async def cmd_purge_ledger(store: TicketStore, args, mailer) -> int:
    if config.LEDGER_BACKEND != "pg":
        print("redis expires keys on its own; nothing to purge")
        return 0
    ledger = new_ledger(db=store.db, backend="pg")
    n = await ledger.purge_expired()
    print(f"purged {n} expired ledger entries")
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="ticketgate-admin",
        description="Administrative operations on the ticket store",
    )
    sub = ap.add_subparsers(dest="command", required=True)

    p = sub.add_parser("create-event", help="create an event")
    p.add_argument("--name", required=True)
    p.add_argument("--price", required=True,
                   help="payment provider price id for checkout")
    p.set_defaults(func=cmd_create_event)

    p = sub.add_parser("events", help="list events with ticket counts")
    p.set_defaults(func=cmd_events)

    p = sub.add_parser("tickets", help="list tickets")
    p.add_argument("--event", help="only this event id")
    p.add_argument("--email", help="only this customer email")
    p.set_defaults(func=cmd_tickets)

    p = sub.add_parser("ticket", help="show one ticket's status")
    p.add_argument("ticket_id")
    p.set_defaults(func=cmd_ticket)

    p = sub.add_parser("add-ticket", help="issue a ticket manually")
    p.add_argument("--email", required=True)
    p.add_argument("--event", required=True)
    p.add_argument("--name", help="beneficiary name printed on the ticket")
    p.add_argument("--send-email", action="store_true",
                   help="mail the ticket to the customer")
    p.set_defaults(func=cmd_add_ticket)

    p = sub.add_parser("reset-scan", help="mark a ticket as unscanned")
    p.add_argument("ticket_id")
    p.add_argument("--yes", action="store_true")
    p.set_defaults(func=cmd_reset_scan)

    p = sub.add_parser("delete-ticket", help="delete a ticket")
    p.add_argument("ticket_id")
    p.add_argument("--yes", action="store_true")
    p.set_defaults(func=cmd_delete_ticket)

    p = sub.add_parser("customers", help="list customers")
    p.set_defaults(func=cmd_customers)

    p = sub.add_parser("delete-customer",
                       help="delete a customer without tickets")
    p.add_argument("email")
    p.set_defaults(func=cmd_delete_customer)

    p = sub.add_parser("send-reminders",
                       help="mail every unscanned ticket of an event again")
    p.add_argument("--event", required=True)
    p.set_defaults(func=cmd_send_reminders)

    p = sub.add_parser("purge-ledger",
                       help="drop expired idempotency/session rows (pg)")
    p.set_defaults(func=cmd_purge_ledger)
    return ap


async def run(args, store: TicketStore, mailer) -> int:
    return await args.func(store, args, mailer)


async def _main(args) -> int:
    db = make_database(config.DATABASE_URL)
    try:
        async with db.engine.begin() as conn:
            await create_schema(conn)
        mailer = new_mailer(config.load_mail_settings())
        try:
            return await run(args, TicketStore(db), mailer)
        finally:
            await mailer.aclose()
    finally:
        await db.dispose()


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    config.configure_logging()
    try:
        rc = asyncio.run(_main(args))
    except ConfigError as e:
        print(f"configuration error: {e}", file=sys.stderr)
        rc = 2
    sys.exit(rc)


if __name__ == "__main__":
    main()
