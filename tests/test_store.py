import pytest
from sqlalchemy.exc import IntegrityError

from conftest import run_async
from ticketgate.model.store import CustomerHasTickets, escape_like


def test_escape_like():
    assert escape_like("50%_off\\") == "50\\%\\_off\\\\"


def test_upsert_customer_preserves_identity(store):
    first = run_async(store.upsert_customer("parent@example.com", "cus_1"))
    again = run_async(store.upsert_customer("parent@example.com", "cus_2"))
    assert first == again

    customers = run_async(store.list_customers())
    assert len(customers) == 1
    assert customers[0]["stripe_customer_id"] == "cus_2"


def test_customer_email_is_case_sensitive(store):
    a = run_async(store.upsert_customer("Parent@example.com", ""))
    b = run_async(store.upsert_customer("parent@example.com", ""))
    assert a != b


def test_ticket_requires_existing_event(store):
    customer_id = run_async(store.upsert_customer("p@example.com", ""))
    with pytest.raises(IntegrityError):
        run_async(store.insert_ticket(
            ticket_id="t-orphan", event_id="no-such-event",
            customer_id=customer_id, student_name=None,
        ))


def test_get_ticket_joins_customer_and_event(store, event_id):
    tid, customer_id = run_async(store.add_ticket_for_email(
        email="p@example.com", event_id=event_id, student_name="Ada"
    ))
    row = run_async(store.get_ticket(tid))
    assert row["ticket_id"] == tid
    assert row["event_id"] == event_id
    assert row["event_name"] == "Spring Gala"
    assert row["email"] == "p@example.com"
    assert row["customer_id"] == customer_id
    assert row["student_name"] == "Ada"
    assert row["scanned_at"] is None
    assert run_async(store.get_ticket("missing")) is None


def test_mark_scanned_only_once(store, event_id):
    tid, _ = run_async(store.add_ticket_for_email(
        email="p@example.com", event_id=event_id
    ))
    assert run_async(store.mark_scanned(tid, 1000.0)) is True
    assert run_async(store.mark_scanned(tid, 2000.0)) is False
    assert run_async(store.get_ticket(tid))["scanned_at"] == 1000.0


def test_reset_scan_is_the_only_way_back(store, event_id):
    tid, _ = run_async(store.add_ticket_for_email(
        email="p@example.com", event_id=event_id
    ))
    assert run_async(store.reset_scan(tid)) is False   # not scanned yet
    run_async(store.mark_scanned(tid, 1000.0))
    assert run_async(store.reset_scan(tid)) is True
    assert run_async(store.get_ticket(tid))["scanned_at"] is None


def test_events_with_stats(store, event_id, other_event_id):
    t1, _ = run_async(store.add_ticket_for_email(
        email="a@example.com", event_id=event_id))
    run_async(store.add_ticket_for_email(
        email="b@example.com", event_id=event_id))
    run_async(store.mark_scanned(t1, 1000.0))

    stats = {e["id"]: e for e in run_async(store.list_events_with_stats())}
    assert stats[event_id]["ticket_count"] == 2
    assert stats[event_id]["scanned_count"] == 1
    assert stats[other_event_id]["ticket_count"] == 0
    assert stats[other_event_id]["scanned_count"] == 0


def test_list_tickets_filters(store, event_id, other_event_id):
    t1, _ = run_async(store.add_ticket_for_email(
        email="a@example.com", event_id=event_id))
    run_async(store.add_ticket_for_email(
        email="b@example.com", event_id=other_event_id))
    run_async(store.mark_scanned(t1, 1000.0))

    assert len(run_async(store.list_tickets())) == 2
    by_event = run_async(store.list_tickets(event_id=event_id))
    assert [t["ticket_id"] for t in by_event] == [t1]
    by_email = run_async(store.list_tickets(email="b@example.com"))
    assert [t["event_id"] for t in by_email] == [other_event_id]
    assert run_async(
        store.list_tickets(event_id=event_id, unscanned_only=True)
    ) == []


def test_delete_customer_refused_while_owning_tickets(store, event_id):
    tid, _ = run_async(store.add_ticket_for_email(
        email="a@example.com", event_id=event_id))
    with pytest.raises(CustomerHasTickets):
        run_async(store.delete_customer("a@example.com"))

    assert run_async(store.delete_ticket(tid)) is True
    assert run_async(store.delete_ticket(tid)) is False
    assert run_async(store.delete_customer("a@example.com")) is True
    assert run_async(store.list_customers()) == []


def test_search_candidates_newest_first(store, event_id):
    older, _ = run_async(store.add_ticket_for_email(
        email="a@example.com", event_id=event_id, student_name="Ada One"))
    newer, _ = run_async(store.add_ticket_for_email(
        email="b@example.com", event_id=event_id, student_name="Ada Two"))
    rows = run_async(store.search_candidates(["ada"]))
    assert [r["ticket_id"] for r in rows] == [newer, older]
    assert run_async(store.search_candidates([])) == []
