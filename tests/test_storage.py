import threading
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from agile_poker.db import schema
from agile_poker.db.session import create_db_engine
from agile_poker.storage import DataClient


def _user(client, name="Alice"):
    return client.insert_user(email=f"{name.lower()}@metalab.com", name=name)


def test_insert_participant_twice_returns_same_row(client):
    user = _user(client)
    sess = client.insert_session("Sprint 12", user.id)

    first = client.insert_participant(sess.id, user.id)
    second = client.insert_participant(sess.id, user.id)

    assert first.id == second.id
    assert len(client.list_participants(session_id=sess.id)) == 1
    assert second.user_name == "Alice"


def test_upsert_vote_keeps_one_row_with_latest_value(client):
    user = _user(client)
    sess = client.insert_session("Sprint 12", user.id)
    participant = client.insert_participant(sess.id, user.id)
    ticket = client.insert_ticket(sess.id, "PROJ-1", "Fix login")

    client.upsert_vote(ticket.id, participant.id, 3)
    vote, refreshed = client.upsert_vote(ticket.id, participant.id, 5)

    votes = client.list_votes(ticket_ids=[ticket.id])
    assert len(votes) == 1
    assert votes[0].value == 5
    assert vote.id == votes[0].id
    assert refreshed.total_votes == 1
    assert refreshed.median_value == 5


def test_upsert_vote_refreshes_ticket_stats(client):
    alice, bob = _user(client, "Alice"), _user(client, "Bob")
    sess = client.insert_session("Sprint 12", alice.id)
    pa = client.insert_participant(sess.id, alice.id)
    pb = client.insert_participant(sess.id, bob.id)
    ticket = client.insert_ticket(sess.id, "PROJ-1", "Fix login")

    client.upsert_vote(ticket.id, pa.id, 3)
    client.upsert_vote(ticket.id, pb.id, 5)

    stored = client.get_ticket(ticket.id)
    assert stored.total_votes == 2
    assert stored.median_value == 4


def test_list_active_sessions_most_recent_first(client):
    user = _user(client)
    older = client.insert_session("Older", user.id)
    newer = client.insert_session("Newer", user.id)
    ended = client.insert_session("Ended", user.id)
    client.update_session(ended.id, is_active=False)

    with client._factory() as db:
        db.execute(update(schema.PokerSession)
                   .where(schema.PokerSession.id == older.id)
                   .values(created_at=datetime(2020, 1, 1)))
        db.execute(update(schema.PokerSession)
                   .where(schema.PokerSession.id == newer.id)
                   .values(created_at=datetime(2020, 1, 1) + timedelta(days=1)))
        db.commit()

    assert [s.name for s in client.list_sessions(active=True)] == ["Newer", "Older"]


def test_delete_ticket_removes_its_votes(client):
    user = _user(client)
    sess = client.insert_session("Sprint 12", user.id)
    participant = client.insert_participant(sess.id, user.id)
    ticket = client.insert_ticket(sess.id, "PROJ-1", "Fix login")
    client.upsert_vote(ticket.id, participant.id, 2)

    assert client.delete_ticket(ticket.id) is True
    assert client.get_ticket(ticket.id) is None
    assert client.list_votes(participant_id=participant.id) == []
    assert client.delete_ticket(ticket.id) is False


def test_changes_are_published_to_filtered_subscribers(client):
    user = _user(client)
    sess = client.insert_session("Sprint 12", user.id)
    other = client.insert_session("Other", user.id)

    received = []
    sub = client.realtime.subscribe("tickets", received.append, row_filter=("session_id", sess.id))

    ticket = client.insert_ticket(sess.id, "PROJ-1", "Fix login")
    client.insert_ticket(other.id, "PROJ-2", "Elsewhere")
    client.update_ticket(ticket.id, final_value=5)
    client.delete_ticket(ticket.id)

    assert [c.event for c in received] == ["INSERT", "UPDATE", "DELETE"]
    assert received[1].record["final_value"] == 5
    assert received[2].old_record["id"] == ticket.id

    sub.unsubscribe()
    client.insert_ticket(sess.id, "PROJ-3", "After unsubscribe")
    assert len(received) == 3


def test_failing_listener_does_not_break_writes(client):
    user = _user(client)
    sess = client.insert_session("Sprint 12", user.id)

    def boom(change):
        raise RuntimeError("listener down")

    seen = []
    client.realtime.subscribe("tickets", boom)
    client.realtime.subscribe("tickets", seen.append)

    ticket = client.insert_ticket(sess.id, "PROJ-1", "Fix login")
    assert client.get_ticket(ticket.id) is not None
    assert len(seen) == 1


class _PlainInsert:
    """INSERT without ON CONFLICT, so a duplicate reaches the IntegrityError path."""

    def __init__(self, table):
        self._stmt = insert(table)

    def values(self, **values):
        self._stmt = self._stmt.values(**values)
        return self

    def on_conflict_do_nothing(self, **kwargs):
        return self._stmt


def test_insert_participant_unique_violation_returns_existing_row(client, monkeypatch):
    user = _user(client)
    sess = client.insert_session("Sprint 12", user.id)
    first = client.insert_participant(sess.id, user.id)

    monkeypatch.setattr(client, "_insert", _PlainInsert)
    again = client.insert_participant(sess.id, user.id)

    assert again.id == first.id
    assert len(client.list_participants(session_id=sess.id)) == 1


def test_insert_participant_unique_violation_without_row_is_raised(client, monkeypatch):
    user = _user(client)
    sess = client.insert_session("Sprint 12", user.id)
    client.insert_participant(sess.id, user.id)

    monkeypatch.setattr(client, "_insert", _PlainInsert)
    monkeypatch.setattr(client, "find_participant", lambda session_id, user_id: None)
    with pytest.raises(IntegrityError):
        client.insert_participant(sess.id, user.id)


def test_unsupported_dialect_is_rejected():
    bind = SimpleNamespace(dialect=SimpleNamespace(name="mysql"))
    with pytest.raises(ValueError, match="Unsupported database dialect 'mysql'"):
        DataClient(sessionmaker(bind=bind))


def test_memory_database_shares_one_connection_file_database_does_not(tmp_path):
    assert isinstance(create_db_engine("sqlite://").pool, StaticPool)
    assert not isinstance(create_db_engine(f"sqlite:///{tmp_path / 'poker.db'}").pool, StaticPool)


def test_file_database_accepts_concurrent_writers(tmp_path):
    file_client = DataClient.from_url(f"sqlite:///{tmp_path / 'poker.db'}")
    user = _user(file_client)
    sess = file_client.insert_session("Sprint 12", user.id)
    errors = []

    def add_tickets(worker):
        try:
            for n in range(10):
                file_client.insert_ticket(sess.id, f"PROJ-{worker}-{n}", "Concurrent")
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=add_tickets, args=(worker,)) for worker in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(file_client.list_tickets(sess.id)) == 80
