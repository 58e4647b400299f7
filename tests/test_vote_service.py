import pytest

from agile_poker.errors import Forbidden, ValidationError
from agile_poker.models import AddTicketIn
from agile_poker.services import session_service, ticket_service, vote_service
from agile_poker.services.session_service import JoinFlow
from agile_poker.services.vote_service import next_ticket_index


@pytest.fixture
def board(client, sign_in):
    alice, bob = sign_in("Alice"), sign_in("Bob")
    sess = session_service.create_session(client, alice, "Sprint 12")
    JoinFlow(client).join(bob, sess.id)
    ticket = ticket_service.add_ticket(client, alice, sess.id,
                                       AddTicketIn(ticket_number="PROJ-1", title="Fix login"))
    return sess, ticket, alice, bob


def test_vote_twice_keeps_latest_value(client, board):
    sess, ticket, _, bob = board
    pid = bob.participant_for(sess.id)

    vote_service.submit_vote(client, bob, ticket.id, pid, 3)
    outcome = vote_service.submit_vote(client, bob, ticket.id, pid, "5")

    assert outcome.recorded
    assert outcome.ticket.total_votes == 1
    assert vote_service.my_votes(client, pid) == {ticket.id: 5}
    assert len(client.list_votes(ticket_ids=[ticket.id])) == 1


def test_unknown_card_is_never_stored(client, board):
    sess, ticket, _, bob = board
    outcome = vote_service.submit_vote(client, bob, ticket.id, bob.participant_for(sess.id), "?")

    assert outcome.recorded is False
    assert client.list_votes(ticket_ids=[ticket.id]) == []


def test_zero_and_half_are_valid_votes(client, board):
    sess, ticket, alice, _ = board
    pid = alice.participant_for(sess.id)
    assert vote_service.submit_vote(client, alice, ticket.id, pid, 0).vote.value == 0
    assert vote_service.submit_vote(client, alice, ticket.id, pid, 0.5).vote.value == 0.5


def test_values_outside_the_deck_are_rejected(client, board):
    sess, ticket, _, bob = board
    pid = bob.participant_for(sess.id)
    for bad in (4, "13", "coffee", True):
        with pytest.raises(ValidationError):
            vote_service.submit_vote(client, bob, ticket.id, pid, bad)


def test_cannot_vote_with_someone_elses_participant(client, board):
    sess, ticket, alice, bob = board
    with pytest.raises(Forbidden):
        vote_service.submit_vote(client, bob, ticket.id, alice.participant_for(sess.id), 3)


def test_cannot_vote_on_a_ticket_of_another_session(client, board, sign_in):
    sess, _, _, bob = board
    carol = sign_in("Carol")
    other = session_service.create_session(client, carol, "Other")
    foreign = ticket_service.add_ticket(client, carol, other.id, AddTicketIn(ticket_number="X", title="Y"))

    with pytest.raises(Forbidden):
        vote_service.submit_vote(client, bob, foreign.id, bob.participant_for(sess.id), 3)


def test_next_ticket_index_skips_voted_tickets():
    ids = ["a", "b", "c", "d"]
    assert next_ticket_index(ids, {"a": 1, "b": 2}, 0) == 2
    assert next_ticket_index(ids, {}, 1) == 2


def test_next_ticket_index_when_everything_after_is_voted():
    ids = ["a", "b", "c"]
    assert next_ticket_index(ids, {"a": 1, "b": 2, "c": 3}, 0) == 1


def test_next_ticket_index_stays_on_last_ticket():
    assert next_ticket_index(["a", "b"], {}, 1) is None
    assert next_ticket_index([], {}, 0) is None


def test_vote_options():
    assert vote_service.vote_options() == [0, 0.5, 1, 2, 3, 5, 8, "?"]
