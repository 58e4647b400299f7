import pytest

from agile_poker.errors import AuthenticationRequired, Conflict, Forbidden, NotFound, ValidationError
from agile_poker.models import ClientContext, SignInIn
from agile_poker.services import session_service, user_service
from agile_poker.services.session_service import JoinFlow, JoinState


def test_sign_in_rejects_foreign_domain(client):
    with pytest.raises(ValidationError, match="@metalab.com"):
        user_service.sign_in(client, SignInIn(email="bob@gmail.com", name="Bob"), "metalab.com")


def test_sign_in_requires_name(client):
    with pytest.raises(ValidationError):
        user_service.sign_in(client, SignInIn(email="bob@metalab.com", name="  "), "metalab.com")


def test_sign_in_twice_updates_name(client):
    first = user_service.sign_in(client, SignInIn(email="bob@metalab.com", name="Bob"), "metalab.com")
    second = user_service.sign_in(client, SignInIn(email="bob@metalab.com", name="Robert"), "metalab.com")
    assert first.id == second.id
    assert client.get_user(first.id).name == "Robert"


def test_create_session_registers_creator_as_participant(client, sign_in):
    ctx = sign_in("Alice")
    sess = session_service.create_session(client, ctx, "Sprint 12")

    assert sess.is_active
    assert sess.created_by == ctx.user_id
    participants = client.list_participants(session_id=sess.id)
    assert [p.id for p in participants] == [ctx.participant_for(sess.id)]


def test_create_session_requires_name_and_identity(client, sign_in):
    with pytest.raises(ValidationError):
        session_service.create_session(client, sign_in("Alice"), "   ")
    with pytest.raises(AuthenticationRequired):
        session_service.create_session(client, ClientContext(), "Sprint 12")


def test_end_session_is_creator_only(client, sign_in):
    alice, bob = sign_in("Alice"), sign_in("Bob")
    sess = session_service.create_session(client, alice, "Sprint 12")

    with pytest.raises(Forbidden):
        session_service.end_session(client, bob, sess.id)

    ended = session_service.end_session(client, alice, sess.id)
    assert ended.is_active is False
    assert session_service.list_active_sessions(client) == []


def test_join_twice_resolves_to_same_participant(client, sign_in):
    sess = session_service.create_session(client, sign_in("Alice"), "Sprint 12")
    bob = sign_in("Bob")

    first = JoinFlow(client).join(bob, sess.id)
    second = JoinFlow(client).join(bob, sess.id)

    assert first.participant_id == second.participant_id
    assert first.state == JoinState.REDIRECTED
    assert second.reused is True
    assert second.redirect_to == f"/session/{sess.id}/vote"
    assert len(client.list_participants(session_id=sess.id)) == 2
    assert bob.participant_for(sess.id) == first.participant_id


def test_join_inactive_session_is_rejected_even_for_previous_participants(client, sign_in):
    alice, bob = sign_in("Alice"), sign_in("Bob")
    sess = session_service.create_session(client, alice, "Sprint 12")
    JoinFlow(client).join(bob, sess.id)
    session_service.end_session(client, alice, sess.id)

    with pytest.raises(NotFound, match="Session not found or inactive"):
        JoinFlow(client).join(bob, sess.id)
    with pytest.raises(NotFound):
        JoinFlow(client).join(sign_in("Carol"), sess.id)


def test_join_unknown_session(client, sign_in):
    with pytest.raises(NotFound):
        JoinFlow(client).join(sign_in("Bob"), "does-not-exist")


def test_join_requires_identity(client, sign_in):
    sess = session_service.create_session(client, sign_in("Alice"), "Sprint 12")
    with pytest.raises(AuthenticationRequired):
        JoinFlow(client).join(ClientContext(), sess.id)


def test_reentrant_join_is_refused(client, sign_in, monkeypatch):
    sess = session_service.create_session(client, sign_in("Alice"), "Sprint 12")
    bob = sign_in("Bob")
    flow = JoinFlow(client)
    original = client.get_session
    nested = []

    def get_session_and_rejoin(session_id, active_only=False):
        if not nested:
            with pytest.raises(Conflict):
                nested.append(JoinFlow(client).join(bob, session_id))
            nested.append("refused")
        return original(session_id, active_only=active_only)

    monkeypatch.setattr(client, "get_session", get_session_and_rejoin)
    result = flow.join(bob, sess.id)

    assert nested == ["refused"]
    assert result.state == JoinState.REDIRECTED
    assert len(client.list_participants(session_id=sess.id)) == 2
