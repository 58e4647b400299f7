from __future__ import annotations
import enum
import logging
import threading
from typing import List, Optional, Set, Tuple
from ..errors import AuthenticationRequired, Conflict, Forbidden, NotFound, ValidationError
from ..models import ClientContext, Session
from ..storage import DataClient

logger = logging.getLogger(__name__)

SESSION_UNAVAILABLE = "Session not found or inactive"


def require_identity(ctx: ClientContext) -> str:
    if not ctx.is_identified:
        raise AuthenticationRequired()
    return ctx.user_id


def get_session_or_404(client: DataClient, session_id: str) -> Session:
    sess = client.get_session(session_id)
    if not sess:
        raise NotFound("Session not found")
    return sess


def is_creator(sess: Session, ctx: ClientContext) -> bool:
    return ctx.is_identified and sess.created_by == ctx.user_id


def require_creator(client: DataClient, ctx: ClientContext, session_id: str) -> Session:
    require_identity(ctx)
    sess = get_session_or_404(client, session_id)
    if not is_creator(sess, ctx):
        raise Forbidden("Only the session creator can do this")
    return sess


def create_session(client: DataClient, ctx: ClientContext, name: str) -> Session:
    """CU-1 : créer une session ; le créateur y est inscrit comme participant."""
    user_id = require_identity(ctx)
    name = (name or "").strip()
    if not name:
        raise ValidationError("Please enter a session name")

    sess = client.insert_session(name=name, created_by=user_id)
    participant = client.insert_participant(session_id=sess.id, user_id=user_id)
    ctx.participants[sess.id] = participant.id
    logger.info("Session created: id=%s name=%r creator=%s", sess.id, name, user_id)
    return sess


def list_active_sessions(client: DataClient) -> List[Session]:
    return client.list_sessions(active=True, descending=True)


def end_session(client: DataClient, ctx: ClientContext, session_id: str) -> Session:
    require_creator(client, ctx, session_id)
    sess = client.update_session(session_id, is_active=False)
    logger.info("Session %s ended", session_id)
    return sess


# --- Rejoindre une session ---

class JoinState(str, enum.Enum):
    START = "start"
    VALIDATING_SESSION = "validating_session"
    CHECKING_EXISTING_PARTICIPANT = "checking_existing_participant"
    REUSING = "reusing"
    CREATING_PARTICIPANT = "creating_participant"
    REDIRECTED = "redirected"
    FAILED = "failed"


class JoinResult:
    def __init__(self, session_id: str):
        self.session_id = session_id
        self.state = JoinState.START
        self.participant_id: Optional[str] = None
        self.reused = False

    @property
    def redirect_to(self) -> str:
        return f"/session/{self.session_id}/vote"


class JoinFlow:
    """CU-2 : rejoindre une session existante (idempotent)."""

    # partagé par tous les flux du processus : un seul join en vol par (session, user)
    _lock = threading.Lock()
    _in_flight: Set[Tuple[str, str]] = set()

    def __init__(self, client: DataClient):
        self.client = client

    def join(self, ctx: ClientContext, session_id: str) -> JoinResult:
        result = JoinResult(session_id)
        user_id = require_identity(ctx)

        key = (session_id, user_id)
        with self._lock:
            if key in self._in_flight:
                raise Conflict("Join already in progress")
            self._in_flight.add(key)
        try:
            self._run(ctx, user_id, result)
        except Exception:
            result.state = JoinState.FAILED
            raise
        finally:
            with self._lock:
                self._in_flight.discard(key)
        return result

    def _run(self, ctx: ClientContext, user_id: str, result: JoinResult) -> None:
        result.state = JoinState.VALIDATING_SESSION
        sess = self.client.get_session(result.session_id, active_only=True)
        if not sess:
            raise NotFound(SESSION_UNAVAILABLE)

        result.state = JoinState.CHECKING_EXISTING_PARTICIPANT
        existing = self.client.find_participant(sess.id, user_id)
        if existing:
            result.state = JoinState.REUSING
            result.reused = True
            participant = existing
        else:
            result.state = JoinState.CREATING_PARTICIPANT
            participant = self.client.insert_participant(sess.id, user_id)
            logger.info("User %s joined session %s as %s", user_id, sess.id, participant.id)

        ctx.participants[sess.id] = participant.id
        result.participant_id = participant.id
        result.state = JoinState.REDIRECTED
