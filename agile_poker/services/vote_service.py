from __future__ import annotations
import logging
from typing import Dict, List, Optional, Sequence
from ..errors import Forbidden, ValidationError
from ..models import NUMERIC_OPTIONS, UNKNOWN_VOTE, ClientContext, VoteOutcome
from ..storage import DataClient
from .session_service import require_identity
from .ticket_service import get_ticket_or_404

logger = logging.getLogger(__name__)


def parse_vote(value):
    """Return a card from the deck: a number, or UNKNOWN_VOTE."""
    if isinstance(value, str):
        value = value.strip()
        if value == UNKNOWN_VOTE:
            return UNKNOWN_VOTE
        try:
            value = float(value)
        except ValueError:
            raise ValidationError("Invalid vote card") from None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError("Invalid vote card")
    if value not in NUMERIC_OPTIONS:
        raise ValidationError("Invalid vote card")
    return float(value)


def submit_vote(client: DataClient, ctx: ClientContext, ticket_id: str,
                participant_id: str, value) -> VoteOutcome:
    """Enregistre (ou remplace) le vote d'un participant sur un ticket."""
    user_id = require_identity(ctx)
    card = parse_vote(value)
    if card == UNKNOWN_VOTE:
        return VoteOutcome(recorded=False)

    ticket = get_ticket_or_404(client, ticket_id)
    participant = client.get_participant(participant_id)
    if not participant or participant.user_id != user_id:
        raise Forbidden("Unknown participant")
    if participant.session_id != ticket.session_id:
        raise Forbidden("Participant does not belong to this session")

    vote, ticket = client.upsert_vote(ticket_id, participant_id, card)
    logger.info("Vote %s on ticket %s by participant %s", card, ticket_id, participant_id)
    return VoteOutcome(recorded=True, vote=vote, ticket=ticket)


def my_votes(client: DataClient, participant_id: str) -> Dict[str, float]:
    return {v.ticket_id: v.value for v in client.list_votes(participant_id=participant_id)}


def next_ticket_index(ticket_ids: Sequence[str], votes: Dict[str, float],
                      current: int) -> Optional[int]:
    """Index to auto-advance to after a vote, or None on the last ticket."""
    if current >= len(ticket_ids) - 1:
        return None
    for index in range(current + 1, len(ticket_ids)):
        if ticket_ids[index] not in votes:
            return index
    return current + 1


def vote_options() -> List:
    return [int(v) if float(v).is_integer() else v for v in NUMERIC_OPTIONS] + [UNKNOWN_VOTE]
