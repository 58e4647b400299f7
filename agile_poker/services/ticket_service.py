from __future__ import annotations
import logging
from typing import List, Optional
from ..errors import NotFound
from ..models import AddTicketIn, ClientContext, Ticket, VoterTicket
from ..storage import DataClient
from .session_service import get_session_or_404, require_creator

logger = logging.getLogger(__name__)


def parse_final_value(raw) -> float:
    """Parse a final value, falling back to 0 on anything unparsable."""
    if raw is None or isinstance(raw, bool):
        return 0.0
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return 0.0
    if value != value:  # NaN
        return 0.0
    return value


def get_ticket_or_404(client: DataClient, ticket_id: str) -> Ticket:
    ticket = client.get_ticket(ticket_id)
    if not ticket:
        raise NotFound("Ticket not found")
    return ticket


def list_tickets(client: DataClient, session_id: str) -> List[Ticket]:
    get_session_or_404(client, session_id)
    return client.list_tickets(session_id)


def list_voter_tickets(client: DataClient, session_id: str) -> List[VoterTicket]:
    return [VoterTicket.from_ticket(t) for t in list_tickets(client, session_id)]


def add_ticket(client: DataClient, ctx: ClientContext, session_id: str,
               payload: AddTicketIn) -> Optional[Ticket]:
    """Ajoute un ticket ; sans numéro ou sans titre, rien n'est inséré."""
    require_creator(client, ctx, session_id)
    number = (payload.ticket_number or "").strip()
    title = (payload.title or "").strip()
    if not number or not title:
        logger.debug("Ticket ignored for session %s: number and title are required", session_id)
        return None

    link = (payload.jira_link or "").strip() or None
    ticket = client.insert_ticket(session_id, ticket_number=number, title=title, jira_link=link)
    logger.info("Ticket %s (%s) added to session %s", ticket.id, number, session_id)
    return ticket


def update_final_value(client: DataClient, ctx: ClientContext, ticket_id: str, raw_value) -> Ticket:
    ticket = get_ticket_or_404(client, ticket_id)
    require_creator(client, ctx, ticket.session_id)
    value = parse_final_value(raw_value)
    ticket = client.update_ticket(ticket_id, final_value=value)
    logger.info("Final value of ticket %s set to %s", ticket_id, value)
    return ticket


def delete_ticket(client: DataClient, ctx: ClientContext, ticket_id: str) -> Ticket:
    ticket = get_ticket_or_404(client, ticket_id)
    require_creator(client, ctx, ticket.session_id)
    client.delete_ticket(ticket_id)
    logger.info("Ticket %s deleted from session %s", ticket_id, ticket.session_id)
    return ticket
