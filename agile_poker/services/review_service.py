from __future__ import annotations
from typing import Optional
from ..models import ClientContext, ReviewStats, SessionReview, TicketReview
from ..stats import calculate_mean, calculate_median
from ..storage import DataClient
from .session_service import require_creator

UNKNOWN_NAME = "Unknown"


def ensure_absolute_url(url: Optional[str]) -> Optional[str]:
    if not url:
        return url
    if url.startswith("http://") or url.startswith("https://"):
        return url
    return f"https://{url}"


def build_review(client: DataClient, ctx: ClientContext, session_id: str) -> SessionReview:
    """Vue du créateur : votes de tous les tickets, médiane recalculée à chaque chargement."""
    sess = require_creator(client, ctx, session_id)
    tickets = client.list_tickets(session_id)
    participants = client.list_participants(session_id=session_id)

    votes = client.list_votes(ticket_ids=[t.id for t in tickets]) if tickets else []
    names = {p.id: p.user_name for p in participants}
    missing = {v.participant_id for v in votes} - set(names)
    if missing:
        names.update({p.id: p.user_name for p in client.list_participants(ids=missing)})
    for vote in votes:
        vote.participant_name = names.get(vote.participant_id) or UNKNOWN_NAME

    reviews = []
    for ticket in tickets:
        ticket_votes = [v for v in votes if v.ticket_id == ticket.id]
        values = [v.value for v in ticket_votes]
        reviews.append(TicketReview(
            ticket=ticket,
            absolute_link=ensure_absolute_url(ticket.jira_link),
            votes=ticket_votes,
            median=calculate_median(values),
            mean=round(calculate_mean(values), 2),
        ))

    stats = ReviewStats(
        total_tickets=len(tickets),
        participants=len(participants),
        total_votes=len(votes),
        tickets_with_votes=sum(1 for r in reviews if r.votes),
    )
    return SessionReview(session=sess, tickets=reviews, participants=participants, stats=stats)
