from __future__ import annotations
from datetime import datetime
from typing import Dict, List, Literal, Optional, Union
from pydantic import BaseModel, Field

# Paquet de cartes : "?" = inconnu, jamais enregistré
UNKNOWN_VOTE = "?"
VOTE_OPTIONS: List[Union[float, str]] = [0, 0.5, 1, 2, 3, 5, 8, UNKNOWN_VOTE]
NUMERIC_OPTIONS = [v for v in VOTE_OPTIONS if not isinstance(v, str)]

ChangeKind = Literal["INSERT", "UPDATE", "DELETE"]


# --- Entités (lignes de la base) ---

class User(BaseModel):
    id: str
    email: str
    name: str
    created_at: datetime
    updated_at: datetime


class Session(BaseModel):
    id: str
    name: str
    created_by: str
    is_active: bool = True
    created_at: datetime
    updated_at: datetime


class Participant(BaseModel):
    id: str
    session_id: str
    user_id: str
    joined_at: datetime
    user_name: Optional[str] = None   # rempli par jointure sur users


class Ticket(BaseModel):
    id: str
    session_id: str
    ticket_number: str
    title: str
    jira_link: Optional[str] = None
    total_votes: int = 0
    median_value: float = 0
    final_value: float = 0
    created_at: datetime
    updated_at: datetime


class VoterTicket(BaseModel):
    """What a voter sees of a ticket: no median, no final value."""
    id: str
    ticket_number: str
    title: str
    jira_link: Optional[str] = None
    total_votes: int = 0

    @classmethod
    def from_ticket(cls, ticket: Ticket) -> "VoterTicket":
        return cls(
            id=ticket.id,
            ticket_number=ticket.ticket_number,
            title=ticket.title,
            jira_link=ticket.jira_link,
            total_votes=ticket.total_votes,
        )


class Vote(BaseModel):
    id: str
    ticket_id: str
    participant_id: str
    value: float
    created_at: datetime
    updated_at: datetime
    participant_name: Optional[str] = None


class ChangeEvent(BaseModel):
    table: str
    event: ChangeKind
    record: Optional[Dict] = None
    old_record: Optional[Dict] = None


# --- Contexte client (remplace le localStorage du navigateur) ---

class ClientContext(BaseModel):
    user_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    participants: Dict[str, str] = Field(default_factory=dict)   # session_id -> participant_id

    @property
    def is_identified(self) -> bool:
        return bool(self.user_id)

    def participant_for(self, session_id: str) -> Optional[str]:
        return self.participants.get(session_id)


# --- Modèles de lecture (review) ---

class TicketReview(BaseModel):
    ticket: Ticket
    absolute_link: Optional[str] = None
    votes: List[Vote] = Field(default_factory=list)
    median: float = 0
    mean: float = 0


class ReviewStats(BaseModel):
    total_tickets: int = 0
    participants: int = 0
    total_votes: int = 0
    tickets_with_votes: int = 0


class SessionReview(BaseModel):
    session: Session
    tickets: List[TicketReview] = Field(default_factory=list)
    participants: List[Participant] = Field(default_factory=list)
    stats: ReviewStats = Field(default_factory=ReviewStats)


class VoteOutcome(BaseModel):
    recorded: bool
    vote: Optional[Vote] = None
    ticket: Optional[Ticket] = None


# DTOs (entrées API)
class SignInIn(BaseModel):
    email: str = ""
    name: str = ""
    model_config = {
        "json_schema_extra": {
            "example": {"email": "jane.doe@metalab.com", "name": "Jane"}
        }
    }

class CreateSessionIn(BaseModel):
    name: str = Field("", description="Session name")
    model_config = {
        "json_schema_extra": {
            "example": {"name": "Sprint 12"}
        }
    }

class AddTicketIn(BaseModel):
    ticket_number: str = ""
    title: str = ""
    jira_link: Optional[str] = None

class FinalValueIn(BaseModel):
    value: Union[float, str, None] = None

class VoteIn(BaseModel):
    participant_id: str
    value: Union[float, str]
