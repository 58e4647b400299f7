"""
Client d'accès aux données.

Encapsule toutes les requêtes SQLAlchemy et renvoie des entités pydantic
(jamais des lignes ORM). Chaque écriture validée est publiée sur le hub
Realtime, après le commit.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as OrmSession
from sqlalchemy.orm import sessionmaker

from .db import schema
from .db.session import create_db_engine, init_db, make_session_factory
from .models import ChangeEvent, Participant, Session, Ticket, User, Vote
from .realtime import Realtime
from .stats import calculate_median

logger = logging.getLogger(__name__)

# dialectes offrant INSERT … ON CONFLICT
UPSERT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _record(entity) -> Dict:
    return entity.model_dump(mode="json")


class DataClient:
    def __init__(self, factory: sessionmaker, realtime: Optional[Realtime] = None):
        self._factory = factory
        self.realtime = realtime or Realtime()
        self._dialect = factory.kw["bind"].dialect.name
        if self._dialect not in UPSERT_INSERTS:
            raise ValueError(
                f"Unsupported database dialect {self._dialect!r}: "
                f"expected one of {sorted(UPSERT_INSERTS)}"
            )

    @classmethod
    def from_url(cls, database_url: str, realtime: Optional[Realtime] = None) -> "DataClient":
        engine = create_db_engine(database_url)
        init_db(engine)
        return cls(make_session_factory(engine), realtime)

    @contextmanager
    def _transaction(self) -> Iterator[tuple[OrmSession, List[ChangeEvent]]]:
        """Commit on success, roll back on error, publish once committed."""
        changes: List[ChangeEvent] = []
        db = self._factory()
        try:
            yield db, changes
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
        for change in changes:
            self.realtime.publish(change)

    def _insert(self, table):
        return UPSERT_INSERTS[self._dialect](table)

    # --- users ---

    def get_user(self, user_id: str) -> Optional[User]:
        with self._transaction() as (db, _):
            row = db.get(schema.User, user_id)
            return User.model_validate(row, from_attributes=True) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._transaction() as (db, _):
            row = db.scalars(select(schema.User).where(schema.User.email == email)).first()
            return User.model_validate(row, from_attributes=True) if row else None

    def insert_user(self, email: str, name: str) -> User:
        with self._transaction() as (db, changes):
            row = schema.User(email=email, name=name)
            db.add(row)
            db.flush()
            user = User.model_validate(row, from_attributes=True)
            changes.append(ChangeEvent(table="users", event="INSERT", record=_record(user)))
            return user

    def update_user(self, user_id: str, **values) -> Optional[User]:
        return self._update(schema.User, User, "users", user_id, values)

    # --- sessions ---

    def get_session(self, session_id: str, active_only: bool = False) -> Optional[Session]:
        with self._transaction() as (db, _):
            query = select(schema.PokerSession).where(schema.PokerSession.id == session_id)
            if active_only:
                query = query.where(schema.PokerSession.is_active.is_(True))
            row = db.scalars(query).first()
            return Session.model_validate(row, from_attributes=True) if row else None

    def list_sessions(self, active: Optional[bool] = None, descending: bool = True) -> List[Session]:
        with self._transaction() as (db, _):
            query = select(schema.PokerSession)
            if active is not None:
                query = query.where(schema.PokerSession.is_active.is_(active))
            order = schema.PokerSession.created_at
            query = query.order_by(order.desc() if descending else order.asc())
            return [Session.model_validate(r, from_attributes=True) for r in db.scalars(query)]

    def insert_session(self, name: str, created_by: str) -> Session:
        with self._transaction() as (db, changes):
            row = schema.PokerSession(name=name, created_by=created_by, is_active=True)
            db.add(row)
            db.flush()
            sess = Session.model_validate(row, from_attributes=True)
            changes.append(ChangeEvent(table="sessions", event="INSERT", record=_record(sess)))
            return sess

    def update_session(self, session_id: str, **values) -> Optional[Session]:
        return self._update(schema.PokerSession, Session, "sessions", session_id, values)

    # --- participants ---

    def _participant_query(self):
        return (
            select(schema.Participant, schema.User.name)
            .outerjoin(schema.User, schema.User.id == schema.Participant.user_id)
        )

    @staticmethod
    def _participant(row, user_name: Optional[str]) -> Participant:
        participant = Participant.model_validate(row, from_attributes=True)
        participant.user_name = user_name
        return participant

    def get_participant(self, participant_id: str) -> Optional[Participant]:
        with self._transaction() as (db, _):
            found = db.execute(
                self._participant_query().where(schema.Participant.id == participant_id)
            ).first()
            return self._participant(*found) if found else None

    def find_participant(self, session_id: str, user_id: str) -> Optional[Participant]:
        with self._transaction() as (db, _):
            found = db.execute(
                self._participant_query().where(
                    schema.Participant.session_id == session_id,
                    schema.Participant.user_id == user_id,
                )
            ).first()
            return self._participant(*found) if found else None

    def list_participants(self, session_id: Optional[str] = None,
                          ids: Optional[Iterable[str]] = None) -> List[Participant]:
        with self._transaction() as (db, _):
            query = self._participant_query()
            if session_id is not None:
                query = query.where(schema.Participant.session_id == session_id)
            if ids is not None:
                query = query.where(schema.Participant.id.in_(list(ids)))
            query = query.order_by(schema.Participant.joined_at.asc())
            return [self._participant(row, name) for row, name in db.execute(query)]

    def insert_participant(self, session_id: str, user_id: str) -> Participant:
        """Upsert on (session_id, user_id); a conflict returns the existing row."""
        try:
            with self._transaction() as (db, changes):
                result = db.execute(
                    self._insert(schema.Participant)
                    .values(id=schema._new_id(), session_id=session_id,
                            user_id=user_id, joined_at=_now())
                    .on_conflict_do_nothing(index_elements=["session_id", "user_id"])
                )
                inserted = result.rowcount == 1
                found = db.execute(
                    self._participant_query().where(
                        schema.Participant.session_id == session_id,
                        schema.Participant.user_id == user_id,
                    )
                ).one()
                participant = self._participant(*found)
                if inserted:
                    changes.append(ChangeEvent(table="participants", event="INSERT",
                                               record=_record(participant)))
                else:
                    logger.info("Participant already registered for session %s, reusing %s",
                                session_id, participant.id)
                return participant
        except IntegrityError:
            # course perdue contre une autre écriture : on relit la ligne existante
            logger.warning("Unique violation joining session %s, re-fetching", session_id)
            existing = self.find_participant(session_id, user_id)
            if existing is None:
                raise
            return existing

    # --- tickets ---

    def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        with self._transaction() as (db, _):
            row = db.get(schema.Ticket, ticket_id)
            return Ticket.model_validate(row, from_attributes=True) if row else None

    def list_tickets(self, session_id: str) -> List[Ticket]:
        with self._transaction() as (db, _):
            query = (
                select(schema.Ticket)
                .where(schema.Ticket.session_id == session_id)
                .order_by(schema.Ticket.created_at.asc())
            )
            return [Ticket.model_validate(r, from_attributes=True) for r in db.scalars(query)]

    def insert_ticket(self, session_id: str, ticket_number: str, title: str,
                      jira_link: Optional[str] = None) -> Ticket:
        with self._transaction() as (db, changes):
            row = schema.Ticket(session_id=session_id, ticket_number=ticket_number,
                                title=title, jira_link=jira_link)
            db.add(row)
            db.flush()
            ticket = Ticket.model_validate(row, from_attributes=True)
            changes.append(ChangeEvent(table="tickets", event="INSERT", record=_record(ticket)))
            return ticket

    def update_ticket(self, ticket_id: str, **values) -> Optional[Ticket]:
        return self._update(schema.Ticket, Ticket, "tickets", ticket_id, values)

    def delete_ticket(self, ticket_id: str) -> bool:
        """Delete a ticket and the votes it owns."""
        with self._transaction() as (db, changes):
            row = db.get(schema.Ticket, ticket_id)
            if row is None:
                return False
            old = Ticket.model_validate(row, from_attributes=True)
            db.execute(delete(schema.Vote).where(schema.Vote.ticket_id == ticket_id))
            db.delete(row)
            changes.append(ChangeEvent(table="tickets", event="DELETE", old_record=_record(old)))
            return True

    # --- votes ---

    def list_votes(self, ticket_ids: Optional[Iterable[str]] = None,
                   participant_id: Optional[str] = None) -> List[Vote]:
        with self._transaction() as (db, _):
            query = select(schema.Vote).order_by(schema.Vote.created_at.asc())
            if ticket_ids is not None:
                query = query.where(schema.Vote.ticket_id.in_(list(ticket_ids)))
            if participant_id is not None:
                query = query.where(schema.Vote.participant_id == participant_id)
            return [Vote.model_validate(r, from_attributes=True) for r in db.scalars(query)]

    def upsert_vote(self, ticket_id: str, participant_id: str, value: float) -> tuple[Vote, Ticket]:
        """Upsert on (ticket_id, participant_id) and refresh the ticket's cached stats.

        total_votes and median_value are rewritten in the same transaction,
        the way a database trigger would keep them.
        """
        with self._transaction() as (db, changes):
            previous = db.scalars(
                select(schema.Vote).where(
                    schema.Vote.ticket_id == ticket_id,
                    schema.Vote.participant_id == participant_id,
                )
            ).first()
            old = Vote.model_validate(previous, from_attributes=True) if previous else None

            now = _now()
            stmt = self._insert(schema.Vote).values(
                id=schema._new_id(), ticket_id=ticket_id, participant_id=participant_id,
                value=value, created_at=now, updated_at=now,
            )
            db.execute(
                stmt.on_conflict_do_update(
                    index_elements=["ticket_id", "participant_id"],
                    set_={"value": stmt.excluded.value, "updated_at": now},
                )
            )
            db.expire_all()
            row = db.scalars(
                select(schema.Vote).where(
                    schema.Vote.ticket_id == ticket_id,
                    schema.Vote.participant_id == participant_id,
                )
            ).one()
            vote = Vote.model_validate(row, from_attributes=True)

            values = list(db.scalars(select(schema.Vote.value).where(schema.Vote.ticket_id == ticket_id)))
            db.execute(
                update(schema.Ticket)
                .where(schema.Ticket.id == ticket_id)
                .values(total_votes=len(values), median_value=calculate_median(values), updated_at=now)
            )
            ticket_row = db.get(schema.Ticket, ticket_id)
            db.refresh(ticket_row)
            ticket = Ticket.model_validate(ticket_row, from_attributes=True)

            changes.append(ChangeEvent(
                table="votes", event="UPDATE" if old else "INSERT",
                record=_record(vote), old_record=_record(old) if old else None,
            ))
            changes.append(ChangeEvent(table="tickets", event="UPDATE", record=_record(ticket)))
            return vote, ticket

    # --- commun ---

    def _update(self, orm_model, entity_model, table: str, row_id: str, values: Dict):
        with self._transaction() as (db, changes):
            row = db.get(orm_model, row_id)
            if row is None:
                return None
            old = entity_model.model_validate(row, from_attributes=True)
            for key, value in values.items():
                setattr(row, key, value)
            db.flush()
            db.refresh(row)
            entity = entity_model.model_validate(row, from_attributes=True)
            changes.append(ChangeEvent(table=table, event="UPDATE",
                                       record=_record(entity), old_record=_record(old)))
            return entity
