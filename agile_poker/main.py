from typing import Optional
from fastapi import Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from .config import get_settings
from .errors import NotFound, PokerError
from .models import AddTicketIn, ClientContext, CreateSessionIn, FinalValueIn, SignInIn, VoteIn
from .services import review_service, session_service, ticket_service, user_service, vote_service
from .storage import DataClient

description = """
API **Agile Poker** 🃏
Estimation en story points pour les équipes agiles.

Fonctionnalités :
- S'identifier avec un email de l'entreprise
- Créer / rejoindre / clôturer une session
- Gérer les tickets (créateur)
- Voter sur les tickets
- Revoir les votes et fixer la valeur finale (créateur)
"""

app = FastAPI(
    title="Agile Poker",
    description=description,
    version="0.3.0",
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

_client: Optional[DataClient] = None


def get_data_client() -> DataClient:
    global _client
    if _client is None:
        _client = DataClient.from_url(get_settings().database_url)
    return _client


def get_context(
    x_user_id: Optional[str] = Header(default=None),
    client: DataClient = Depends(get_data_client),
) -> ClientContext:
    """Contexte explicite du client : l'identité vient de l'en-tête X-User-Id."""
    if not x_user_id:
        return ClientContext()
    user = client.get_user(x_user_id)
    if not user:
        return ClientContext()
    return user_service.context_for(user)


@app.exception_handler(PokerError)
def poker_error_handler(request: Request, exc: PokerError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.get("/", summary="Accueil", tags=["Système"])
def root():
    return {"status": "ok", "message": "Welcome to Agile Poker"}

@app.get("/health", summary="Vérifier la santé du serveur", tags=["Système"])
def health():
    return {"healthy": True}

# --- Identité ---
@app.post("/auth", summary="S'identifier", tags=["Identité"])
def api_sign_in(payload: SignInIn, client: DataClient = Depends(get_data_client)):
    user = user_service.sign_in(client, payload, get_settings().email_domain)
    return {"userId": user.id, "email": user.email, "name": user.name}

# --- Sessions ---
@app.get("/sessions", summary="Sessions actives", tags=["Session"])
def api_list_sessions(client: DataClient = Depends(get_data_client)):
    return [{"id": s.id, "name": s.name} for s in session_service.list_active_sessions(client)]

@app.post("/sessions", summary="Créer une session", tags=["Session"], status_code=201)
def api_create_session(payload: CreateSessionIn, ctx: ClientContext = Depends(get_context),
                       client: DataClient = Depends(get_data_client)):
    sess = session_service.create_session(client, ctx, payload.name)
    return {"sessionId": sess.id, "name": sess.name, "participantId": ctx.participant_for(sess.id)}

@app.post("/sessions/{session_id}/join", summary="Rejoindre une session", tags=["Session"])
def api_join_session(session_id: str, ctx: ClientContext = Depends(get_context),
                     client: DataClient = Depends(get_data_client)):
    result = session_service.JoinFlow(client).join(ctx, session_id)
    return {"sessionId": session_id, "participantId": result.participant_id,
            "reused": result.reused, "redirect": result.redirect_to}

@app.post("/sessions/{session_id}/end", summary="Clôturer une session", tags=["Session"])
def api_end_session(session_id: str, ctx: ClientContext = Depends(get_context),
                    client: DataClient = Depends(get_data_client)):
    sess = session_service.end_session(client, ctx, session_id)
    return {"sessionId": sess.id, "isActive": sess.is_active}

@app.get("/sessions/{session_id}/participants", summary="Participants", tags=["Session"])
def api_participants(session_id: str, client: DataClient = Depends(get_data_client)):
    session_service.get_session_or_404(client, session_id)
    return [{"id": p.id, "name": p.user_name, "joinedAt": p.joined_at}
            for p in client.list_participants(session_id=session_id)]

# --- Tickets ---
@app.get("/sessions/{session_id}/tickets", summary="Tickets de la session", tags=["Ticket"])
def api_list_tickets(session_id: str, ctx: ClientContext = Depends(get_context),
                     client: DataClient = Depends(get_data_client)):
    sess = session_service.get_session_or_404(client, session_id)
    if session_service.is_creator(sess, ctx):
        return ticket_service.list_tickets(client, session_id)
    return ticket_service.list_voter_tickets(client, session_id)

@app.post("/sessions/{session_id}/tickets", summary="Ajouter un ticket", tags=["Ticket"])
def api_add_ticket(session_id: str, payload: AddTicketIn, ctx: ClientContext = Depends(get_context),
                   client: DataClient = Depends(get_data_client)):
    ticket = ticket_service.add_ticket(client, ctx, session_id, payload)
    return {"created": ticket is not None, "tickets": ticket_service.list_tickets(client, session_id)}

@app.put("/tickets/{ticket_id}/final-value", summary="Fixer la valeur finale", tags=["Ticket"])
def api_final_value(ticket_id: str, payload: FinalValueIn, ctx: ClientContext = Depends(get_context),
                    client: DataClient = Depends(get_data_client)):
    return ticket_service.update_final_value(client, ctx, ticket_id, payload.value)

@app.delete("/tickets/{ticket_id}", summary="Supprimer un ticket", tags=["Ticket"])
def api_delete_ticket(ticket_id: str, ctx: ClientContext = Depends(get_context),
                      client: DataClient = Depends(get_data_client)):
    ticket = ticket_service.delete_ticket(client, ctx, ticket_id)
    return {"deleted": ticket.id, "tickets": ticket_service.list_tickets(client, ticket.session_id)}

# --- Votes ---
@app.put("/tickets/{ticket_id}/vote", summary="Voter", tags=["Vote"])
def api_vote(ticket_id: str, payload: VoteIn, ctx: ClientContext = Depends(get_context),
             client: DataClient = Depends(get_data_client)):
    outcome = vote_service.submit_vote(client, ctx, ticket_id, payload.participant_id, payload.value)
    return {"recorded": outcome.recorded,
            "value": outcome.vote.value if outcome.vote else None,
            "totalVotes": outcome.ticket.total_votes if outcome.ticket else None}

@app.get("/participants/{participant_id}/votes", summary="Mes votes", tags=["Vote"])
def api_my_votes(participant_id: str, ctx: ClientContext = Depends(get_context),
                 client: DataClient = Depends(get_data_client)):
    participant = client.get_participant(participant_id)
    if not participant or participant.user_id != ctx.user_id:
        raise NotFound("Participant not found")
    return vote_service.my_votes(client, participant_id)

# --- Revue ---
@app.get("/sessions/{session_id}/review", summary="Revue des votes", tags=["Revue"])
def api_review(session_id: str, ctx: ClientContext = Depends(get_context),
               client: DataClient = Depends(get_data_client)):
    return review_service.build_review(client, ctx, session_id)
