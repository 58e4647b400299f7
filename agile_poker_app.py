import logging
from typing import Optional

from flask import Flask, flash, redirect, render_template, request, url_for
from flask import session as web_session
from flask_socketio import SocketIO, emit, join_room, leave_room
from sqlalchemy.exc import SQLAlchemyError

from agile_poker.config import get_settings
from agile_poker.errors import (
    AuthenticationRequired,
    Conflict,
    Forbidden,
    NotFound,
    PokerError,
    ValidationError,
)
from agile_poker.logging_setup import configure_logging
from agile_poker.models import (
    AddTicketIn,
    ChangeEvent,
    ClientContext,
    Participant,
    SignInIn,
    Ticket,
    VoterTicket,
)
from agile_poker.services import review_service, session_service, ticket_service, user_service, vote_service
from agile_poker.stats import format_points
from agile_poker.storage import DataClient

settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger("agile_poker.web")

app = Flask(__name__)
app.config['SECRET_KEY'] = settings.secret_key
app.jinja_env.filters['points'] = format_points
socketio = SocketIO(app, cors_allowed_origins="*", async_mode="threading")

# libellés des actions pour les alertes "Failed to …"
ACTIONS = {
    'sign_in': "authenticate",
    'create_session': "create session",
    'join_session': "join session",
    'end_session': "end session",
    'add_ticket': "add ticket",
    'update_final_value': "update final value",
    'delete_ticket': "delete ticket",
}

# --- ACCÈS AUX DONNÉES & TEMPS RÉEL ---

_client: Optional[DataClient] = None
_subscriptions = []


def bind_client(client: DataClient) -> DataClient:
    """Attach a data client and forward its change feed to Socket.IO rooms."""
    global _client
    for sub in _subscriptions:
        sub.unsubscribe()
    _client = client
    _subscriptions[:] = [
        client.realtime.subscribe('tickets', forward_ticket_change),
        client.realtime.subscribe('participants', forward_participant_change),
    ]
    return client


def get_client() -> DataClient:
    if _client is None:
        bind_client(DataClient.from_url(settings.database_url))
    return _client


def voter_room(session_id):
    return f"{session_id}:voter"


def admin_room(session_id):
    return f"{session_id}:admin"


def forward_ticket_change(change: ChangeEvent):
    ticket = Ticket.model_validate(change.record or change.old_record)
    socketio.emit('ticket_change',
                  {'event': change.event, 'ticket': ticket.model_dump(mode='json')},
                  to=admin_room(ticket.session_id))
    socketio.emit('ticket_change',
                  {'event': change.event, 'ticket': VoterTicket.from_ticket(ticket).model_dump(mode='json')},
                  to=voter_room(ticket.session_id))


def forward_participant_change(change: ChangeEvent):
    participant = Participant.model_validate(change.record or change.old_record)
    socketio.emit('participant_change',
                  {'event': change.event, 'participant': participant.model_dump(mode='json')},
                  to=admin_room(participant.session_id))


# --- CONTEXTE CLIENT (cookie de session signé) ---

def load_context() -> ClientContext:
    return ClientContext(**web_session.get('ctx', {}))


def save_context(ctx: ClientContext):
    # le cookie ne garde que l'identité ; le participant se relit en base
    web_session['ctx'] = ctx.model_dump(exclude={'participants'})


def current_participant_id(client: DataClient, ctx: ClientContext, session_id) -> Optional[str]:
    if not ctx.is_identified or not session_id:
        return None
    participant = client.find_participant(session_id, ctx.user_id)
    return participant.id if participant else None


@app.context_processor
def inject_identity():
    ctx = load_context()
    return {'current_user_name': ctx.name}


# --- ERREURS ---

@app.errorhandler(AuthenticationRequired)
def handle_auth_required(exc):
    return redirect(url_for('sign_in'))


@app.errorhandler(NotFound)
def handle_not_found(exc):
    return redirect(url_for('home', error=exc.message))


@app.errorhandler(Forbidden)
def handle_forbidden(exc):
    session_id = (request.view_args or {}).get('session_id')
    if session_id:
        return redirect(url_for('vote_page', session_id=session_id))
    return redirect(url_for('home', error=exc.message))


@app.errorhandler(PokerError)
def handle_poker_error(exc):
    flash(exc.message, 'error')
    return redirect(request.referrer or url_for('home'))


@app.errorhandler(SQLAlchemyError)
def handle_backend_error(exc):
    action = ACTIONS.get(request.endpoint, "complete the request")
    logger.exception("Backend error during %s", request.endpoint)
    return redirect(url_for('home', error=f"Failed to {action}"))


# --- ROUTES ---

@app.route('/', methods=['GET'])
def home():
    ctx = load_context()
    if not ctx.is_identified:
        return redirect(url_for('sign_in'))
    try:
        sessions = session_service.list_active_sessions(get_client())
    except SQLAlchemyError:
        logger.exception("Error loading sessions")
        sessions = []
    return render_template('index.html', sessions=sessions, error=request.args.get('error'))


@app.route('/auth', methods=['GET', 'POST'])
def sign_in():
    error = None
    form = {'email': '', 'name': ''}
    if request.method == 'POST':
        form = {'email': request.form.get('email', ''), 'name': request.form.get('name', '')}
        try:
            user = user_service.sign_in(get_client(), SignInIn(**form), settings.email_domain)
        except ValidationError as exc:
            error = exc.message
        else:
            # on repart d'un contexte neuf pour ce compte
            save_context(user_service.context_for(user))
            return redirect(url_for('home'))
    return render_template('auth.html', error=error, form=form, email_domain=settings.email_domain)


@app.route('/logout', methods=['GET', 'POST'])
def sign_out():
    web_session.clear()
    return redirect(url_for('sign_in'))


@app.route('/sessions', methods=['POST'])
def create_session():
    ctx = load_context()
    try:
        sess = session_service.create_session(get_client(), ctx, request.form.get('name', ''))
    except ValidationError as exc:
        return redirect(url_for('home', error=exc.message))
    return redirect(url_for('vote_page', session_id=sess.id))


@app.route('/session/<session_id>/join', methods=['GET'])
def join_session(session_id):
    ctx = load_context()
    try:
        result = session_service.JoinFlow(get_client()).join(ctx, session_id)
    except Conflict:
        # un autre onglet est en train de rejoindre : on le laisse finir
        return redirect(url_for('vote_page', session_id=session_id))
    return redirect(result.redirect_to)


@app.route('/session/<session_id>', methods=['GET'])
def session_lobby(session_id):
    return redirect(url_for('join_session', session_id=session_id))


@app.route('/session/<session_id>/vote', methods=['GET'])
def vote_page(session_id):
    ctx = load_context()
    session_service.require_identity(ctx)
    client = get_client()
    participant_id = current_participant_id(client, ctx, session_id)
    if not participant_id:
        return redirect(url_for('join_session', session_id=session_id))

    sess = session_service.get_session_or_404(client, session_id)
    tickets = ticket_service.list_voter_tickets(client, session_id)
    return render_template(
        'vote.html',
        poker_session=sess,
        is_creator=session_service.is_creator(sess, ctx),
        tickets=[t.model_dump(mode='json') for t in tickets],
        my_votes=vote_service.my_votes(client, participant_id),
        vote_options=vote_service.vote_options(),
        delay_ms=settings.auto_advance_delay_ms,
    )


@app.route('/session/<session_id>/admin', methods=['GET'])
def admin_page(session_id):
    ctx = load_context()
    client = get_client()
    sess = session_service.require_creator(client, ctx, session_id)
    return render_template(
        'admin.html',
        poker_session=sess,
        tickets=[t.model_dump(mode='json') for t in client.list_tickets(session_id)],
        participants=[p.model_dump(mode='json') for p in client.list_participants(session_id=session_id)],
    )


@app.route('/session/<session_id>/tickets', methods=['POST'])
def add_ticket(session_id):
    payload = AddTicketIn(
        ticket_number=request.form.get('ticket_number', ''),
        title=request.form.get('title', ''),
        jira_link=request.form.get('jira_link', ''),
    )
    ticket_service.add_ticket(get_client(), load_context(), session_id, payload)
    return redirect(url_for('admin_page', session_id=session_id))


def _back_to(view, session_id):
    if view == 'review':
        return redirect(url_for('review_page', session_id=session_id))
    return redirect(url_for('admin_page', session_id=session_id))


@app.route('/tickets/<ticket_id>/final', methods=['POST'])
def update_final_value(ticket_id):
    ticket = ticket_service.update_final_value(
        get_client(), load_context(), ticket_id, request.form.get('final_value'))
    return _back_to(request.form.get('next'), ticket.session_id)


@app.route('/tickets/<ticket_id>/delete', methods=['POST'])
def delete_ticket(ticket_id):
    ticket = ticket_service.delete_ticket(get_client(), load_context(), ticket_id)
    return _back_to(request.form.get('next'), ticket.session_id)


@app.route('/session/<session_id>/review', methods=['GET'])
def review_page(session_id):
    review = review_service.build_review(get_client(), load_context(), session_id)
    return render_template('review.html', review=review, poker_session=review.session)


@app.route('/session/<session_id>/end', methods=['POST'])
def end_session(session_id):
    session_service.end_session(get_client(), load_context(), session_id)
    flash("Session ended successfully", 'info')
    return redirect(url_for('home'))


# --- SOCKET.IO EVENTS ---

@socketio.on('connect')
def handle_connect():
    logger.debug("Client connected: %s", request.sid)


@socketio.on('disconnect')
def handle_disconnect():
    # les rooms sont quittées automatiquement
    logger.debug("Client disconnected: %s", request.sid)


@socketio.on('watch_session')
def handle_watch_session(data):
    """Abonne la vue courante au flux de changements de sa session."""
    session_id = (data or {}).get('sessionId')
    view = (data or {}).get('view', 'vote')
    ctx = load_context()
    try:
        session_service.require_identity(ctx)
    except AuthenticationRequired as exc:
        emit('error', {'message': exc.message})
        return
    client = get_client()

    sess = client.get_session(session_id) if session_id else None
    if not sess:
        emit('error', {'message': 'Session not found.'})
        return

    if view == 'admin':
        if not session_service.is_creator(sess, ctx):
            emit('error', {'message': 'Only the session creator can watch this view.'})
            return
        join_room(admin_room(session_id))
        emit('tickets', [t.model_dump(mode='json') for t in client.list_tickets(session_id)])
        emit('participants', [p.model_dump(mode='json')
                              for p in client.list_participants(session_id=session_id)])
    else:
        join_room(voter_room(session_id))
        emit('tickets', [t.model_dump(mode='json')
                         for t in ticket_service.list_voter_tickets(client, session_id)])


@socketio.on('unwatch_session')
def handle_unwatch_session(data):
    session_id = (data or {}).get('sessionId')
    leave_room(voter_room(session_id))
    leave_room(admin_room(session_id))


@socketio.on('submit_vote')
def handle_submit_vote(data):
    data = data or {}
    session_id = data.get('sessionId')
    ticket_id = data.get('ticketId')
    ctx = load_context()
    client = get_client()
    participant_id = current_participant_id(client, ctx, session_id)
    if not participant_id:
        emit('error', {'message': 'Join the session before voting.'})
        return

    try:
        outcome = vote_service.submit_vote(client, ctx, ticket_id, participant_id, data.get('value'))
    except PokerError as exc:
        emit('error', {'message': exc.message})
        return
    except SQLAlchemyError:
        logger.exception("Error submitting vote")
        emit('error', {'message': 'Failed to submit vote'})
        return

    if not outcome.recorded:
        emit('vote_recorded', {'ticketId': ticket_id, 'recorded': False})
        return

    votes = vote_service.my_votes(client, participant_id)
    ticket_ids = [t.id for t in client.list_tickets(session_id)]
    current = ticket_ids.index(ticket_id) if ticket_id in ticket_ids else len(ticket_ids) - 1
    emit('vote_recorded', {
        'ticketId': ticket_id,
        'recorded': True,
        'value': outcome.vote.value,
        'advanceTo': vote_service.next_ticket_index(ticket_ids, votes, current),
        'delayMs': settings.auto_advance_delay_ms,
    })


# --- MAIN ---

if __name__ == '__main__':
    socketio.run(app, host=settings.host, port=settings.port, debug=settings.debug,
                 use_reloader=False, allow_unsafe_werkzeug=True)
