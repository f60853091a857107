"""
Flask web application for bracket wagering.
"""
import os
import logging
from functools import wraps
from flask import Flask, request, jsonify, session

from bracketbet.errors import BracketError
from bracketbet.service import BracketService
from bracketbet.storage import YamlStorage

app = Flask(__name__)

BASE_DIR = os.path.dirname(os.path.dirname(__file__))
DATA_DIR = os.environ.get('BRACKETBET_DATA_DIR', os.path.join(BASE_DIR, 'data'))
LOCK_TIMEOUT = float(os.environ.get('BRACKETBET_LOCK_TIMEOUT', '10'))
LOG_LEVEL = os.environ.get('BRACKETBET_LOG_LEVEL', 'INFO').upper()

logging.getLogger('bracketbet').setLevel(LOG_LEVEL)


def _get_or_create_secret_key() -> bytes:
    """Get SECRET_KEY from env, or generate and persist to file."""
    env_key = os.environ.get('SECRET_KEY')
    if env_key:
        return env_key.encode() if isinstance(env_key, str) else env_key
    key_file = os.path.join(DATA_DIR, '.secret_key')
    if os.path.exists(key_file):
        with open(key_file, 'rb') as f:
            return f.read()
    key = os.urandom(24)
    os.makedirs(os.path.dirname(key_file), exist_ok=True)
    with open(key_file, 'wb') as f:
        f.write(key)
    return key


app.secret_key = _get_or_create_secret_key()

# One service per data directory so tournament locks are shared across requests
_services = {}


def get_service() -> BracketService:
    service = _services.get(DATA_DIR)
    if service is None:
        service = BracketService(YamlStorage(DATA_DIR, lock_timeout=LOCK_TIMEOUT))
        _services[DATA_DIR] = service
    return service


def login_required(f):
    """Reject requests without a logged-in user."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Login required'}), 401
        return f(*args, **kwargs)
    return decorated_function


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _public_user(user: dict) -> dict:
    return {k: v for k, v in user.items() if k != 'password_hash'}


def _parse_amount(value):
    """Convert integer strings from forms; anything else is left for validation."""
    if isinstance(value, str) and value.strip().lstrip('-').isdigit():
        return int(value.strip())
    return value


@app.errorhandler(BracketError)
def handle_bracket_error(error):
    """Return domain errors as JSON with their status code."""
    app.logger.warning(f'{type(error).__name__}: {error.message}')
    return jsonify({'error': error.message, 'type': type(error).__name__}), error.status_code


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------

@app.route('/api/register', methods=['POST'])
def api_register():
    data = _json_body()
    user = get_service().register_user(data.get('username', ''), data.get('password', ''))
    session['user_id'] = user['id']
    return jsonify(_public_user(user)), 201


@app.route('/api/login', methods=['POST'])
def api_login():
    data = _json_body()
    user = get_service().authenticate_user(data.get('username', ''), data.get('password', ''))
    session['user_id'] = user['id']
    return jsonify(_public_user(user))


@app.route('/api/logout', methods=['POST'])
def api_logout():
    session.pop('user_id', None)
    return jsonify({'success': True})


@app.route('/api/user')
@login_required
def api_user():
    return jsonify(_public_user(get_service().get_user(session['user_id'])))


@app.route('/api/user/daily-bonus', methods=['POST'])
@login_required
def api_daily_bonus():
    user = get_service().claim_daily_bonus(session['user_id'])
    return jsonify(_public_user(user))


# ---------------------------------------------------------------------------
# Tournaments
# ---------------------------------------------------------------------------

@app.route('/api/brackets', methods=['POST'])
@login_required
def api_create_bracket():
    """Create a tournament from a participant list."""
    data = _json_body()

    participants = data.get('participants')
    if participants is None and isinstance(data.get('players'), str):
        participants = [p.strip() for p in data['players'].split(',') if p.strip()]

    visibility = data.get('visibility')
    if visibility is None:
        visibility = 'public' if data.get('is_public', True) else 'private'

    credit_model = data.get('credit_model')
    if credit_model is None:
        credit_model = 'independent' if data.get('use_independent_credits') else 'shared'

    tournament = get_service().create_tournament(
        session['user_id'],
        data.get('name', ''),
        participants or [],
        visibility=visibility,
        access_code=data.get('access_code'),
        credit_model=credit_model,
        starting_credits=data.get('starting_credits'),
        admin_may_bet=bool(data.get('admin_may_bet', False)),
    )
    return jsonify(tournament), 201


@app.route('/api/brackets')
@login_required
def api_list_brackets():
    return jsonify(get_service().list_tournaments(session['user_id']))


@app.route('/api/brackets/<int:tournament_id>')
@login_required
def api_get_bracket(tournament_id):
    return jsonify(get_service().get_tournament(tournament_id, session['user_id']))


@app.route('/api/brackets/<int:tournament_id>', methods=['PATCH'])
@login_required
def api_update_bracket(tournament_id):
    """Creator-only partial update: status, phase, result or structure."""
    updated = get_service().update_tournament(tournament_id, session['user_id'], _json_body())
    return jsonify(updated)


@app.route('/api/brackets/<int:tournament_id>/join', methods=['POST'])
@login_required
def api_join_bracket(tournament_id):
    data = _json_body()
    tournament = get_service().join_tournament(tournament_id, session['user_id'],
                                               data.get('access_code'))
    return jsonify(tournament)


@app.route('/api/brackets/<int:tournament_id>/matches/<int:match_number>/winner', methods=['POST'])
@login_required
def api_record_winner(tournament_id, match_number):
    data = _json_body()
    tournament = get_service().apply_match_result(tournament_id, session['user_id'],
                                                  match_number, data.get('winner'))
    return jsonify(tournament)


@app.route('/api/brackets/<int:tournament_id>/results')
@login_required
def api_bracket_results(tournament_id):
    return jsonify(get_service().results(tournament_id))


# ---------------------------------------------------------------------------
# Bets
# ---------------------------------------------------------------------------

@app.route('/api/brackets/<int:tournament_id>/bets', methods=['POST'])
@login_required
def api_place_bet(tournament_id):
    data = _json_body()
    bet = get_service().place_bet(
        tournament_id,
        session['user_id'],
        data.get('selected_winner'),
        _parse_amount(data.get('amount')),
        match_number=data.get('match_number'),
        round_index=data.get('round'),
    )
    return jsonify(bet), 201


@app.route('/api/brackets/<int:tournament_id>/bets')
@login_required
def api_list_bets(tournament_id):
    return jsonify(get_service().list_bets(tournament_id))


if __name__ == '__main__':
    logging.basicConfig(level=LOG_LEVEL)
    app.run(debug=True, port=5000)
