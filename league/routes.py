from flask import Blueprint, request
import os

from . import activity_log
from . import challenges as challenge_service
from . import granular_storage as storage
from . import matches as match_service
from . import safe_auto_save
from . import scoring
from .granular_storage import ConflictError, DuplicateEntityError, EntityNotFoundError
from .validation import ValidationError


bp = Blueprint('main', __name__)

_SAVE_STATUS = {
    safe_auto_save.INVALID: 400,
    safe_auto_save.NOT_FOUND: 404,
    safe_auto_save.CONFLICT: 409,
    safe_auto_save.STORE_ERROR: 500,
}


@bp.errorhandler(ValidationError)
def _invalid(e):
    return {'error': str(e)}, 400


@bp.errorhandler(EntityNotFoundError)
def _missing(e):
    return {'error': str(e)}, 404


@bp.errorhandler(DuplicateEntityError)
@bp.errorhandler(ConflictError)
def _conflict(e):
    return {'error': str(e)}, 409


def _actor() -> str:
    """Acting user from the ``X-User`` header, else the configured auto-save user."""
    return request.headers.get('X-User') or safe_auto_save.default_user()


def _payload():
    data = request.get_json(silent=True)
    if data is None:
        raise ValidationError('Request body must be JSON')
    return data


def _int_arg(name):
    raw = request.args.get(name)
    if raw in (None, ''):
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValidationError(f'{name} must be an integer') from None


def _save_response(result):
    if result['success']:
        return result
    return result, _SAVE_STATUS.get(result.get('reason'), 400)


@bp.route('/health/db')
def health_db():
    """Database connectivity health check.

    Always returns HTTP 200 with a JSON body describing connection status.
    """
    url = os.environ.get('DATABASE_URL')
    if not url:
        return {'connected': False, 'status': 'no_database_url'}
    try:
        from .docstore_pg import _get_conn
        with _get_conn() as conn, conn.cursor() as cur:
            cur.execute('SELECT current_user, current_database(), version()')
            user, db, ver = cur.fetchone()
        return {
            'connected': True,
            'status': 'ok',
            'user': user,
            'database': db,
            'server_version': (ver or '').split('\n')[0],
        }
    except Exception as e:  # pragma: no cover - best-effort health output
        return {'connected': False, 'status': 'error', 'error': str(e)}


# ---------------------------------------------------------------------------
# Teams
# ---------------------------------------------------------------------------

@bp.route('/api/teams', methods=['GET'])
def list_teams():
    return {'teams': storage.get_all_teams()}


@bp.route('/api/teams', methods=['POST'])
def create_team():
    team = storage.create_team(_payload(), created_by=_actor())
    return {'team': team}, 201


@bp.route('/api/teams/<int:team_id>', methods=['GET'])
def get_team(team_id):
    team = storage.get_team(team_id)
    if team is None:
        return {'error': f'Team {team_id} not found'}, 404
    return {'team': team}


@bp.route('/api/teams/<int:team_id>', methods=['PATCH'])
def update_team(team_id):
    result = safe_auto_save.update_team(
        team_id, _payload(), updated_by=_actor(), expected_version=request.headers.get('If-Match')
    )
    return _save_response(result)


@bp.route('/api/teams/<int:team_id>', methods=['DELETE'])
def delete_team(team_id):
    storage.delete_team(team_id, deleted_by=_actor())
    return {'ok': True, 'deleted': team_id}


# ---------------------------------------------------------------------------
# Players
# ---------------------------------------------------------------------------

@bp.route('/api/players', methods=['GET'])
def list_players():
    players = storage.get_all_players()
    team_id = _int_arg('team_id')
    if team_id is not None:
        players = [p for p in players if p.get('team_id') == team_id]
    return {'players': players}


@bp.route('/api/players', methods=['POST'])
def create_player():
    player = storage.create_player(_payload(), created_by=_actor())
    return {'player': player}, 201


@bp.route('/api/players/<int:player_id>', methods=['GET'])
def get_player(player_id):
    player = storage.get_player(player_id)
    if player is None:
        return {'error': f'Player {player_id} not found'}, 404
    return {'player': player}


@bp.route('/api/players/<int:player_id>', methods=['PATCH'])
def update_player(player_id):
    result = safe_auto_save.update_player(
        player_id, _payload(), updated_by=_actor(), expected_version=request.headers.get('If-Match')
    )
    return _save_response(result)


@bp.route('/api/players/<int:player_id>', methods=['DELETE'])
def delete_player(player_id):
    storage.delete_player(player_id, deleted_by=_actor())
    return {'ok': True, 'deleted': player_id}


# ---------------------------------------------------------------------------
# Captains
# ---------------------------------------------------------------------------

@bp.route('/api/captains', methods=['GET'])
def list_captains():
    return {'captains': [storage.public_captain(c) for c in storage.get_all_captains()]}


@bp.route('/api/captains', methods=['POST'])
def create_captain():
    captain = storage.create_captain(_payload(), created_by=_actor())
    return {'captain': storage.public_captain(captain)}, 201


@bp.route('/api/captains/<int:captain_id>', methods=['GET'])
def get_captain(captain_id):
    captain = storage.get_captain(captain_id)
    if captain is None:
        return {'error': f'Captain {captain_id} not found'}, 404
    return {'captain': storage.public_captain(captain)}


@bp.route('/api/captains/<int:captain_id>', methods=['PATCH'])
def update_captain(captain_id):
    captain = storage.update_captain(
        captain_id, _payload(), updated_by=_actor(), expected_version=request.headers.get('If-Match')
    )
    return {'captain': storage.public_captain(captain)}


@bp.route('/api/captains/<int:captain_id>', methods=['DELETE'])
def delete_captain(captain_id):
    storage.delete_captain(captain_id, deleted_by=_actor())
    return {'ok': True, 'deleted': captain_id}


@bp.route('/api/captains/login', methods=['POST'])
def captain_login():
    payload = _payload()
    if not isinstance(payload, dict):
        raise ValidationError('Username and password are required')
    captain = storage.authenticate_captain(payload.get('username'), payload.get('password'))
    if captain is None:
        return {'error': 'Invalid username or password'}, 401
    return {'captain': captain}


# ---------------------------------------------------------------------------
# Challenges
# ---------------------------------------------------------------------------

@bp.route('/api/challenges', methods=['GET'])
def list_challenges():
    items = challenge_service.list_challenges(request.args.get('status') or None, _int_arg('team_id'))
    return {'challenges': items}


@bp.route('/api/challenges', methods=['POST'])
def create_challenge():
    challenge = challenge_service.create_challenge(_payload(), created_by=_actor())
    return {'challenge': challenge}, 201


@bp.route('/api/challenges/<challenge_id>', methods=['GET'])
def get_challenge(challenge_id):
    challenge = challenge_service.get_challenge(challenge_id)
    if challenge is None:
        return {'error': f'Challenge {challenge_id} not found'}, 404
    return {'challenge': challenge}


@bp.route('/api/challenges/<challenge_id>', methods=['PATCH'])
def update_challenge(challenge_id):
    challenge = challenge_service.update_challenge(challenge_id, _payload(), updated_by=_actor())
    return {'challenge': challenge}


@bp.route('/api/challenges/<challenge_id>', methods=['DELETE'])
def delete_challenge(challenge_id):
    challenge_service.delete_challenge(challenge_id, deleted_by=_actor())
    return {'ok': True, 'deleted': challenge_id}


@bp.route('/api/challenges/<challenge_id>/accept', methods=['POST'])
def accept_challenge(challenge_id):
    acceptance = _payload()
    if isinstance(acceptance, dict):
        acceptance.setdefault('accepted_by', _actor())
    return challenge_service.accept_challenge(challenge_id, acceptance)


@bp.route('/api/challenges/<challenge_id>/complete', methods=['POST'])
def complete_challenge(challenge_id):
    payload = request.get_json(silent=True) or {}
    challenge = challenge_service.complete_challenge(
        challenge_id, match_id=payload.get('match_id'), completed_by=_actor()
    )
    return {'challenge': challenge}


# ---------------------------------------------------------------------------
# Matches
# ---------------------------------------------------------------------------

@bp.route('/api/matches', methods=['GET'])
def list_matches():
    items = match_service.list_matches(request.args.get('status') or None, _int_arg('team_id'))
    return {'matches': items}


@bp.route('/api/matches', methods=['POST'])
def create_match():
    match = match_service.create_match(_payload(), created_by=_actor())
    return {'match': match}, 201


@bp.route('/api/matches/<match_id>', methods=['GET'])
def get_match(match_id):
    match = match_service.get_match(match_id)
    if match is None:
        return {'error': f'Match {match_id} not found'}, 404
    return {'match': match}


@bp.route('/api/matches/<match_id>', methods=['PATCH'])
def update_match(match_id):
    match = match_service.update_match(match_id, _payload(), updated_by=_actor())
    return {'match': match}


@bp.route('/api/matches/<match_id>', methods=['DELETE'])
def delete_match(match_id):
    match_service.delete_match(match_id, deleted_by=_actor())
    return {'ok': True, 'deleted': match_id}


@bp.route('/api/matches/<match_id>/complete', methods=['POST'])
def complete_match(match_id):
    match = match_service.complete_match(match_id, _payload(), completed_by=_actor())
    return {'match': match}


# ---------------------------------------------------------------------------
# Leaderboard and bonuses
# ---------------------------------------------------------------------------

@bp.route('/api/leaderboard', methods=['GET'])
def leaderboard():
    return {'leaderboard': scoring.get_leaderboard()}


@bp.route('/api/bonuses', methods=['GET'])
def list_bonuses():
    return {'bonuses': scoring.list_bonus_entries(_int_arg('team_id'))}


@bp.route('/api/bonuses', methods=['POST'])
def add_bonus():
    entry = scoring.add_bonus_entry(_payload(), added_by=_actor())
    return {'bonus': entry}, 201


@bp.route('/api/bonuses/<entry_id>', methods=['DELETE'])
def delete_bonus(entry_id):
    scoring.delete_bonus_entry(entry_id, deleted_by=_actor())
    return {'ok': True, 'deleted': entry_id}


# ---------------------------------------------------------------------------
# Activity, metadata and migration
# ---------------------------------------------------------------------------

@bp.route('/api/activity', methods=['GET'])
def activity():
    limit = _int_arg('limit') or 100
    logs = activity_log.get_activity_logs(limit=limit, category=request.args.get('filter') or 'all')
    return {'logs': [activity_log.format_log_entry(e) for e in logs]}


@bp.route('/api/metadata/<entity_type>', methods=['GET'])
def metadata(entity_type):
    storage.kind_for(entity_type)
    return {'entity_type': entity_type, 'count': storage.get_entity_count(entity_type)}


@bp.route('/api/migrate/<entity_type>', methods=['POST'])
def migrate(entity_type):
    kind = storage.kind_for(entity_type)
    payload = _payload()
    items = payload.get('items') if isinstance(payload, dict) else payload
    if kind is storage.TEAMS:
        result = storage.migrate_teams_to_granular(items, migrated_by=_actor())
    elif kind is storage.PLAYERS:
        result = storage.migrate_players_to_granular(items, migrated_by=_actor())
    else:
        raise ValidationError(f'Migration is not supported for {entity_type}')
    expected = len(items) - result['errors']
    result['verification'] = storage.verify_migration(entity_type, expected)
    return result
