from flask import Blueprint, current_app, jsonify, request
from flask_login import current_user, login_required
from werkzeug.exceptions import HTTPException

from songless import db
from songless.identity import resolve_actor
from songless.services.rooms import chat, engine
from songless.services.rooms.errors import RoomError, TrackProviderUnavailable
from songless.services.rooms.fanout import get_fanout
from songless.services.rooms.store import normalize_room_code

rooms = Blueprint('rooms', __name__)


@rooms.errorhandler(RoomError)
def handle_room_error(exc):
    db.session.rollback()
    if isinstance(exc, TrackProviderUnavailable):
        current_app.logger.warning(f"[rooms.error] path={request.path} code={exc.code} status={exc.status}")
    return jsonify(exc.to_dict()), exc.status


@rooms.errorhandler(Exception)
def handle_unexpected(exc):
    if isinstance(exc, HTTPException):
        return exc
    db.session.rollback()
    current_app.logger.exception(f"[rooms.failure] path={request.path}")
    return jsonify({'error': 'Server error'}), 500


def _body():
    return request.get_json(silent=True) or {}


def _save_avatar(actor, avatar_provided):
    if avatar_provided and current_user.avatar_key != actor.avatar_key:
        current_user.avatar_key = actor.avatar_key
        db.session.commit()


@rooms.route('', methods=['POST'])
@login_required
def create_room():
    data = _body()
    actor, avatar_provided = resolve_actor(data)
    room = engine.create(actor, data)
    _save_avatar(actor, avatar_provided)
    get_fanout().room_state(room, 'room_created', actor.id)
    return jsonify({'room': room}), 201


@rooms.route('/<string:code>/join', methods=['POST'])
@login_required
def join_room(code):
    actor, avatar_provided = resolve_actor(_body())
    room = engine.join(code, actor)
    _save_avatar(actor, avatar_provided)
    get_fanout().room_state(room, 'player_joined', actor.id)
    return jsonify({'room': room})


@rooms.route('/<string:code>/start', methods=['POST'])
@login_required
def start_round(code):
    expected = engine.parse_expected_state(_body())
    room, track = engine.start(code, current_user.player_id, expected)
    get_fanout().room_state(room, 'round_started', current_user.player_id, trackId=track.id)
    return jsonify({'room': room})


@rooms.route('/<string:code>/next', methods=['POST'])
@login_required
def next_round(code):
    expected = engine.parse_expected_state(_body())
    room, track = engine.next_round(code, current_user.player_id, expected)
    get_fanout().room_state(room, 'round_advanced', current_user.player_id, trackId=track.id)
    return jsonify({'room': room})


@rooms.route('/<string:code>/skip', methods=['POST'])
@login_required
def skip_hint(code):
    expected = engine.parse_expected_state(_body())
    room = engine.skip(code, current_user.player_id, expected)
    get_fanout().room_state(room, 'hint_skipped', current_user.player_id)
    return jsonify({'room': room})


@rooms.route('/<string:code>/guess', methods=['POST'])
@login_required
def submit_guess(code):
    outcome = engine.guess(code, current_user.player_id, _body())
    if outcome.changed:
        event = 'player_solved' if outcome.solved else 'player_guess_result'
        get_fanout().room_state(outcome.room, event, current_user.player_id)
    return jsonify({
        'solved': outcome.solved,
        'room': outcome.room,
        'guessResult': outcome.guess_result,
        'guessIndex': outcome.guess_index,
    })


@rooms.route('/<string:code>/chat', methods=['POST'])
@login_required
def send_chat(code):
    data = _body()
    expected_version = engine.parse_client_version(data.get('expectedVersion'))
    message, version = chat.send(code, current_user.player_id, data.get('message'), expected_version)
    get_fanout().room_chat(normalize_room_code(code), message, current_user.player_id, version)
    return jsonify({'message': message, 'version': version}), 201


@rooms.route('/<string:code>/chat', methods=['GET'])
@login_required
def list_chat(code):
    return jsonify({'chat': chat.history(code, current_user.player_id, request.args.get('limit'))})


@rooms.route('/<string:code>/leave', methods=['POST'])
@login_required
def leave_room(code):
    room = engine.leave(code, current_user.player_id)
    if room is None:
        get_fanout().room_closed(normalize_room_code(code))
    else:
        get_fanout().room_state(room, 'player_left', current_user.player_id)
    return jsonify({'room': room})


@rooms.route('/<string:code>/state', methods=['GET'])
@login_required
def room_state(code):
    return jsonify({'room': engine.load_state(code, current_user.player_id)})
