from flask import current_app, request
from flask_login import current_user
from flask_socketio import emit, join_room, leave_room

from songless import db, socketio
from songless.services.rooms import engine
from songless.services.rooms.errors import RoomError
from songless.services.rooms.fanout import NAMESPACE, get_fanout, room_channel
from songless.services.rooms.store import normalize_room_code, now_ms


def _presence():
    return current_app.extensions['room_presence']


def _client_version(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _send_sync(room, reason):
    emit('room:sync', {'room': room, 'version': room['version'], 'reason': reason, 'ts': now_ms()})


def _release(sid):
    """Drop this socket's presence and tell the room who is still online."""
    change = _presence().disconnect(sid)
    if change is not None:
        leave_room(room_channel(change.code))
        get_fanout().presence_changed(change)
    return change


def handle_connect(auth=None):
    if not current_user.is_authenticated:
        return False
    current_app.logger.info(f"[realtime.connect] player={current_user.player_id} sid={request.sid}")
    emit('connected', {'playerId': current_user.player_id})


def handle_disconnect(reason=None):
    change = _release(request.sid)
    current_app.logger.info(
        f"[realtime.disconnect] sid={request.sid} room={change.code if change else None} reason={reason}"
    )


def handle_room_join(data):
    data = data if isinstance(data, dict) else {}
    code = normalize_room_code(data.get('code'))
    if not code:
        emit('room:error', {'code': 'ROOM_CODE_REQUIRED', 'error': 'Room code is required.'})
        return

    player_id = current_user.player_id
    previous = _presence().room_of(request.sid)
    if previous and previous != code:
        _release(request.sid)

    try:
        room = engine.load_state(code, player_id)
    except RoomError as exc:
        db.session.rollback()
        emit('room:error', {'code': exc.code, 'error': exc.message})
        return
    except Exception:
        db.session.rollback()
        current_app.logger.exception(f"[realtime.room_join] room={code} player={player_id}")
        emit('room:error', {'code': 'ROOM_JOIN_FAILED', 'error': 'Failed to join room channel.'})
        return

    join_room(room_channel(code))
    get_fanout().presence_changed(_presence().connect(request.sid, code, player_id))

    if _client_version(data.get('lastVersion')) != room['version']:
        _send_sync(room, 'join')
        return
    emit('room:joined', {'code': code, 'version': room['version'], 'ts': now_ms()})


def handle_request_sync(data):
    data = data if isinstance(data, dict) else {}
    code = normalize_room_code(data.get('code') or _presence().room_of(request.sid))
    if not code:
        return

    try:
        room = engine.load_state(code, current_user.player_id)
    except RoomError as exc:
        db.session.rollback()
        emit('room:error', {'code': exc.code, 'error': exc.message})
        return
    except Exception:
        db.session.rollback()
        current_app.logger.exception(f"[realtime.room_sync] room={code} player={current_user.player_id}")
        emit('room:error', {'code': 'ROOM_SYNC_FAILED', 'error': 'Failed to sync room.'})
        return

    if data.get('force') is True:
        _send_sync(room, 'forced')
    elif _client_version(data.get('lastVersion')) != room['version']:
        _send_sync(room, 'version_mismatch')
    else:
        emit('room:sync-ok', {'code': code, 'version': room['version'], 'ts': now_ms()})


def handle_room_leave(data=None):
    _release(request.sid)


def register_socketio_handlers() -> None:
    """Register Socket.IO event handlers on the '/ws' namespace."""
    socketio.on_event('connect', handle_connect, namespace=NAMESPACE)
    socketio.on_event('disconnect', handle_disconnect, namespace=NAMESPACE)
    socketio.on_event('room:join', handle_room_join, namespace=NAMESPACE)
    socketio.on_event('room:request-sync', handle_request_sync, namespace=NAMESPACE)
    socketio.on_event('room:leave', handle_room_leave, namespace=NAMESPACE)
