import re

from flask import current_app
from sqlalchemy import select

from songless import db
from songless.models import ChatMessage, Room
from . import store
from .engine import open_room
from .errors import InvalidRoomRequest, VersionConflict

CONTROL_CHARS = re.compile(r'[\x00-\x08\x0b-\x1f\x7f]')
_WHITESPACE = re.compile(r'\s+')


def sanitize_chat_message(value):
    if not isinstance(value, str):
        return ''
    return _WHITESPACE.sub(' ', CONTROL_CHARS.sub('', value)).strip()


def normalize_chat_limit(value):
    try:
        parsed = int(str(value or '').strip())
    except ValueError:
        parsed = 0
    if parsed <= 0:
        return store.setting('ROOM_CHAT_DEFAULT_LIMIT')
    return min(parsed, store.setting('ROOM_CHAT_MAX_LIMIT'))


def send(code, actor_id, raw_message, expected_version=None):
    """Append a message; returns (message dict, new room version).

    Only the version is guarded: chat does not care which round it is.
    Without an expected version the append always goes through.
    """
    room, _ = open_room(code, actor_id)
    message = sanitize_chat_message(raw_message)
    if not message:
        raise InvalidRoomRequest('Message is required.', 'ROOM_CHAT_INVALID')
    max_length = store.setting('ROOM_CHAT_MESSAGE_MAX_LENGTH')
    if len(message) > max_length:
        raise InvalidRoomRequest(f'Message must be {max_length} characters or fewer.', 'ROOM_CHAT_INVALID')

    sender = room.player(actor_id)
    if not store.guarded_update(room.code, {}, expected_version=expected_version):
        db.session.rollback()
        raise VersionConflict('Room state changed. Sync before sending chat.', room=store.snapshot(room.code))

    entry = ChatMessage(
        room_code=room.code,
        sender_id=actor_id,
        sender_name=sender.name,
        sender_avatar_key=sender.avatar_key,
        message=message,
    )
    db.session.add(entry)
    db.session.flush()
    version = db.session.scalar(select(Room.version).where(Room.code == room.code))
    payload = entry.to_dict()
    db.session.commit()
    current_app.logger.info(f"[rooms.chat] room={room.code} player={actor_id} version={version}")
    return payload, int(version)


def history(code, actor_id, limit=None):
    room, _ = open_room(code, actor_id)
    return store.recent_chat(room.code, normalize_chat_limit(limit))
