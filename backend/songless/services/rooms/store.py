"""Room store: the durable record of rooms, their players and chat.

Reads always go to the database (the session is flushed and expired
first) so no caller works from a copy that may have drifted. Guarded
writes are single conditional UPDATE statements whose affected-row count
decides whether the caller's expectation still held.
"""

import json
import re
import time

from flask import current_app
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError

from songless import db
from songless.models import ChatMessage, Room, RoomPlayer, generate_room_code
from .errors import RoomForbidden, RoomNotFound, VersionConflict
from .guess import ROUND_RESULTS

_CODE_CHARS = re.compile(r'[^A-Z0-9]')
MEMBERSHIP_RETRIES = 3


def now_ms():
    return int(time.time() * 1000)


def setting(key):
    return current_app.config[key]


def normalize_room_code(value):
    return _CODE_CHARS.sub('', str(value or '').upper())[:6]


def _fresh():
    db.session.flush()
    db.session.expire_all()


def find_room(code):
    _fresh()
    return db.session.get(Room, normalize_room_code(code))


def get_room(code):
    room = find_room(code)
    if room is None:
        raise RoomNotFound()
    return room


def get_member_room(code, player_id):
    """Load a room and require the actor to be one of its players."""
    room = get_room(code)
    if room.player(player_id) is None:
        raise RoomForbidden()
    return room


def round_ends_at_ms(room):
    if room.round_started_at_ms is None:
        return None
    return room.round_started_at_ms + setting('ROUND_DURATION_MS')


def is_round_expired(room, at_ms=None):
    if room is None or room.status != 'active':
        return False
    ends_at = round_ends_at_ms(room)
    if ends_at is None:
        return False
    return (now_ms() if at_ms is None else at_ms) >= ends_at


def parse_guess_results(raw):
    """Decode a stored results list, dropping unknown entries and capping it."""
    try:
        values = json.loads(raw or '[]')
    except ValueError:
        values = []
    if not isinstance(values, list):
        return []
    results = [str(v or '').lower() for v in values]
    return [r for r in results if r in ROUND_RESULTS][:setting('ROUND_MAX_ATTEMPTS')]


def serialize_player(player, round_started_at_ms):
    round_time_ms = None
    if round_started_at_ms is not None and player.solved_at_ms is not None:
        round_time_ms = max(player.solved_at_ms - round_started_at_ms, 0)
    return {
        'id': player.player_id,
        'name': player.name,
        'avatarKey': player.avatar_key or None,
        'score': player.score,
        'solved': bool(player.solved),
        'guessResults': parse_guess_results(player.guess_results),
        'solvedAtMs': player.solved_at_ms,
        'roundTimeMs': round_time_ms,
    }


def recent_chat(code, limit=None):
    """Newest `limit` messages of a room, returned oldest first."""
    limit = limit or setting('ROOM_CHAT_DEFAULT_LIMIT')
    rows = (
        ChatMessage.query.filter_by(room_code=code)
        .order_by(ChatMessage.id.desc())
        .limit(limit)
        .all()
    )
    return [row.to_dict() for row in reversed(rows)]


def serialize_room(room):
    started_at = room.round_started_at_ms
    return {
        'code': room.code,
        'hostId': room.host_id,
        'players': {p.player_id: serialize_player(p, started_at) for p in room.players},
        'status': room.status,
        'round': room.round,
        'version': int(room.version or 0),
        'hintIndex': room.hint_index,
        'settings': room.settings_dict,
        'createdAt': room.created_at.isoformat() if room.created_at else None,
        'currentTrackId': room.current_track_id,
        'currentTrack': room.track_dict,
        'roundStartedAt': started_at,
        'roundEndsAt': round_ends_at_ms(room),
        'roundMaxAttempts': setting('ROUND_MAX_ATTEMPTS'),
        'pollIntervalMs': setting('POLL_INTERVAL_MS'),
        'chat': recent_chat(room.code),
    }


def snapshot(code):
    """Authoritative snapshot straight from the store, or None if deleted."""
    room = find_room(code)
    return serialize_room(room) if room is not None else None


def create_room(actor, settings):
    settings_json = json.dumps({
        'mode': settings.get('mode'),
        'difficulty': settings.get('difficulty'),
        'genre': settings.get('genre'),
        'decade': settings.get('decade'),
    })
    for _ in range(setting('ROOM_CODE_ATTEMPTS')):
        code = generate_room_code()
        if db.session.get(Room, code) is not None:
            continue
        room = Room(code=code, host_id=actor.id, status='lobby', round=0, version=0,
                    hint_index=0, settings=settings_json)
        room.players.append(RoomPlayer(player_id=actor.id, name=actor.name, avatar_key=actor.avatar_key))
        db.session.add(room)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            continue
        return get_room(code)
    raise RuntimeError('Unable to create unique room code.')


def lock_room(code):
    """Load a room with its row locked until the transaction ends, or None."""
    _fresh()
    return db.session.get(Room, normalize_room_code(code), with_for_update=True)


def add_player(code, actor):
    """Join a room; re-joining only refreshes the player's name and avatar."""
    for _ in range(MEMBERSHIP_RETRIES):
        room = lock_room(code)
        if room is None:
            raise RoomNotFound()
        observed_version = room.version
        player = room.player(actor.id)
        if player is None:
            db.session.add(RoomPlayer(room_code=room.code, player_id=actor.id, name=actor.name,
                                      avatar_key=actor.avatar_key))
        else:
            player.name = actor.name
            player.avatar_key = actor.avatar_key
        db.session.flush()
        if guarded_update(room.code, {}, expected_version=observed_version):
            db.session.commit()
            return get_room(room.code)
        # Room moved or was deleted; drop the insert and re-read
        db.session.rollback()
    raise VersionConflict(room=snapshot(code))


def remove_player(code, player_id):
    """Remove a player; returns None when the room emptied and was deleted."""
    for _ in range(MEMBERSHIP_RETRIES):
        room = lock_room(code)
        if room is None:
            raise RoomNotFound()
        room_code = room.code
        observed_version = room.version
        host_id = room.host_id

        deleted = db.session.execute(
            delete(RoomPlayer)
            .where(RoomPlayer.room_code == room_code, RoomPlayer.player_id == player_id)
            .execution_options(synchronize_session=False)
        )
        if deleted.rowcount == 0:
            db.session.rollback()
            raise RoomForbidden()
        remaining = db.session.execute(
            select(RoomPlayer.player_id)
            .where(RoomPlayer.room_code == room_code)
            .order_by(RoomPlayer.id)
        ).scalars().all()

        if not remaining:
            db.session.execute(delete(ChatMessage).where(ChatMessage.room_code == room_code))
            closed = db.session.execute(
                delete(Room)
                .where(Room.code == room_code, Room.version == observed_version)
                .execution_options(synchronize_session=False)
            )
            if closed.rowcount == 1:
                db.session.commit()
                return None
        else:
            values = {}
            if host_id not in remaining:
                values['host_id'] = remaining[0]
            if guarded_update(room_code, values, expected_version=observed_version):
                db.session.commit()
                return get_room(room_code)
        db.session.rollback()
    raise VersionConflict(room=snapshot(code))


def guarded_update(code, values, expected_round=None, expected_version=None,
                   status=None, host_id=None, round_started_at_ms=None):
    """Apply `values` and bump the version only if every expectation holds.

    Returns True when exactly this call won; False means someone else got
    there first (or the expectation was stale) and nothing was written.
    """
    clauses = [Room.code == code]
    if expected_round is not None:
        clauses.append(Room.round == expected_round)
    if expected_version is not None:
        clauses.append(Room.version == expected_version)
    if status is not None:
        clauses.append(Room.status == status)
    if host_id is not None:
        clauses.append(Room.host_id == host_id)
    if round_started_at_ms is not None:
        clauses.append(Room.round_started_at_ms == round_started_at_ms)

    result = db.session.execute(
        update(Room)
        .where(*clauses)
        .values(version=Room.version + 1, **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def reset_players(code):
    db.session.execute(
        update(RoomPlayer)
        .where(RoomPlayer.room_code == code)
        .values(solved=False, guess_results='[]', solved_at_ms=None)
        .execution_options(synchronize_session=False)
    )


def compare_and_set_player(player, observed_results, values):
    """Update one player only if its results list is still what we read."""
    result = db.session.execute(
        update(RoomPlayer)
        .where(
            RoomPlayer.id == player.id,
            RoomPlayer.solved.is_(False),
            RoomPlayer.guess_results == observed_results,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
