"""Round engine: lobby -> active -> active ... under optimistic concurrency.

Every entry point re-reads the room, runs `maybe_advance` so an expired
round is rolled over before anything else happens, and then applies its
change through a guarded UPDATE. Losing a guard never merges: the caller
gets a conflict carrying the current snapshot.
"""

import json
from typing import NamedTuple, Optional

from flask import current_app
from sqlalchemy import case

from songless import db
from songless.models import Room, RoomPlayer
from . import store
from .errors import (
    AttemptsExhausted,
    InvalidRoomRequest,
    PhaseConflict,
    RoomForbidden,
    RoomNotFound,
    TrackProviderUnavailable,
    VersionConflict,
)
from .fanout import get_fanout
from .guess import RESULT_SKIP, evaluate_guess, parse_guess_payload

ADVANCE_RETRIES = 3


class ExpectedState(NamedTuple):
    round: int
    version: int


def _non_negative_int(value):
    try:
        parsed = int(str(value).strip())
    except (TypeError, ValueError):
        return None
    return parsed if parsed >= 0 else None


def parse_expected_state(body):
    """Both expectedRound and expectedVersion are mandatory for guarded calls."""
    body = body or {}
    expected_round = _non_negative_int(body.get('expectedRound'))
    expected_version = _non_negative_int(body.get('expectedVersion'))
    if expected_round is None or expected_version is None:
        raise InvalidRoomRequest('expectedRound and expectedVersion are required.', 'ROOM_EXPECTED_STATE_REQUIRED')
    return ExpectedState(expected_round, expected_version)


def parse_client_version(value):
    if value is None or value == '':
        return None
    return _non_negative_int(value)


def draw_track():
    track = current_app.extensions['track_provider'].get_random_playable_track()
    if not track or not track.preview_url:
        raise TrackProviderUnavailable('Track provider returned a track without a preview.', 'TRACK_NOT_PLAYABLE', 502)
    return track


def _new_round_values(track, started_at_ms):
    return {
        'round': Room.round + 1,
        'hint_index': 0,
        'current_track_id': track.id,
        'current_track': json.dumps(track.to_dict()),
        'round_started_at_ms': started_at_ms,
    }


def _conflict(code, actor_id, required_status, host_only=False):
    """Classify a lost guard against the room as it is now."""
    db.session.rollback()
    room = store.find_room(code)
    if room is None:
        raise RoomNotFound()
    if host_only and room.host_id != actor_id:
        raise RoomForbidden('Only the host can do that.')
    snapshot = store.serialize_room(room)
    if room.status != required_status:
        raise PhaseConflict(room=snapshot)
    raise VersionConflict(room=snapshot)


def maybe_advance(room, actor_id=None):
    """Roll an expired active round over to a fresh one.

    Returns (room, advanced). `advanced` is True whenever the round moved
    on since `room` was read, whether this call did it or a concurrent one.
    A track provider failure leaves the room untouched.
    """
    if not store.is_round_expired(room):
        return room, False

    code = room.code
    original_round = room.round
    try:
        track = draw_track()
    except TrackProviderUnavailable as exc:
        current_app.logger.warning(f"[rooms.auto_advance] room={code} track_failure code={exc.code}")
        return room, False

    for _ in range(ADVANCE_RETRIES):
        won = store.guarded_update(
            code,
            _new_round_values(track, store.now_ms()),
            expected_version=room.version,
            status='active',
            round_started_at_ms=room.round_started_at_ms,
        )
        if won:
            store.reset_players(code)
            db.session.commit()
            room = store.get_room(code)
            current_app.logger.info(f"[rooms.auto_advance] room={code} round={room.round} track={track.id}")
            get_fanout().room_state(store.serialize_room(room), 'round_auto_advanced', actor_id)
            return room, True

        db.session.rollback()
        room = store.get_room(code)
        if room.round != original_round or not store.is_round_expired(room):
            return room, room.round != original_round

    return room, room.round != original_round


def open_room(code, actor_id):
    """Member-gated load with the lazy expiry check applied."""
    room = store.get_member_room(code, actor_id)
    return maybe_advance(room, actor_id)


def create(actor, settings):
    room = store.create_room(actor, settings)
    current_app.logger.info(f"[rooms.create] room={room.code} host={actor.id}")
    return store.serialize_room(room)


def join(code, actor):
    room = store.get_room(code)
    maybe_advance(room, actor.id)
    room = store.add_player(room.code, actor)
    current_app.logger.info(f"[rooms.join] room={room.code} player={actor.id}")
    return store.serialize_room(room)


def leave(code, actor_id):
    """Returns the updated snapshot, or None when the room was deleted."""
    room, _ = open_room(code, actor_id)
    room_code = room.code
    room = store.remove_player(room_code, actor_id)
    current_app.logger.info(f"[rooms.leave] room={room_code} player={actor_id} deleted={room is None}")
    return store.serialize_room(room) if room is not None else None


def load_state(code, actor_id):
    room, _ = open_room(code, actor_id)
    return store.serialize_room(room)


def _begin_round(code, actor_id, expected, required_status, event):
    room = store.get_room(code)
    if room.host_id != actor_id:
        raise RoomForbidden('Only the host can do that.')
    room, _ = maybe_advance(room, actor_id)
    if room.status != required_status:
        raise PhaseConflict(room=store.serialize_room(room))
    if room.round != expected.round or room.version != expected.version:
        raise VersionConflict(room=store.serialize_room(room))

    # The provider is consulted before any write so a failure changes nothing
    track = draw_track()
    values = _new_round_values(track, store.now_ms())
    values['status'] = 'active'
    won = store.guarded_update(
        room.code,
        values,
        expected_round=expected.round,
        expected_version=expected.version,
        status=required_status,
        host_id=actor_id,
    )
    if not won:
        _conflict(room.code, actor_id, required_status, host_only=True)
    store.reset_players(room.code)
    db.session.commit()
    room = store.get_room(room.code)
    current_app.logger.info(f"[rooms.{event}] room={room.code} host={actor_id} round={room.round} track={track.id}")
    return store.serialize_room(room), track


def start(code, actor_id, expected):
    return _begin_round(code, actor_id, expected, 'lobby', 'start')


def next_round(code, actor_id, expected):
    return _begin_round(code, actor_id, expected, 'active', 'next')


def skip(code, actor_id, expected):
    """Reveal the next hint and charge every unsolved player one attempt."""
    room = store.get_room(code)
    if room.host_id != actor_id:
        raise RoomForbidden('Only the host can do that.')
    room, _ = maybe_advance(room, actor_id)

    max_hint = store.setting('MAX_HINT_INDEX')
    won = store.guarded_update(
        room.code,
        {'hint_index': case((Room.hint_index < max_hint, Room.hint_index + 1), else_=max_hint)},
        expected_round=expected.round,
        expected_version=expected.version,
        status='active',
        host_id=actor_id,
    )
    if not won:
        _conflict(room.code, actor_id, 'active', host_only=True)

    max_attempts = store.setting('ROUND_MAX_ATTEMPTS')
    db.session.expire_all()
    for player in db.session.get(Room, room.code).players:
        for _ in range(ADVANCE_RETRIES):
            if player.solved:
                break
            results = store.parse_guess_results(player.guess_results)
            if len(results) >= max_attempts:
                break
            observed = player.guess_results
            if store.compare_and_set_player(player, observed, {'guess_results': json.dumps(results + [RESULT_SKIP])}):
                break
            db.session.refresh(player)
    db.session.commit()
    room = store.get_room(room.code)
    current_app.logger.info(f"[rooms.skip] room={room.code} host={actor_id} hint={room.hint_index}")
    return store.serialize_room(room)


class GuessOutcome(NamedTuple):
    room: dict
    solved: bool
    guess_result: Optional[str]
    guess_index: Optional[int]
    changed: bool


def guess(code, actor_id, body):
    expected = parse_expected_state(body)
    submitted = parse_guess_payload(body)

    room = store.get_member_room(code, actor_id)
    room, advanced = maybe_advance(room, actor_id)
    if advanced or room.status != 'active':
        # Never apply a guess meant for one round to the next
        raise PhaseConflict(room=store.serialize_room(room))
    if room.round != expected.round or room.version != expected.version:
        raise VersionConflict(room=store.serialize_room(room))

    player = room.player(actor_id)
    results = store.parse_guess_results(player.guess_results)
    if player.solved:
        return GuessOutcome(store.serialize_room(room), True, 'solved', max(len(results) - 1, 0) if results else None, False)
    if len(results) >= store.setting('ROUND_MAX_ATTEMPTS'):
        raise AttemptsExhausted(room=store.serialize_room(room))
    if store.is_round_expired(room):
        raise PhaseConflict(room=store.serialize_room(room))

    evaluation = evaluate_guess(submitted, room.track_dict)
    guess_index = len(results)
    values = {'guess_results': json.dumps(results + [evaluation.result])}
    if evaluation.solved:
        values.update(
            solved=True,
            solved_at_ms=store.now_ms(),
            score=RoomPlayer.score + store.setting('CORRECT_GUESS_SCORE'),
        )

    if not store.compare_and_set_player(player, player.guess_results, values):
        db.session.rollback()
        raise VersionConflict(room=store.snapshot(room.code))
    if not store.guarded_update(room.code, {}, expected_round=room.round, status='active'):
        _conflict(room.code, actor_id, 'active')
    db.session.commit()

    room = store.get_room(room.code)
    current_app.logger.info(
        f"[rooms.guess] room={room.code} player={actor_id} result={evaluation.result} index={guess_index}"
    )
    return GuessOutcome(store.serialize_room(room), evaluation.solved, evaluation.result, guess_index, True)
