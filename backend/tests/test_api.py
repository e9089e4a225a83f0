from sqlalchemy import update

from songless import db
from songless.models import Room, User
from songless.services.rooms import engine
from songless.services.rooms.store import now_ms


def guard(room, **extra):
    return dict(extra, expectedRound=room['round'], expectedVersion=room['version'])


def create_room(player_client, **settings):
    res = player_client.post('/rooms', json=settings or {'mode': 'classic', 'difficulty': 'normal'})
    assert res.status_code == 201
    return res.get_json()['room']


def join(player_client, code, **body):
    res = player_client.post(f'/rooms/{code}/join', json=body)
    assert res.status_code == 200
    return res.get_json()['room']


def start(player_client, room):
    res = player_client.post(f"/rooms/{room['code']}/start", json=guard(room))
    assert res.status_code == 200
    return res.get_json()['room']


def guess(player_client, room, **fields):
    return player_client.post(f"/rooms/{room['code']}/guess", json=guard(room, **fields))


def started_room(host, guest):
    room = create_room(host)
    join(guest, room['code'])
    state = host.get(f"/rooms/{room['code']}/state").get_json()['room']
    return start(host, state)


def expire_round(flask_app, code):
    with flask_app.app_context():
        db.session.execute(
            update(Room).where(Room.code == code).values(round_started_at_ms=now_ms() - 121000)
        )
        db.session.commit()


def test_requires_login(client):
    res = client.post('/rooms', json={})
    assert res.status_code == 401
    assert res.get_json()['error'] == 'Authentication required'


def test_create_room(host):
    room = create_room(host, mode='classic', genre='rock')
    assert len(room['code']) == 6
    assert room['code'].isalnum() and room['code'].upper() == room['code']
    assert room['hostId'] == host.player_id
    assert room['status'] == 'lobby'
    assert room['round'] == 0
    assert room['version'] == 0
    assert room['settings']['genre'] == 'rock'
    assert list(room['players']) == [host.player_id]
    assert room['players'][host.player_id]['name'] == 'Alice'
    assert room['roundMaxAttempts'] == 6
    assert room['chat'] == []


def test_full_round_scenario(host, guest):
    room = create_room(host)
    code = room['code']
    v0 = room['version']

    room = join(guest, code)
    assert room['version'] == v0 + 1
    assert list(room['players']) == [host.player_id, guest.player_id]

    room = start(host, room)
    assert room['round'] == 1
    assert room['status'] == 'active'
    assert room['version'] == v0 + 2
    assert room['roundEndsAt'] - room['roundStartedAt'] == 120000
    assert room['currentTrack']['title'] == 'Bohemian Rhapsody'
    assert room['currentTrack']['previewUrl']

    body = guess(guest, room, title='Hey Jude', artist='The Beatles').get_json()
    assert body['guessResult'] == 'miss'
    assert body['guessIndex'] == 0
    assert body['solved'] is False
    assert body['room']['players'][guest.player_id]['score'] == 0

    body = guess(guest, body['room'], title='bohemian rhapsody!', artist='QUEEN').get_json()
    assert body['guessResult'] == 'solved'
    assert body['guessIndex'] == 1
    assert body['solved'] is True
    player = body['room']['players'][guest.player_id]
    assert player['score'] == 1
    assert player['solved'] is True
    assert player['guessResults'] == ['miss', 'solved']
    assert player['roundTimeMs'] is not None

    res = host.post(f'/rooms/{code}/skip', json=guard(body['room']))
    assert res.status_code == 200
    room = res.get_json()['room']
    assert room['hintIndex'] == 1
    assert room['players'][guest.player_id]['guessResults'] == ['miss', 'solved']
    assert room['players'][host.player_id]['guessResults'] == ['skip']

    room = guest.post(f'/rooms/{code}/leave').get_json()['room']
    assert guest.player_id not in room['players']

    res = host.post(f'/rooms/{code}/leave')
    assert res.status_code == 200
    assert res.get_json()['room'] is None

    res = host.get(f'/rooms/{code}/state')
    assert res.status_code == 404
    assert res.get_json()['code'] == 'ROOM_NOT_FOUND'


def test_free_text_and_artist_only_guesses(host, guest):
    room = started_room(host, guest)
    body = guess(guest, room, title='Radio Ga Ga', artist='Queen').get_json()
    assert body['guessResult'] == 'artist'
    body = guess(host, body['room'], guess='Bohemian Rhapsody – Queen').get_json()
    assert body['guessResult'] == 'solved'
    assert body['room']['players'][host.player_id]['score'] == 1


def test_version_is_monotonic(host, guest):
    room = create_room(host)
    code = room['code']
    versions = [room['version']]

    room = join(guest, code)
    versions.append(room['version'])
    room = start(host, room)
    versions.append(room['version'])
    room = guess(guest, room, title='nope', artist='nope').get_json()['room']
    versions.append(room['version'])
    room = host.post(f'/rooms/{code}/skip', json=guard(room)).get_json()['room']
    versions.append(room['version'])
    versions.append(host.post(f'/rooms/{code}/chat', json={'message': 'hi'}).get_json()['version'])
    room = host.get(f'/rooms/{code}/state').get_json()['room']
    room = host.post(f'/rooms/{code}/next', json=guard(room)).get_json()['room']
    versions.append(room['version'])
    room = guest.post(f'/rooms/{code}/leave').get_json()['room']
    versions.append(room['version'])

    assert [b - a for a, b in zip(versions, versions[1:])] == [1] * (len(versions) - 1)


def test_stale_guard_returns_current_snapshot(host, guest):
    room = started_room(host, guest)
    guess(guest, room, title='nope', artist='nope')

    res = host.post(f"/rooms/{room['code']}/skip", json=guard(room))
    assert res.status_code == 409
    body = res.get_json()
    assert body['code'] == 'ROOM_VERSION_CONFLICT'
    current = host.get(f"/rooms/{room['code']}/state").get_json()['room']
    assert body['room']['version'] == current['version'] == room['version'] + 1
    assert current['hintIndex'] == 0

    res = guess(guest, room, title='Bohemian Rhapsody', artist='Queen')
    assert res.status_code == 409
    assert res.get_json()['room']['version'] == current['version']


def test_missing_guard_is_rejected(host):
    room = create_room(host)
    res = host.post(f"/rooms/{room['code']}/start", json={})
    assert res.status_code == 400
    assert res.get_json()['code'] == 'ROOM_EXPECTED_STATE_REQUIRED'

    res = host.post(f"/rooms/{room['code']}/start", json={'expectedRound': 0, 'expectedVersion': 'abc'})
    assert res.status_code == 400


def test_attempt_cap(host, guest):
    room = started_room(host, guest)
    for index in range(6):
        body = guess(guest, room, title=f'wrong {index}', artist='nobody').get_json()
        assert body['guessIndex'] == index
        room = body['room']

    res = guess(guest, room, title='Bohemian Rhapsody', artist='Queen')
    assert res.status_code == 409
    body = res.get_json()
    assert body['code'] == 'ROOM_ATTEMPTS_EXHAUSTED'
    assert len(body['room']['players'][guest.player_id]['guessResults']) == 6

    state = guest.get(f"/rooms/{room['code']}/state").get_json()['room']
    assert state['version'] == room['version']
    assert state['players'][guest.player_id]['score'] == 0

    # Skips never push an exhausted player past the cap
    room = host.post(f"/rooms/{room['code']}/skip", json=guard(state)).get_json()['room']
    assert len(room['players'][guest.player_id]['guessResults']) == 6


def test_solved_guess_is_idempotent(host, guest):
    room = started_room(host, guest)
    room = guess(guest, room, title='Bohemian Rhapsody', artist='Queen').get_json()['room']

    res = guess(guest, room, title='Bohemian Rhapsody', artist='Queen')
    assert res.status_code == 200
    body = res.get_json()
    assert body['solved'] is True
    assert body['guessResult'] == 'solved'
    assert body['guessIndex'] == 0
    assert body['room']['version'] == room['version']
    player = body['room']['players'][guest.player_id]
    assert player['score'] == 1
    assert player['guessResults'] == ['solved']


def test_next_round_resets_players(host, guest):
    room = started_room(host, guest)
    room = guess(guest, room, title='Bohemian Rhapsody', artist='Queen').get_json()['room']
    room = host.post(f"/rooms/{room['code']}/skip", json=guard(room)).get_json()['room']

    res = host.post(f"/rooms/{room['code']}/next", json=guard(room))
    assert res.status_code == 200
    room = res.get_json()['room']
    assert room['round'] == 2
    assert room['hintIndex'] == 0
    assert room['currentTrack']['title'] == 'Café del Mar'
    for player in room['players'].values():
        assert player['solved'] is False
        assert player['guessResults'] == []
        assert player['solvedAtMs'] is None
    assert room['players'][guest.player_id]['score'] == 1


def test_phase_conflicts(host, guest):
    room = create_room(host)
    room = join(guest, room['code'])

    res = host.post(f"/rooms/{room['code']}/next", json=guard(room))
    assert res.status_code == 409
    assert res.get_json()['code'] == 'ROOM_PHASE_CONFLICT'

    res = guess(guest, room, title='Bohemian Rhapsody', artist='Queen')
    assert res.status_code == 409
    assert res.get_json()['code'] == 'ROOM_PHASE_CONFLICT'

    room = start(host, room)
    res = host.post(f"/rooms/{room['code']}/start", json=guard(room))
    assert res.status_code == 409
    assert res.get_json()['room']['status'] == 'active'


def test_host_only_and_membership(host, guest, make_player):
    room = create_room(host)
    room = join(guest, room['code'])

    res = guest.post(f"/rooms/{room['code']}/start", json=guard(room))
    assert res.status_code == 403
    assert res.get_json()['code'] == 'ROOM_FORBIDDEN'

    outsider = make_player('carol')
    assert outsider.get(f"/rooms/{room['code']}/state").status_code == 403
    assert outsider.post(f"/rooms/{room['code']}/leave").status_code == 403
    assert outsider.get('/rooms/ZZZZZZ/state').status_code == 404


def test_room_codes_are_case_insensitive(host, guest):
    room = create_room(host)
    assert join(guest, room['code'].lower())['code'] == room['code']


def test_rejoin_updates_profile_without_duplicating(host, guest):
    room = create_room(host)
    join(guest, room['code'])
    room = join(guest, room['code'], player={'name': 'Bobby', 'avatarKey': ' Fox!'})
    assert len(room['players']) == 2
    assert room['players'][guest.player_id]['name'] == 'Bobby'
    assert room['players'][guest.player_id]['avatarKey'] == 'fox'
    assert guest.get('/auth/me').get_json()['user']['avatarKey'] == 'fox'

    res = guest.post(f"/rooms/{room['code']}/join", json={'player': {'avatarKey': '!!!'}})
    assert res.status_code == 400
    assert res.get_json()['code'] == 'INVALID_AVATAR_KEY'


def test_host_leaving_reassigns_host(host, guest):
    room = create_room(host)
    join(guest, room['code'])
    room = host.post(f"/rooms/{room['code']}/leave").get_json()['room']
    assert room['hostId'] == guest.player_id
    assert list(room['players']) == [guest.player_id]


def test_track_provider_failure_leaves_room_unchanged(host, guest, track_provider):
    room = create_room(host)
    room = join(guest, room['code'])
    track_provider.fail = True

    res = host.post(f"/rooms/{room['code']}/start", json=guard(room))
    assert res.status_code == 503
    assert res.get_json()['code'] == 'TRACK_PROVIDER_UNAVAILABLE'
    state = host.get(f"/rooms/{room['code']}/state").get_json()['room']
    assert state['status'] == 'lobby'
    assert state['round'] == 0
    assert state['version'] == room['version']

    track_provider.fail = False
    assert start(host, state)['round'] == 1


def test_expired_round_advances_on_read(flask_app, host, guest):
    room = started_room(host, guest)
    room = guess(guest, room, title='nope', artist='nope').get_json()['room']
    expire_round(flask_app, room['code'])

    state = guest.get(f"/rooms/{room['code']}/state").get_json()['room']
    assert state['round'] == 2
    assert state['status'] == 'active'
    assert state['version'] == room['version'] + 1
    assert state['hintIndex'] == 0
    assert state['players'][guest.player_id]['guessResults'] == []

    again = host.get(f"/rooms/{room['code']}/state").get_json()['room']
    assert again['round'] == 2
    assert again['version'] == state['version']


def test_guess_for_expired_round_is_a_phase_conflict(flask_app, host, guest):
    room = started_room(host, guest)
    expire_round(flask_app, room['code'])

    res = guess(guest, room, title='Bohemian Rhapsody', artist='Queen')
    assert res.status_code == 409
    body = res.get_json()
    assert body['code'] == 'ROOM_PHASE_CONFLICT'
    assert body['room']['round'] == 2
    assert body['room']['players'][guest.player_id]['score'] == 0


def test_auto_advance_waits_out_provider_failure(flask_app, host, guest, track_provider):
    room = started_room(host, guest)
    expire_round(flask_app, room['code'])
    track_provider.fail = True

    state = host.get(f"/rooms/{room['code']}/state").get_json()['room']
    assert state['round'] == 1
    assert state['version'] == room['version']


def test_unexpected_error_is_a_plain_500(host, monkeypatch):
    room = create_room(host)

    def boom(code, actor_id):
        raise RuntimeError('database went away')

    monkeypatch.setattr(engine, 'load_state', boom)
    res = host.get(f"/rooms/{room['code']}/state")
    assert res.status_code == 500
    assert res.get_json() == {'error': 'Server error'}


def test_db_reset_command(flask_app):
    runner = flask_app.test_cli_runner()
    result = runner.invoke(args=['db-reset'])
    assert 'reset and seeded' in result.output
    with flask_app.app_context():
        assert User.query.count() == 3
        assert User.query.filter_by(username='testuser1').first().check_password('password')
