from flask import current_app

from .store import now_ms

NAMESPACE = '/ws'


def room_channel(code):
    return f"room:{code}"


class RoomFanout:
    """Pushes versioned room deltas to every socket subscribed to a room."""

    def __init__(self, socketio, presence):
        self.socketio = socketio
        self.presence = presence

    def _emit(self, event, payload, code):
        self.socketio.emit(event, payload, to=room_channel(code), namespace=NAMESPACE)

    def room_state(self, room, event, actor_id=None, **meta):
        if not room or not room.get('code'):
            return
        meta = dict(meta, event=event, actorId=actor_id)
        self._emit('room:update', {
            'room': room,
            'version': int(room.get('version') or 0),
            'meta': meta,
            'ts': now_ms(),
        }, room['code'])

    def room_chat(self, code, message, actor_id=None, version=None):
        if not code or not message:
            return
        self._emit('room:chat', {
            'code': code,
            'message': message,
            'meta': {'actorId': actor_id, 'version': version},
            'ts': now_ms(),
        }, code)

    def presence_changed(self, change):
        if change is None:
            return
        self._emit('room:presence', {
            'code': change.code,
            'playerId': change.player_id,
            'isOnline': change.is_online,
            'onlinePlayerIds': change.online_player_ids,
            'ts': now_ms(),
        }, change.code)

    def room_closed(self, code):
        self.presence.drop_room(code)
        self._emit('room:closed', {'code': code, 'ts': now_ms()}, code)
        self.socketio.close_room(room_channel(code), namespace=NAMESPACE)


def get_fanout():
    return current_app.extensions['room_fanout']
