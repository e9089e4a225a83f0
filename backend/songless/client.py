"""Client-side room reconciliation and an HTTP client built on it.

Push events and poll responses both carry the same versioned snapshot, so
a single rule decides what a client shows: a snapshot is applied only if
its version is newer than the last one applied, whatever its source.
"""

import logging
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)


class ActionNotApplied(Exception):
    """The server refused an action; the local view is already resynced."""

    def __init__(self, status, payload):
        self.status = status
        self.payload = payload or {}
        self.code = self.payload.get('code')
        super().__init__(self.payload.get('error') or f'Request failed with status {status}')


class RoomStateReconciler:
    def __init__(self, on_change: Optional[Callable[[Optional[dict], str], None]] = None):
        self.room: Optional[dict] = None
        self.closed = False
        self.on_change = on_change

    @property
    def version(self) -> Optional[int]:
        return self.room['version'] if self.room else None

    @property
    def round(self) -> Optional[int]:
        return self.room['round'] if self.room else None

    def expected_state(self) -> dict:
        return {'expectedRound': self.round, 'expectedVersion': self.version}

    def _replace(self, room, source):
        self.room = room
        self.closed = room is None
        if self.on_change:
            self.on_change(room, source)
        return True

    def apply(self, room, source='poll', force=False) -> bool:
        """Apply a snapshot unless it is not newer than what we have."""
        if not room:
            return False
        if self.room is not None and room.get('code') != self.room.get('code'):
            return self._replace(room, source)
        if not force and self.version is not None and int(room.get('version') or 0) <= self.version:
            logger.debug(f"[reconcile.stale] source={source} version={room.get('version')} applied={self.version}")
            return False
        return self._replace(room, source)

    def apply_conflict(self, payload) -> bool:
        room = (payload or {}).get('room')
        if room is None:
            return False
        # An equal version still replaces the view: the server copy wins ties
        return self.apply(room, source='conflict', force=int(room.get('version') or 0) >= (self.version or 0))

    def handle_push(self, event, payload) -> bool:
        payload = payload or {}
        if event == 'room:update':
            return self.apply(payload.get('room'), source='push')
        if event == 'room:sync':
            return self.apply(payload.get('room'), source='sync', force=payload.get('reason') == 'forced')
        if event == 'room:closed':
            if self.room and payload.get('code') == self.room.get('code'):
                return self._replace(None, 'closed')
            return False
        if event == 'room:chat':
            return self._append_chat(payload)
        return False

    def _append_chat(self, payload):
        message = payload.get('message')
        version = (payload.get('meta') or {}).get('version')
        if not self.room or not message or payload.get('code') != self.room.get('code'):
            return False
        chat = self.room.setdefault('chat', [])
        if any(m.get('id') == message.get('id') for m in chat):
            return False
        chat.append(message)
        if version is not None and version == self.room['version'] + 1:
            # Only a directly following version; any gap is filled by the next update or poll
            self.room['version'] = version
        if self.on_change:
            self.on_change(self.room, 'chat')
        return True


class RoomClient:
    """HTTP client for one room, keeping a reconciled local view.

    `session` is anything with requests-style `get`/`post` that return
    objects exposing `status_code` and `json()`.
    """

    def __init__(self, base_url='', session=None, reconciler=None):
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.view = reconciler or RoomStateReconciler()

    @property
    def code(self):
        return self.view.room['code'] if self.view.room else None

    def _url(self, path):
        return f"{self.base_url}{path}"

    def _handle(self, response):
        try:
            payload = response.json() or {}
        except ValueError:
            payload = {}
        if response.status_code == 409:
            self.view.apply_conflict(payload)
            raise ActionNotApplied(409, payload)
        if response.status_code >= 400:
            raise ActionNotApplied(response.status_code, payload)
        if 'room' in payload:
            if payload['room'] is None:
                self.view.handle_push('room:closed', {'code': self.code})
            else:
                self.view.apply(payload['room'], source='http')
        return payload

    def _post(self, path, body=None):
        return self._handle(self.session.post(self._url(path), json=body or {}))

    def _guarded(self, action, extra=None):
        body = dict(extra or {}, **self.view.expected_state())
        return self._post(f"/rooms/{self.code}/{action}", body)

    def create(self, name=None, **settings):
        body = dict(settings)
        if name:
            body['player'] = {'name': name}
        return self._post('/rooms', body)['room']

    def join(self, code, name=None):
        body = {'player': {'name': name}} if name else {}
        return self._post(f"/rooms/{code}/join", body)['room']

    def start(self):
        return self._guarded('start')['room']

    def next_round(self):
        return self._guarded('next')['room']

    def skip(self):
        return self._guarded('skip')['room']

    def guess(self, title=None, artist=None, text=None):
        extra = {'guess': text} if text is not None else {'title': title or '', 'artist': artist or ''}
        return self._guarded('guess', extra)

    def chat(self, message):
        payload = self._post(f"/rooms/{self.code}/chat", {'message': message, 'expectedVersion': self.view.version})
        self.view.handle_push('room:chat', {
            'code': self.code,
            'message': payload['message'],
            'meta': {'version': payload['version']},
        })
        return payload['message']

    def leave(self):
        return self._post(f"/rooms/{self.code}/leave")['room']

    def poll_once(self):
        """Polling fallback: fetch state and let the reconciler decide."""
        if not self.code:
            return False
        before = self.view.version
        self._handle(self.session.get(self._url(f"/rooms/{self.code}/state")))
        return self.view.version != before
