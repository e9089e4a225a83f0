"""Room error taxonomy.

Every error maps to one HTTP status and one machine-readable code. The
409 family always carries the authoritative room snapshot (or None when
the room no longer exists) so clients can resync without another read.
"""


class RoomError(Exception):
    status = 500
    code = 'ROOM_ERROR'
    message = 'Room operation failed.'

    def __init__(self, message=None, code=None, room=None):
        super().__init__(message or self.message)
        self.message = message or self.message
        if code:
            self.code = code
        self.room = room

    @property
    def is_conflict(self):
        return self.status == 409

    def to_dict(self):
        payload = {'error': self.message, 'code': self.code}
        if self.is_conflict:
            payload['room'] = self.room
        return payload


class InvalidRoomRequest(RoomError):
    status = 400
    code = 'ROOM_INVALID_REQUEST'
    message = 'Invalid request.'


class RoomNotFound(RoomError):
    status = 404
    code = 'ROOM_NOT_FOUND'
    message = 'Room not found.'


class RoomForbidden(RoomError):
    status = 403
    code = 'ROOM_FORBIDDEN'
    message = 'Player not in room.'


class PhaseConflict(RoomError):
    status = 409
    code = 'ROOM_PHASE_CONFLICT'
    message = 'Round is not active. Sync room state.'


class VersionConflict(RoomError):
    status = 409
    code = 'ROOM_VERSION_CONFLICT'
    message = 'Room state changed. Sync and try again.'


class AttemptsExhausted(RoomError):
    status = 409
    code = 'ROOM_ATTEMPTS_EXHAUSTED'
    message = 'No guesses left this round.'


class TrackProviderUnavailable(RoomError):
    """Retryable upstream failure; the room is never touched when raised."""
    status = 503
    code = 'TRACK_PROVIDER_UNAVAILABLE'
    message = 'Track provider is temporarily unavailable.'

    def __init__(self, message=None, code=None, status=None):
        super().__init__(message, code)
        if status:
            self.status = status
