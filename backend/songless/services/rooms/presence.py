import threading
from typing import Dict, List, NamedTuple, Optional


class PresenceChange(NamedTuple):
    code: str
    player_id: str
    is_online: bool
    online_player_ids: List[str]


class PresenceService:
    """Reference-counted socket presence, keyed strictly by room code.

    A player with several tabs holds one count per socket and stays online
    until the last one goes away. Each socket is bound to at most one room.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._counts: Dict[str, Dict[str, int]] = {}
        self._sockets: Dict[str, tuple] = {}

    def _online(self, code: str) -> List[str]:
        return sorted(pid for pid, count in self._counts.get(code, {}).items() if count > 0)

    def connect(self, sid: str, code: str, player_id: str) -> PresenceChange:
        with self._lock:
            if self._sockets.get(sid) == (code, player_id):
                return PresenceChange(code, player_id, True, self._online(code))
            self._sockets[sid] = (code, player_id)
            room_counts = self._counts.setdefault(code, {})
            room_counts[player_id] = room_counts.get(player_id, 0) + 1
            return PresenceChange(code, player_id, True, self._online(code))

    def disconnect(self, sid: str) -> Optional[PresenceChange]:
        """Release whatever room the socket was bound to; None if unbound."""
        with self._lock:
            binding = self._sockets.pop(sid, None)
            if binding is None:
                return None
            code, player_id = binding
            room_counts = self._counts.get(code)
            if room_counts is None:
                return PresenceChange(code, player_id, False, [])
            remaining = room_counts.get(player_id, 0) - 1
            if remaining > 0:
                room_counts[player_id] = remaining
            else:
                room_counts.pop(player_id, None)
            if not room_counts:
                self._counts.pop(code, None)
            return PresenceChange(code, player_id, remaining > 0, self._online(code))

    def room_of(self, sid: str) -> Optional[str]:
        with self._lock:
            binding = self._sockets.get(sid)
            return binding[0] if binding else None

    def online_player_ids(self, code: str) -> List[str]:
        with self._lock:
            return self._online(code)

    def is_online(self, code: str, player_id: str) -> bool:
        with self._lock:
            return self._counts.get(code, {}).get(player_id, 0) > 0

    def drop_room(self, code: str) -> None:
        """Forget a deleted room along with every socket bound to it."""
        with self._lock:
            self._counts.pop(code, None)
            for sid in [s for s, (c, _) in self._sockets.items() if c == code]:
                del self._sockets[sid]

    def room_codes(self) -> List[str]:
        with self._lock:
            return sorted(self._counts)
