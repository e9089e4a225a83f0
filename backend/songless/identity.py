import re
from typing import NamedTuple, Optional

from flask_login import current_user

from songless.models import User
from songless.services.rooms.errors import InvalidRoomRequest

MAX_AVATAR_KEY_LENGTH = 32
_AVATAR_CHARS = re.compile(r'[^a-z0-9_-]')


class Actor(NamedTuple):
    id: str
    name: str
    avatar_key: Optional[str]


def authenticate(username, password):
    """Identity provider: return the User for valid credentials, else None."""
    if not username or not password:
        return None
    user = User.query.filter_by(username=username).first()
    if user and user.check_password(password):
        return user
    return None


def sanitize_avatar_key(value):
    if not isinstance(value, str):
        return None
    normalized = _AVATAR_CHARS.sub('', value.strip().lower())[:MAX_AVATAR_KEY_LENGTH]
    return normalized or None


def resolve_actor(body=None, user=None):
    """Combine the logged-in user with the optional `player` block of a body.

    Returns (actor, avatar_provided). A provided avatar key of None or ""
    clears it; anything that does not survive sanitizing is rejected.
    """
    user = user or current_user
    player = (body or {}).get('player') or {}
    if not isinstance(player, dict):
        player = {}

    name = player.get('name').strip() if isinstance(player.get('name'), str) else ''
    name = (name or user.display_name or user.username or 'Player')[:64]

    avatar_key = sanitize_avatar_key(user.avatar_key)
    avatar_provided = 'avatarKey' in player
    if avatar_provided:
        provided = player['avatarKey']
        if provided is None or provided == '':
            avatar_key = None
        else:
            avatar_key = sanitize_avatar_key(provided)
            if avatar_key is None:
                raise InvalidRoomRequest('Invalid avatar key.', 'INVALID_AVATAR_KEY')

    return Actor(id=user.player_id, name=name, avatar_key=avatar_key), avatar_provided
