from songless import db, bcrypt
from flask_login import UserMixin
from datetime import datetime, timezone
import json
import string
import random


def utcnow():
    return datetime.now(timezone.utc)


def _load_json(raw, default):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        return default


class User(UserMixin, db.Model):
    __tablename__ = 'user'
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    display_name = db.Column(db.String(64), nullable=True)
    avatar_key = db.Column(db.String(32), nullable=True)
    password_hash = db.Column(db.String(256), nullable=False)

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    @property
    def player_id(self):
        """Room-scoped players are keyed by an opaque string id."""
        return str(self.id)

    def to_dict(self):
        return {
            'id': self.player_id,
            'username': self.username,
            'displayName': self.display_name,
            'avatarKey': self.avatar_key,
        }


ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_room_code(length=6):
    return ''.join(random.choices(ROOM_CODE_ALPHABET, k=length))


class Room(db.Model):
    __tablename__ = 'game_room'
    code = db.Column(db.String(6), primary_key=True)
    host_id = db.Column(db.String(64), nullable=False)
    status = db.Column(db.String(16), nullable=False, default='lobby')  # lobby, active
    round = db.Column(db.Integer, nullable=False, default=0)
    version = db.Column(db.Integer, nullable=False, default=0)
    hint_index = db.Column(db.Integer, nullable=False, default=0)
    settings = db.Column(db.Text, nullable=True)  # JSON-encoded {mode, difficulty, genre, decade}
    current_track_id = db.Column(db.String(64), nullable=True)
    current_track = db.Column(db.Text, nullable=True)  # JSON-encoded track snapshot
    round_started_at_ms = db.Column(db.BigInteger, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    players = db.relationship(
        'RoomPlayer',
        back_populates='room',
        order_by='RoomPlayer.id',
        cascade='all, delete-orphan',
    )

    @property
    def settings_dict(self):
        return _load_json(self.settings, {})

    @property
    def track_dict(self):
        return _load_json(self.current_track, None)

    def player(self, player_id):
        for p in self.players:
            if p.player_id == player_id:
                return p
        return None


class RoomPlayer(db.Model):
    __tablename__ = 'game_room_player'
    __table_args__ = (db.UniqueConstraint('room_code', 'player_id', name='uq_room_player'),)
    # Autoincrement id doubles as join order
    id = db.Column(db.Integer, primary_key=True)
    room_code = db.Column(db.String(6), db.ForeignKey('game_room.code'), nullable=False, index=True)
    player_id = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(64), nullable=False)
    avatar_key = db.Column(db.String(32), nullable=True)
    score = db.Column(db.Integer, nullable=False, default=0)
    solved = db.Column(db.Boolean, nullable=False, default=False)
    guess_results = db.Column(db.Text, nullable=False, default='[]')  # JSON-encoded list of outcomes
    solved_at_ms = db.Column(db.BigInteger, nullable=True)
    joined_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    room = db.relationship('Room', back_populates='players')


class ChatMessage(db.Model):
    __tablename__ = 'game_room_chat_message'
    id = db.Column(db.Integer, primary_key=True)
    room_code = db.Column(db.String(6), db.ForeignKey('game_room.code'), nullable=False, index=True)
    sender_id = db.Column(db.String(64), nullable=False)
    sender_name = db.Column(db.String(64), nullable=False)
    sender_avatar_key = db.Column(db.String(32), nullable=True)
    message = db.Column(db.String(280), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'id': str(self.id),
            'playerId': self.sender_id,
            'playerName': self.sender_name,
            'avatarKey': self.sender_avatar_key or None,
            'message': self.message,
            'createdAt': self.created_at.isoformat() if self.created_at else None,
        }
