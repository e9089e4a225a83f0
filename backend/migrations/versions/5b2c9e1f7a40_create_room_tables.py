"""create user and multiplayer room tables

Revision ID: 5b2c9e1f7a40
Revises:
Create Date: 2026-10-17 00:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5b2c9e1f7a40'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'user',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('display_name', sa.String(length=64), nullable=True),
        sa.Column('avatar_key', sa.String(length=32), nullable=True),
        sa.Column('password_hash', sa.String(length=256), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_user_username', 'user', ['username'], unique=True)

    op.create_table(
        'game_room',
        sa.Column('code', sa.String(length=6), nullable=False),
        sa.Column('host_id', sa.String(length=64), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('round', sa.Integer(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('hint_index', sa.Integer(), nullable=False),
        sa.Column('settings', sa.Text(), nullable=True),
        sa.Column('current_track_id', sa.String(length=64), nullable=True),
        sa.Column('current_track', sa.Text(), nullable=True),
        sa.Column('round_started_at_ms', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('code'),
    )

    op.create_table(
        'game_room_player',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('room_code', sa.String(length=6), nullable=False),
        sa.Column('player_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('avatar_key', sa.String(length=32), nullable=True),
        sa.Column('score', sa.Integer(), nullable=False),
        sa.Column('solved', sa.Boolean(), nullable=False),
        sa.Column('guess_results', sa.Text(), nullable=False),
        sa.Column('solved_at_ms', sa.BigInteger(), nullable=True),
        sa.Column('joined_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['room_code'], ['game_room.code']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('room_code', 'player_id', name='uq_room_player'),
    )
    op.create_index('ix_game_room_player_room_code', 'game_room_player', ['room_code'])

    op.create_table(
        'game_room_chat_message',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('room_code', sa.String(length=6), nullable=False),
        sa.Column('sender_id', sa.String(length=64), nullable=False),
        sa.Column('sender_name', sa.String(length=64), nullable=False),
        sa.Column('sender_avatar_key', sa.String(length=32), nullable=True),
        sa.Column('message', sa.String(length=280), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['room_code'], ['game_room.code']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_game_room_chat_message_room_code', 'game_room_chat_message', ['room_code'])


def downgrade():
    op.drop_index('ix_game_room_chat_message_room_code', table_name='game_room_chat_message')
    op.drop_table('game_room_chat_message')
    op.drop_index('ix_game_room_player_room_code', table_name='game_room_player')
    op.drop_table('game_room_player')
    op.drop_table('game_room')
    op.drop_index('ix_user_username', table_name='user')
    op.drop_table('user')
