"""create game_session, player, game_round and attempt tables

Revision ID: 5c2e9d1a7b40
Revises:
Create Date: 2026-10-19 00:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '5c2e9d1a7b40'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'game_session',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False, server_default='waiting'),
        sa.Column('game_master_id', sa.Integer(), nullable=True),
        sa.Column('current_round_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_game_session_code', 'game_session', ['code'], unique=True)

    op.create_table(
        'player',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('game_session.id'), nullable=False),
        sa.Column('username', sa.String(length=64), nullable=False),
        sa.Column('score', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('joined_at', sa.DateTime(), nullable=False),
        sa.Column('last_seen_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_player_session_id', 'player', ['session_id'])
    op.create_index('uq_player_session_username_lower', 'player', ['session_id', sa.text('lower(username)')], unique=True)

    op.create_table(
        'game_round',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('game_session.id'), nullable=False),
        sa.Column('question', sa.Text(), nullable=False),
        sa.Column('answer_normalized', sa.Text(), nullable=False),
        sa.Column('started_at', sa.DateTime(), nullable=False),
        sa.Column('ends_at', sa.DateTime(), nullable=True),
        sa.Column('winner_player_id', sa.Integer(), sa.ForeignKey('player.id'), nullable=True),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.Column('end_reason', sa.String(length=64), nullable=True),
    )
    op.create_index('ix_game_round_session_id', 'game_round', ['session_id'])

    op.create_table(
        'attempt',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('round_id', sa.Integer(), sa.ForeignKey('game_round.id'), nullable=False),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('game_session.id'), nullable=False),
        sa.Column('player_id', sa.Integer(), sa.ForeignKey('player.id'), nullable=False),
        sa.Column('guess', sa.Text(), nullable=False),
        sa.Column('guess_normalized', sa.Text(), nullable=False),
        sa.Column('is_correct', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('round_id', 'player_id', 'attempt_number', name='uq_attempt_round_player_number'),
    )
    op.create_index('ix_attempt_round_id', 'attempt', ['round_id'])
    op.create_index('ix_attempt_session_id', 'attempt', ['session_id'])

    # Session -> player/round references close the cycle once both tables exist
    with op.batch_alter_table('game_session') as batch_op:
        batch_op.create_foreign_key('fk_session_game_master_id', 'player', ['game_master_id'], ['id'])
        batch_op.create_foreign_key('fk_session_current_round_id', 'game_round', ['current_round_id'], ['id'])


def downgrade():
    with op.batch_alter_table('game_session') as batch_op:
        batch_op.drop_constraint('fk_session_current_round_id', type_='foreignkey')
        batch_op.drop_constraint('fk_session_game_master_id', type_='foreignkey')
    op.drop_table('attempt')
    op.drop_table('game_round')
    op.drop_table('player')
    op.drop_table('game_session')
