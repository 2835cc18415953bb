"""create account, prompt, match, participant, ledger and statistics tables

Revision ID: 3c7a9e21b5d0
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3c7a9e21b5d0'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    if 'account' not in existing_tables:
        op.create_table(
            'account',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('username', sa.String(length=64), nullable=False),
            sa.Column('password_hash', sa.String(length=256), nullable=False),
            sa.Column('balance', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('games_played', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('total_wins', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('win_streak', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('longest_win_streak', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('elo_rating', sa.Integer(), nullable=False, server_default='1200'),
            sa.Column('last_free_credit_at', sa.DateTime(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.CheckConstraint('balance >= 0', name='ck_account_balance_non_negative'),
        )
        op.create_index('ix_account_username', 'account', ['username'], unique=True)

    if 'prompt' not in existing_tables:
        op.create_table(
            'prompt',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('title', sa.String(length=256), nullable=False),
            sa.Column('artist', sa.String(length=256), nullable=False),
            sa.Column('lyrics_snippet', sa.Text(), nullable=False),
            sa.Column('answer', sa.String(length=256), nullable=False),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column('times_played', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('times_won', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('created_at', sa.DateTime(), nullable=False),
        )

    if 'match' not in existing_tables:
        op.create_table(
            'match',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('status', sa.String(length=32), nullable=False),
            sa.Column('stake_amount', sa.Integer(), nullable=False),
            sa.Column('duration_sec', sa.Float(), nullable=False),
            sa.Column('rake_bps', sa.Integer(), nullable=False),
            sa.Column('refund_on_no_winner', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('creator_id', sa.Integer(), sa.ForeignKey('account.id'), nullable=False),
            sa.Column('prompt_id', sa.Integer(), sa.ForeignKey('prompt.id'), nullable=True),
            sa.Column('winner_id', sa.Integer(), sa.ForeignKey('account.id'), nullable=True),
            sa.Column('outcome', sa.String(length=16), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('started_at', sa.DateTime(), nullable=True),
            sa.Column('deadline_at', sa.DateTime(), nullable=True),
            sa.Column('settling_since', sa.DateTime(), nullable=True),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
            sa.Column('cancelled_at', sa.DateTime(), nullable=True),
            sa.Column('pot_amount', sa.Integer(), nullable=True),
            sa.Column('fee_amount', sa.Integer(), nullable=True),
            sa.Column('payout_amount', sa.Integer(), nullable=True),
            sa.Column('analytics_recorded', sa.Boolean(), nullable=False, server_default=sa.false()),
        )
        op.create_index('ix_match_status', 'match', ['status'])

    if 'participant' not in existing_tables:
        op.create_table(
            'participant',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('match_id', sa.Integer(), sa.ForeignKey('match.id'), nullable=False),
            sa.Column('account_id', sa.Integer(), sa.ForeignKey('account.id'), nullable=False),
            sa.Column('joined_at', sa.DateTime(), nullable=False),
            sa.Column('answer_text', sa.Text(), nullable=True),
            sa.Column('submitted_at', sa.DateTime(), nullable=True),
            sa.Column('is_correct', sa.Boolean(), nullable=True),
            sa.Column('elapsed_seconds', sa.Float(), nullable=True),
            sa.Column('timed_out', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.UniqueConstraint('match_id', 'account_id', name='uq_participant_match_account'),
        )
        op.create_index('ix_participant_match_id', 'participant', ['match_id'])
        op.create_index('ix_participant_account_id', 'participant', ['account_id'])

    if 'ledger_entry' not in existing_tables:
        op.create_table(
            'ledger_entry',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('account_id', sa.Integer(), sa.ForeignKey('account.id'), nullable=False),
            sa.Column('amount', sa.Integer(), nullable=False),
            sa.Column('category', sa.String(length=32), nullable=False),
            sa.Column('match_id', sa.Integer(), sa.ForeignKey('match.id'), nullable=True),
            sa.Column('description', sa.String(length=256), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.UniqueConstraint('match_id', 'account_id', 'category', name='uq_ledger_match_account_category'),
        )
        op.create_index('ix_ledger_entry_account_id', 'ledger_entry', ['account_id'])
        op.create_index('ix_ledger_entry_match_id', 'ledger_entry', ['match_id'])

    if 'match_event' not in existing_tables:
        op.create_table(
            'match_event',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('match_id', sa.Integer(), sa.ForeignKey('match.id'), nullable=False),
            sa.Column('account_id', sa.Integer(), sa.ForeignKey('account.id'), nullable=True),
            sa.Column('event_type', sa.String(length=32), nullable=False),
            sa.Column('payload', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
        )
        op.create_index('ix_match_event_match_id', 'match_event', ['match_id'])

    if 'match_analytics' not in existing_tables:
        op.create_table(
            'match_analytics',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('match_id', sa.Integer(), sa.ForeignKey('match.id'), nullable=False, unique=True),
            sa.Column('prompt_id', sa.Integer(), sa.ForeignKey('prompt.id'), nullable=True),
            sa.Column('total_players', sa.Integer(), nullable=False),
            sa.Column('average_response_time', sa.Float(), nullable=True),
            sa.Column('completion_rate', sa.Float(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
        )

    if 'account_statistics' not in existing_tables:
        op.create_table(
            'account_statistics',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('account_id', sa.Integer(), sa.ForeignKey('account.id'), nullable=False, unique=True),
            sa.Column('answers_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('average_response_time', sa.Float(), nullable=True),
            sa.Column('fastest_correct_answer', sa.Float(), nullable=True),
            sa.Column('total_credits_earned', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('last_played_at', sa.DateTime(), nullable=True),
        )


def downgrade():
    for table in ['account_statistics', 'match_analytics', 'match_event', 'ledger_entry',
                  'participant', 'match', 'prompt', 'account']:
        op.drop_table(table)
