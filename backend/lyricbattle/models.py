from lyricbattle import db, bcrypt
from flask_login import UserMixin
from sqlalchemy import event
from datetime import datetime, timezone
import json


MATCH_STATUSES = ('waiting', 'in_progress', 'settling', 'completed', 'cancelled')
TERMINAL_STATUSES = ('completed', 'cancelled')
LEDGER_CATEGORIES = ('stake_debit', 'stake_refund', 'win_credit', 'free_grant', 'purchase')


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


class Account(UserMixin, db.Model):
    __tablename__ = 'account'
    __table_args__ = (
        db.CheckConstraint('balance >= 0', name='ck_account_balance_non_negative'),
    )
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(64), unique=True, nullable=False, index=True)
    password_hash = db.Column(db.String(256), nullable=False)
    # Mutated only by escrow debits/refunds and settlement credits
    balance = db.Column(db.Integer, nullable=False, default=0)
    games_played = db.Column(db.Integer, nullable=False, default=0)
    total_wins = db.Column(db.Integer, nullable=False, default=0)
    win_streak = db.Column(db.Integer, nullable=False, default=0)
    longest_win_streak = db.Column(db.Integer, nullable=False, default=0)
    elo_rating = db.Column(db.Integer, nullable=False, default=1200)
    last_free_credit_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    statistics = db.relationship('AccountStatistics', back_populates='account', uselist=False)

    def set_password(self, password):
        self.password_hash = bcrypt.generate_password_hash(password).decode('utf-8')

    def check_password(self, password):
        return bcrypt.check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            'id': self.id,
            'username': self.username,
            'balance': self.balance,
            'games_played': self.games_played,
            'total_wins': self.total_wins,
            'win_streak': self.win_streak,
            'longest_win_streak': self.longest_win_streak,
            'elo_rating': self.elo_rating,
            'last_free_credit_at': _iso(self.last_free_credit_at),
        }


class Prompt(db.Model):
    __tablename__ = 'prompt'
    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(256), nullable=False)
    artist = db.Column(db.String(256), nullable=False)
    lyrics_snippet = db.Column(db.Text, nullable=False)
    answer = db.Column(db.String(256), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    times_played = db.Column(db.Integer, nullable=False, default=0)
    times_won = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    @property
    def win_rate(self):
        if not self.times_played:
            return None
        return round(100.0 * self.times_won / self.times_played, 2)

    def to_dict(self, include_answer=False):
        data = {
            'id': self.id,
            'title': self.title,
            'artist': self.artist,
            'lyrics_snippet': self.lyrics_snippet,
        }
        if include_answer:
            data['answer'] = self.answer
        return data


class Match(db.Model):
    __tablename__ = 'match'
    id = db.Column(db.Integer, primary_key=True)
    status = db.Column(db.String(32), nullable=False, default='waiting', index=True)  # see MATCH_STATUSES
    stake_amount = db.Column(db.Integer, nullable=False)
    # Policy snapshot taken at creation; never re-read from config mid-match
    duration_sec = db.Column(db.Float, nullable=False)
    rake_bps = db.Column(db.Integer, nullable=False)
    refund_on_no_winner = db.Column(db.Boolean, nullable=False, default=False)

    creator_id = db.Column(db.Integer, db.ForeignKey('account.id'), nullable=False)
    prompt_id = db.Column(db.Integer, db.ForeignKey('prompt.id'), nullable=True)
    winner_id = db.Column(db.Integer, db.ForeignKey('account.id'), nullable=True)
    outcome = db.Column(db.String(16), nullable=True)  # win, push, no_winner, refunded

    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    started_at = db.Column(db.DateTime, nullable=True)
    deadline_at = db.Column(db.DateTime, nullable=True)
    settling_since = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    cancelled_at = db.Column(db.DateTime, nullable=True)

    pot_amount = db.Column(db.Integer, nullable=True)
    fee_amount = db.Column(db.Integer, nullable=True)
    payout_amount = db.Column(db.Integer, nullable=True)
    analytics_recorded = db.Column(db.Boolean, nullable=False, default=False)

    participants = db.relationship('Participant', back_populates='match', order_by='Participant.id')
    prompt = db.relationship('Prompt')
    creator = db.relationship('Account', foreign_keys=[creator_id])
    winner = db.relationship('Account', foreign_keys=[winner_id])

    def participant_for(self, account_id):
        for p in self.participants:
            if p.account_id == account_id:
                return p
        return None

    def to_dict(self, viewer_id=None):
        finished = self.status in TERMINAL_STATUSES
        players = []
        for p in self.participants:
            pd = p.to_dict()
            # Answers stay private to their author until the match is over
            if not finished and p.account_id != viewer_id:
                pd.pop('answer_text', None)
                pd.pop('is_correct', None)
            players.append(pd)
        return {
            'id': self.id,
            'status': self.status,
            'stake_amount': self.stake_amount,
            'duration_sec': self.duration_sec,
            'rake_percent': self.rake_bps / 100.0,
            'creator_id': self.creator_id,
            'winner_id': self.winner_id,
            'outcome': self.outcome,
            'participants': players,
            'prompt': self.prompt.to_dict(include_answer=finished) if self.prompt else None,
            'created_at': _iso(self.created_at),
            'started_at': _iso(self.started_at),
            'deadline_at': _iso(self.deadline_at),
            'completed_at': _iso(self.completed_at),
            'pot_amount': self.pot_amount,
            'fee_amount': self.fee_amount,
            'payout_amount': self.payout_amount,
        }


class Participant(db.Model):
    __tablename__ = 'participant'
    __table_args__ = (
        db.UniqueConstraint('match_id', 'account_id', name='uq_participant_match_account'),
    )
    id = db.Column(db.Integer, primary_key=True)
    match_id = db.Column(db.Integer, db.ForeignKey('match.id'), nullable=False, index=True)
    account_id = db.Column(db.Integer, db.ForeignKey('account.id'), nullable=False, index=True)
    joined_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    # Written once, either by a submission or by the clock
    answer_text = db.Column(db.Text, nullable=True)
    submitted_at = db.Column(db.DateTime, nullable=True)
    is_correct = db.Column(db.Boolean, nullable=True)
    elapsed_seconds = db.Column(db.Float, nullable=True)
    timed_out = db.Column(db.Boolean, nullable=False, default=False)

    match = db.relationship('Match', back_populates='participants')
    account = db.relationship('Account')

    @property
    def decided(self):
        return self.submitted_at is not None or self.timed_out

    def to_dict(self):
        return {
            'account_id': self.account_id,
            'username': self.account.username if self.account else None,
            'has_answered': self.submitted_at is not None,
            'timed_out': self.timed_out,
            'answer_text': self.answer_text,
            'is_correct': self.is_correct,
            'elapsed_seconds': self.elapsed_seconds,
        }


class LedgerEntry(db.Model):
    __tablename__ = 'ledger_entry'
    __table_args__ = (
        # One stake debit, one refund and one win credit per (match, account)
        db.UniqueConstraint('match_id', 'account_id', 'category', name='uq_ledger_match_account_category'),
    )
    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey('account.id'), nullable=False, index=True)
    amount = db.Column(db.Integer, nullable=False)  # signed
    category = db.Column(db.String(32), nullable=False)  # see LEDGER_CATEGORIES
    match_id = db.Column(db.Integer, db.ForeignKey('match.id'), nullable=True, index=True)
    description = db.Column(db.String(256), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'account_id': self.account_id,
            'amount': self.amount,
            'category': self.category,
            'match_id': self.match_id,
            'description': self.description,
            'created_at': _iso(self.created_at),
        }


@event.listens_for(LedgerEntry, 'before_update')
def ledger_entry_before_update(mapper, connection, target):
    raise ValueError('ledger entries are append-only')


@event.listens_for(LedgerEntry, 'before_delete')
def ledger_entry_before_delete(mapper, connection, target):
    raise ValueError('ledger entries are append-only')


class MatchEvent(db.Model):
    """Replay log of everything that happened in a match."""
    __tablename__ = 'match_event'
    id = db.Column(db.Integer, primary_key=True)
    match_id = db.Column(db.Integer, db.ForeignKey('match.id'), nullable=False, index=True)
    account_id = db.Column(db.Integer, db.ForeignKey('account.id'), nullable=True)
    event_type = db.Column(db.String(32), nullable=False)
    payload = db.Column(db.Text, nullable=True)  # JSON-encoded
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'match_id': self.match_id,
            'account_id': self.account_id,
            'event_type': self.event_type,
            'payload': json.loads(self.payload) if self.payload else None,
            'created_at': _iso(self.created_at),
        }


class MatchAnalytics(db.Model):
    __tablename__ = 'match_analytics'
    id = db.Column(db.Integer, primary_key=True)
    match_id = db.Column(db.Integer, db.ForeignKey('match.id'), nullable=False, unique=True)
    prompt_id = db.Column(db.Integer, db.ForeignKey('prompt.id'), nullable=True)
    total_players = db.Column(db.Integer, nullable=False)
    average_response_time = db.Column(db.Float, nullable=True)
    completion_rate = db.Column(db.Float, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)


class AccountStatistics(db.Model):
    __tablename__ = 'account_statistics'
    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(db.Integer, db.ForeignKey('account.id'), nullable=False, unique=True)
    answers_count = db.Column(db.Integer, nullable=False, default=0)
    average_response_time = db.Column(db.Float, nullable=True)
    fastest_correct_answer = db.Column(db.Float, nullable=True)
    total_credits_earned = db.Column(db.Integer, nullable=False, default=0)
    last_played_at = db.Column(db.DateTime, nullable=True)

    account = db.relationship('Account', back_populates='statistics')

    def to_dict(self):
        return {
            'answers_count': self.answers_count,
            'average_response_time': self.average_response_time,
            'fastest_correct_answer': self.fastest_correct_answer,
            'total_credits_earned': self.total_credits_earned,
            'last_played_at': _iso(self.last_played_at),
        }


def record_event(match_id, event_type, account_id=None, **payload):
    """Append a replay event to the current session (committed by the caller)."""
    db.session.add(MatchEvent(
        match_id=match_id,
        account_id=account_id,
        event_type=event_type,
        payload=json.dumps(payload) if payload else None,
    ))
