"""Match lifecycle: create, join, answer, cancel, view.

``waiting -> in_progress -> settling -> completed`` plus ``waiting -> cancelled``.
Each transition is a compare-and-set on ``Match.status`` inside the same
transaction as the money it depends on, so a match is never in progress with
an unpaid stake and never cancelled without its refund.
"""

from datetime import timedelta

from flask import current_app
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from lyricbattle import db
from lyricbattle.errors import (
    AlreadyAnswered, AlreadyParticipant, InsufficientFunds, InvalidStake, MatchFull,
    MatchNotActive, MatchNotFound, NotAParticipant, StorageFailure,
)
from lyricbattle.models import Match, Participant, record_event, utcnow
from lyricbattle.services import escrow
from lyricbattle.services.judge import is_correct_answer
from lyricbattle.services.policy import MatchPolicy
from lyricbattle.services.prompts import pick_prompt
from lyricbattle.services.settlement import settle_if_decided
from lyricbattle.socketio_events import broadcast_match_update


def _get_match(match_id) -> Match:
    match = db.session.get(Match, match_id)
    if match is None:
        raise MatchNotFound(f'Match {match_id} not found')
    return match


def _parse_stake(stake) -> int:
    if isinstance(stake, (bool, str)):
        raise InvalidStake('Stake must be a whole number of credits')
    try:
        value = int(stake)
    except (TypeError, ValueError):
        raise InvalidStake('Stake must be a whole number of credits')
    if isinstance(stake, float) and stake != value:
        raise InvalidStake('Stake must be a whole number of credits')
    return value


def create_match(account_id: int, stake, now=None) -> Match:
    """Open a match in ``waiting`` with the creator's stake already escrowed."""
    now = now or utcnow()
    policy = MatchPolicy.from_config(current_app.config)
    stake = _parse_stake(stake)
    if not policy.allows_stake(stake):
        raise InvalidStake(f'Stake must be between {policy.min_stake} and {policy.max_stake} credits')

    try:
        match = Match(
            status='waiting',
            stake_amount=stake,
            duration_sec=policy.duration_sec,
            rake_bps=policy.rake_bps,
            refund_on_no_winner=policy.refund_on_no_winner,
            creator_id=account_id,
            created_at=now,
        )
        db.session.add(match)
        db.session.flush()
        if not escrow.reserve(account_id, stake, match_id=match.id, commit=False).granted:
            db.session.rollback()
            raise InsufficientFunds(f'Not enough credits to stake {stake}')
        db.session.add(Participant(match_id=match.id, account_id=account_id, joined_at=now))
        record_event(match.id, 'created', account_id=account_id, stake=stake)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageFailure('Could not create match') from exc

    current_app.logger.info(f"[match-create] match={match.id} account={account_id} stake={stake}")
    broadcast_match_update(match.id, match.status)

    from lyricbattle.services.clock import schedule_waiting_expiry
    schedule_waiting_expiry(current_app._get_current_object(), match.id)
    return match


def join_match(match_id: int, account_id: int, now=None) -> Match:
    """Take the second seat, escrow the joiner's stake and start the clock."""
    now = now or utcnow()
    match = _get_match(match_id)
    if match.status in ('completed', 'cancelled'):
        raise MatchNotActive(f'Match {match_id} is {match.status}')
    if match.participant_for(account_id) is not None:
        raise AlreadyParticipant('You are already in this match')
    if match.status != 'waiting':
        raise MatchFull(f'Match {match_id} already has two players')

    prompt = pick_prompt()
    stake = match.stake_amount
    deadline = now + timedelta(seconds=match.duration_sec)
    try:
        started = db.session.execute(
            update(Match)
            .where(Match.id == match_id, Match.status == 'waiting')
            .values(status='in_progress', prompt_id=prompt.id, started_at=now, deadline_at=deadline)
        )
        if started.rowcount != 1:
            db.session.rollback()
            raise MatchFull(f'Match {match_id} already has two players')
        if not escrow.reserve(account_id, stake, match_id=match_id, commit=False).granted:
            # Undoes the status change too; the match stays waiting
            db.session.rollback()
            raise InsufficientFunds(f'Not enough credits to stake {stake}')
        db.session.add(Participant(match_id=match_id, account_id=account_id, joined_at=now))
        record_event(match_id, 'joined', account_id=account_id, prompt_id=prompt.id)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageFailure('Could not join match') from exc

    match = _get_match(match_id)
    current_app.logger.info(
        f"[match-join] match={match_id} account={account_id} prompt={prompt.id} deadline={match.deadline_at.isoformat()}"
    )
    broadcast_match_update(match_id, match.status)

    from lyricbattle.services.clock import schedule_match_clock
    schedule_match_clock(current_app._get_current_object(), match_id)
    return match


def submit_answer(match_id: int, account_id: int, text, submitted_at=None):
    """Record a participant's one and only answer, then check for settlement."""
    submitted_at = submitted_at or utcnow()
    match = _get_match(match_id)
    participant = match.participant_for(account_id)
    if participant is None:
        raise NotAParticipant('You are not a player in this match')
    if participant.submitted_at is not None:
        raise AlreadyAnswered('You have already answered in this match')
    if match.status != 'in_progress' or participant.timed_out:
        raise MatchNotActive(f'Match {match_id} is {match.status}')
    if match.deadline_at is not None and submitted_at > match.deadline_at:
        from lyricbattle.services.clock import expire_match
        expire_match(match_id, now=submitted_at)
        raise MatchNotActive('The answer window has closed')

    text = (text or '').strip()
    correct = is_correct_answer(text, match.prompt.answer if match.prompt else None)
    elapsed = max(0.0, (submitted_at - match.started_at).total_seconds())
    try:
        recorded = db.session.execute(
            update(Participant)
            .where(
                Participant.id == participant.id,
                Participant.submitted_at.is_(None),
                Participant.timed_out.is_(False),
                select(Match.id).where(Match.id == match_id, Match.status == 'in_progress').exists(),
            )
            .values(answer_text=text, submitted_at=submitted_at, is_correct=correct, elapsed_seconds=elapsed)
            .execution_options(synchronize_session=False)
        )
        if recorded.rowcount != 1:
            db.session.rollback()
            db.session.expire_all()
            match = _get_match(match_id)
            if match.status != 'in_progress':
                raise MatchNotActive(f'Match {match_id} is {match.status}')
            if match.participant_for(account_id).timed_out:
                raise MatchNotActive('The answer window has closed')
            raise AlreadyAnswered('You have already answered in this match')
        record_event(match_id, 'answered', account_id=account_id, elapsed_seconds=elapsed)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageFailure('Could not record answer') from exc

    current_app.logger.info(f"[match-answer] match={match_id} account={account_id} correct={correct} elapsed={elapsed:.3f}s")
    broadcast_match_update(match_id, 'in_progress')
    # Read after our own commit, so the last of two concurrent answers always sees both
    try:
        settle_if_decided(match_id, now=submitted_at)
    except StorageFailure:
        # The answer stands; the clock or the next trigger retries settlement
        current_app.logger.warning(f"[match-answer] match={match_id} settlement deferred after storage failure")
    return _get_match(match_id)


def cancel_match(match_id: int, account_id=None, reason='cancelled', now=None) -> Match:
    """Cancel a match still waiting for an opponent and refund its creator.

    ``account_id`` is None when the system cancels (lobby expiry); otherwise
    only the creator may cancel.
    """
    now = now or utcnow()
    match = _get_match(match_id)
    if account_id is not None and match.creator_id != account_id:
        raise NotAParticipant('Only the creator may cancel this match')
    if match.status == 'cancelled':
        return match
    if match.status != 'waiting':
        raise MatchNotActive('Only a match waiting for an opponent can be cancelled')

    stake = match.stake_amount
    creator_id = match.creator_id
    try:
        cancelled = db.session.execute(
            update(Match)
            .where(Match.id == match_id, Match.status == 'waiting')
            .values(status='cancelled', cancelled_at=now, outcome='refunded')
        )
        if cancelled.rowcount != 1:
            db.session.rollback()
            raise MatchNotActive('Only a match waiting for an opponent can be cancelled')
        escrow.release(creator_id, stake, match_id, commit=False)
        record_event(match_id, 'cancelled', account_id=account_id, reason=reason)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageFailure('Could not cancel match') from exc

    current_app.logger.info(f"[match-cancel] match={match_id} reason={reason} refunded={stake}")
    broadcast_match_update(match_id, 'cancelled')
    return _get_match(match_id)


def get_match_view(match_id: int, viewer_id=None, now=None) -> dict:
    """Current view of a match.

    An overdue deadline is enforced first, and a settlement claim whose
    lease has lapsed is taken over, so a read never shows a stuck match.
    """
    now = now or utcnow()
    match = _get_match(match_id)
    if match.status == 'in_progress' and match.deadline_at is not None and now >= match.deadline_at:
        from lyricbattle.services.clock import expire_match
        expire_match(match_id, now=now)
        match = _get_match(match_id)
    elif match.status == 'settling' and _claim_expired(match, now):
        current_app.logger.info(f"[match-view] match={match_id} settling claim expired; resettling")
        settle_if_decided(match_id, now=now)
        match = _get_match(match_id)
    return match.to_dict(viewer_id=viewer_id)


def _claim_expired(match: Match, now) -> bool:
    lease = timedelta(seconds=float(current_app.config.get('SETTLEMENT_LEASE_SEC', 30)))
    return match.settling_since is None or match.settling_since <= now - lease


def list_open_matches(limit: int = 50):
    return (
        Match.query.filter_by(status='waiting')
        .order_by(Match.created_at.desc())
        .limit(limit)
        .all()
    )


def list_active_matches(account_id: int):
    return (
        Match.query.join(Participant)
        .filter(Participant.account_id == account_id, Match.status.in_(['waiting', 'in_progress', 'settling']))
        .order_by(Match.created_at.desc())
        .all()
    )
