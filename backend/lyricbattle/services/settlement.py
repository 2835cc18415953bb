"""Match settlement: resolve the winner and move the money exactly once.

A settler first claims the match with a compare-and-set from ``in_progress``
to ``settling`` and commits the claim. The financial work (credits, refunds,
counters, closing the match) then runs as one transaction that ends in a
fenced update which only succeeds while that same claim is still current.
If the transaction fails the claim is handed back so a later trigger can
retry. Statistics are written afterwards in their own transaction and never
affect the outcome.
"""

from collections import namedtuple
from datetime import timedelta

from flask import current_app
from sqlalchemy import and_, case, or_, update
from sqlalchemy.exc import SQLAlchemyError

from lyricbattle import db
from lyricbattle.errors import MatchNotActive, MatchNotFound, SettlementConflict, StorageFailure
from lyricbattle.models import (
    Account, AccountStatistics, Match, MatchAnalytics, Participant, Prompt, record_event, utcnow,
)
from lyricbattle.services import escrow, ledger
from lyricbattle.services.judge import judge
from lyricbattle.socketio_events import broadcast_match_update

SettlementResult = namedtuple('SettlementResult', ['outcome', 'match', 'verdict'])


def compute_payout(stake: int, rake_bps: int):
    """Return (pot, fee, payout); the fee is rounded down."""
    pot = stake * 2
    fee = pot * rake_bps // 10000
    return pot, fee, pot - fee


def slots_decided(match: Match, now=None) -> bool:
    """True once every slot is answered or timed out, or the deadline has passed."""
    if len(match.participants) != 2:
        return False
    if all(p.decided for p in match.participants):
        return True
    now = now or utcnow()
    return match.deadline_at is not None and now >= match.deadline_at


def settle_if_decided(match_id: int, now=None):
    """The shared trigger used after submissions, on clock expiry and on reads."""
    match = db.session.get(Match, match_id)
    if match is None or match.status not in ('in_progress', 'settling'):
        return None
    if not slots_decided(match, now):
        return None
    return settle(match_id, now=now)


def settle(match_id: int, now=None) -> SettlementResult:
    """Settle a match. Safe to call any number of times, concurrently.

    Returns outcome ``settled`` for the call that did the work,
    ``already_settled`` when the match is completed, ``conflict`` when
    another caller holds the claim and ``pending`` when slots are still open.
    """
    now = now or utcnow()
    match = db.session.get(Match, match_id)
    if match is None:
        raise MatchNotFound(f'Match {match_id} not found')
    if match.status == 'completed':
        return SettlementResult('already_settled', match, None)
    if match.status not in ('in_progress', 'settling'):
        raise MatchNotActive(f'Match {match_id} is {match.status}')
    if not slots_decided(match, now):
        return SettlementResult('pending', match, None)

    try:
        _claim(match_id, now)
    except SettlementConflict:
        db.session.expire_all()
        match = db.session.get(Match, match_id)
        current_app.logger.info(f"[settle-conflict] match={match_id} status={match.status}")
        if match.status == 'completed':
            return SettlementResult('already_settled', match, None)
        return SettlementResult('conflict', match, None)

    try:
        verdict = _apply_settlement(match_id, now)
        db.session.commit()
    except SettlementConflict:
        db.session.rollback()
        current_app.logger.warning(f"[settle-fenced] match={match_id} claim was taken over mid-settlement")
        return SettlementResult('conflict', db.session.get(Match, match_id), None)
    except (SQLAlchemyError, StorageFailure) as exc:
        db.session.rollback()
        _release_claim(match_id, now)
        current_app.logger.error(f"[settle-failed] match={match_id} error={exc!r}; claim released")
        if isinstance(exc, StorageFailure):
            raise
        raise StorageFailure(f'Settlement of match {match_id} failed') from exc

    match = db.session.get(Match, match_id)
    current_app.logger.info(
        f"[settle] match={match_id} outcome={verdict.outcome} winner={verdict.winner_id} "
        f"pot={match.pot_amount} fee={match.fee_amount} payout={match.payout_amount}"
    )
    broadcast_match_update(match_id, match.status)
    record_statistics(match_id)
    return SettlementResult('settled', match, verdict)


def _claim(match_id: int, now) -> None:
    lease = timedelta(seconds=float(current_app.config.get('SETTLEMENT_LEASE_SEC', 30)))
    try:
        result = db.session.execute(
            update(Match)
            .where(
                Match.id == match_id,
                or_(
                    Match.status == 'in_progress',
                    and_(Match.status == 'settling', Match.settling_since <= now - lease),
                ),
            )
            .values(status='settling', settling_since=now)
        )
        if result.rowcount != 1:
            db.session.rollback()
            raise SettlementConflict(match_id)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageFailure(f'Could not claim match {match_id} for settlement') from exc


def _release_claim(match_id: int, claimed_at) -> None:
    try:
        db.session.execute(
            update(Match)
            .where(Match.id == match_id, Match.status == 'settling', Match.settling_since == claimed_at)
            .values(status='in_progress', settling_since=None)
        )
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        # The lease expiry lets the sweep reclaim it instead
        current_app.logger.exception(f"[settle-release-failed] match={match_id}")


def _apply_settlement(match_id: int, claimed_at):
    match = db.session.get(Match, match_id)

    # Slots still open at this point are past the deadline
    db.session.execute(
        update(Participant)
        .where(
            Participant.match_id == match_id,
            Participant.submitted_at.is_(None),
            Participant.timed_out.is_(False),
        )
        .values(timed_out=True, is_correct=False, elapsed_seconds=match.duration_sec)
    )
    db.session.expire(match, ['participants'])
    participants = list(match.participants)
    for p in participants:
        db.session.refresh(p)

    verdict = judge(participants)
    stake = match.stake_amount
    pot, fee, payout = compute_payout(stake, match.rake_bps)

    if verdict.outcome == 'win':
        ledger.credit(verdict.winner_id, payout, 'win_credit', match_id=match_id,
                      description=f'Won match {match_id}', commit=False)
        _bump_counters(verdict.winner_id, won=True)
        for p in participants:
            if p.account_id != verdict.winner_id:
                _bump_counters(p.account_id, won=False)
    else:
        refund = verdict.outcome == 'push' or match.refund_on_no_winner
        for p in participants:
            if refund:
                escrow.release(p.account_id, stake, match_id, commit=False)
            _bump_counters(p.account_id, won=False)
        if refund:
            fee, payout = 0, 0
        else:
            # Forfeited stakes stay with the house
            fee, payout = pot, 0

    closed = db.session.execute(
        update(Match)
        .where(Match.id == match_id, Match.status == 'settling', Match.settling_since == claimed_at)
        .values(
            status='completed',
            winner_id=verdict.winner_id,
            outcome=verdict.outcome,
            completed_at=claimed_at,
            pot_amount=pot,
            fee_amount=fee,
            payout_amount=payout,
        )
    )
    if closed.rowcount != 1:
        raise SettlementConflict(match_id)
    record_event(match_id, 'settled', outcome=verdict.outcome, winner_id=verdict.winner_id,
                 pot=pot, fee=fee, payout=payout)
    return verdict


def _bump_counters(account_id: int, won: bool) -> None:
    if won:
        values = {
            'games_played': Account.games_played + 1,
            'total_wins': Account.total_wins + 1,
            'win_streak': Account.win_streak + 1,
            'longest_win_streak': case(
                (Account.win_streak + 1 > Account.longest_win_streak, Account.win_streak + 1),
                else_=Account.longest_win_streak,
            ),
        }
    else:
        values = {'games_played': Account.games_played + 1, 'win_streak': 0}
    db.session.execute(update(Account).where(Account.id == account_id).values(**values))


def expected_score(rating: int, opponent: int) -> float:
    return 1.0 / (1.0 + 10 ** ((opponent - rating) / 400.0))


def record_statistics(match_id: int) -> bool:
    """Write analytics, prompt, per-player statistics and Elo for a completed match.

    Advisory only: failures are logged, rolled back and left for the sweep
    to retry via ``analytics_recorded``.
    """
    try:
        match = db.session.get(Match, match_id)
        if match is None or match.status != 'completed' or match.analytics_recorded:
            return False
        participants = list(match.participants)

        answered = [p for p in participants if p.submitted_at is not None]
        times = [p.elapsed_seconds for p in answered if p.elapsed_seconds is not None]
        db.session.add(MatchAnalytics(
            match_id=match.id,
            prompt_id=match.prompt_id,
            total_players=len(participants),
            average_response_time=round(sum(times) / len(times), 3) if times else None,
            completion_rate=100.0 * len(answered) / len(participants) if participants else None,
        ))

        if match.prompt_id:
            db.session.execute(
                update(Prompt)
                .where(Prompt.id == match.prompt_id)
                .values(
                    times_played=Prompt.times_played + 1,
                    times_won=Prompt.times_won + (1 if match.winner_id else 0),
                )
            )

        for p in participants:
            stats = AccountStatistics.query.filter_by(account_id=p.account_id).first()
            if stats is None:
                stats = AccountStatistics(account_id=p.account_id, answers_count=0, total_credits_earned=0)
                db.session.add(stats)
            if p.submitted_at is not None and p.elapsed_seconds is not None:
                prev_avg = stats.average_response_time or 0.0
                stats.average_response_time = round(
                    (prev_avg * stats.answers_count + p.elapsed_seconds) / (stats.answers_count + 1), 3
                )
                stats.answers_count += 1
                if p.is_correct and (stats.fastest_correct_answer is None
                                     or p.elapsed_seconds < stats.fastest_correct_answer):
                    stats.fastest_correct_answer = p.elapsed_seconds
            if p.account_id == match.winner_id:
                stats.total_credits_earned += match.payout_amount or 0
            stats.last_played_at = match.completed_at

        if match.winner_id:
            _update_elo(match, participants)

        match.analytics_recorded = True
        db.session.commit()
        return True
    except Exception:
        db.session.rollback()
        current_app.logger.exception(f"[stats-failed] match={match_id}; will retry on next sweep")
        return False


def _update_elo(match: Match, participants) -> None:
    k = int(current_app.config.get('ELO_K_FACTOR', 32))
    winner = next(p.account for p in participants if p.account_id == match.winner_id)
    loser = next(p.account for p in participants if p.account_id != match.winner_id)
    w_rating, l_rating = winner.elo_rating, loser.elo_rating
    delta = int(round(k * (1.0 - expected_score(w_rating, l_rating))))
    db.session.execute(update(Account).where(Account.id == winner.id).values(elo_rating=Account.elo_rating + delta))
    db.session.execute(update(Account).where(Account.id == loser.id).values(elo_rating=Account.elo_rating - delta))
