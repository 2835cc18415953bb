"""Server-side match clock.

The answer window is enforced here, not by the client's countdown: a worker
sleeps until ``deadline_at`` and then times out any open slot, so a
disconnected player can never stall settlement. ``sweep_matches`` covers
anything the in-process timers missed (restarts, crashed settlers).
"""

import time
from datetime import timedelta
from typing import Set, Tuple

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from lyricbattle import db, socketio
from lyricbattle.errors import GameError, StorageFailure
from lyricbattle.models import Match, Participant, record_event, utcnow
from lyricbattle.services.settlement import record_statistics, settle, settle_if_decided


_scheduled_clock_keys: Set[Tuple[int, str]] = set()


def schedule_match_clock(app, match_id: int) -> None:
    """Time out the answer window of an in-progress match at its deadline.

    - No-ops in TESTING mode unless ENABLE_CLOCK_IN_TESTS is set
    - Ensures a single timer per (match_id, 'answer_window')
    """
    with app.app_context():
        match = db.session.get(Match, match_id)
        if not match or match.status != 'in_progress' or not match.deadline_at:
            return
        delay = max(0.0, (match.deadline_at - utcnow()).total_seconds())
    _start_timer(app, (match_id, 'answer_window'), delay, expire_match)


def schedule_waiting_expiry(app, match_id: int) -> None:
    """Cancel and refund a match nobody joined within WAITING_EXPIRY_SEC."""
    with app.app_context():
        match = db.session.get(Match, match_id)
        if not match or match.status != 'waiting':
            return
        expires_at = match.created_at + timedelta(seconds=float(app.config.get('WAITING_EXPIRY_SEC', 600)))
        delay = max(0.0, (expires_at - utcnow()).total_seconds())
    _start_timer(app, (match_id, 'waiting'), delay, expire_waiting_match)


def _start_timer(app, key, delay: float, fire) -> None:
    if app.config.get('TESTING') and not app.config.get('ENABLE_CLOCK_IN_TESTS'):
        return

    if key in _scheduled_clock_keys:
        app.logger.info(f"[clock-skip] match={key[0]} kind={key[1]} already scheduled")
        return
    _scheduled_clock_keys.add(key)
    app.logger.info(f"[clock-set] match={key[0]} kind={key[1]} delay={delay:.1f}s")

    def _worker(mid: int, kind: str, delay: float):
        hb = int(app.config.get('CLOCK_HEARTBEAT_SEC', 0) or 0)
        if hb > 0:
            slept = 0.0
            while slept < delay:
                step = min(hb, delay - slept)
                time.sleep(step)
                slept += step
                app.logger.info(f"[clock-heartbeat] match={mid} kind={kind} remaining={max(0.0, delay - slept):.1f}s")
        else:
            time.sleep(delay)
        with app.app_context():
            _scheduled_clock_keys.discard((mid, kind))
            app.logger.info(f"[clock-fire] match={mid} kind={kind}")
            try:
                fire(mid)
            except GameError as exc:
                # Storage trouble or a state change that beat us; the sweep picks up leftovers
                app.logger.warning(f"[clock-abort] match={mid} kind={kind} error={exc!r}")
            except Exception:
                db.session.rollback()
                app.logger.exception(f"[clock-abort] match={mid} kind={kind}")

    if app.config.get('TESTING'):
        _worker(key[0], key[1], delay)
    else:
        socketio.start_background_task(_worker, key[0], key[1], delay)


def expire_match(match_id: int, now=None):
    """Close the answer window: synthesize a non-answer for every open slot, then settle."""
    now = now or utcnow()
    match = db.session.get(Match, match_id)
    if match is None or match.status != 'in_progress':
        return None
    if match.deadline_at is not None and now < match.deadline_at:
        current_app.logger.info(f"[clock-early] match={match_id} deadline={match.deadline_at.isoformat()}")
        return None

    open_slots = [p.account_id for p in match.participants if not p.decided]
    try:
        db.session.execute(
            update(Participant)
            .where(
                Participant.match_id == match_id,
                Participant.submitted_at.is_(None),
                Participant.timed_out.is_(False),
            )
            .values(timed_out=True, is_correct=False, elapsed_seconds=match.duration_sec)
            .execution_options(synchronize_session=False)
        )
        for account_id in open_slots:
            record_event(match_id, 'timed_out', account_id=account_id)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageFailure(f'Could not expire match {match_id}') from exc

    current_app.logger.info(f"[clock-expire] match={match_id} timed_out={open_slots}")
    return settle_if_decided(match_id, now=now)


def expire_waiting_match(match_id: int, now=None):
    from lyricbattle.services.registry import cancel_match

    match = db.session.get(Match, match_id)
    if match is None or match.status != 'waiting':
        return None
    return cancel_match(match_id, reason='expired', now=now)


def sweep_matches(now=None) -> dict:
    """Recovery pass over every match a timer should have handled."""
    from lyricbattle.services.registry import cancel_match

    now = now or utcnow()
    counts = {'expired': 0, 'cancelled': 0, 'resettled': 0, 'statistics': 0}

    waiting_cutoff = now - timedelta(seconds=float(current_app.config.get('WAITING_EXPIRY_SEC', 600)))
    stale = Match.query.filter(Match.status == 'waiting', Match.created_at <= waiting_cutoff).all()
    for match_id in [m.id for m in stale]:
        try:
            cancel_match(match_id, reason='expired', now=now)
            counts['cancelled'] += 1
        except GameError as exc:
            current_app.logger.warning(f"[sweep] cancel match={match_id} failed: {exc!r}")

    overdue = Match.query.filter(Match.status == 'in_progress', Match.deadline_at <= now).all()
    for match_id in [m.id for m in overdue]:
        try:
            expire_match(match_id, now=now)
            counts['expired'] += 1
        except GameError as exc:
            current_app.logger.warning(f"[sweep] expire match={match_id} failed: {exc!r}")

    lease_cutoff = now - timedelta(seconds=float(current_app.config.get('SETTLEMENT_LEASE_SEC', 30)))
    abandoned = Match.query.filter(Match.status == 'settling', Match.settling_since <= lease_cutoff).all()
    for match_id in [m.id for m in abandoned]:
        try:
            if settle(match_id, now=now).outcome == 'settled':
                counts['resettled'] += 1
        except GameError as exc:
            current_app.logger.warning(f"[sweep] settle match={match_id} failed: {exc!r}")

    pending_stats = Match.query.filter(Match.status == 'completed', Match.analytics_recorded.is_(False)).all()
    for match_id in [m.id for m in pending_stats]:
        if record_statistics(match_id):
            counts['statistics'] += 1

    current_app.logger.info(f"[sweep] {counts}")
    return counts


_sweeper_started = False


def run_sweep_pass(app):
    """One sweep inside its own app context; errors are logged, never raised."""
    with app.app_context():
        try:
            return sweep_matches()
        except Exception:
            db.session.rollback()
            app.logger.exception("[sweep] pass failed; retrying next interval")
            return None


def start_sweeper(app) -> bool:
    """Run ``sweep_matches`` every SWEEP_INTERVAL_SEC for the life of the process.

    Recovers matches whose timers were lost on restart and settlement
    claims whose settler died. Disabled in TESTING and when the interval is 0.
    """
    global _sweeper_started
    interval = float(app.config.get('SWEEP_INTERVAL_SEC', 30) or 0)
    if app.config.get('TESTING') or interval <= 0 or _sweeper_started:
        return False
    _sweeper_started = True
    app.logger.info(f"[sweep-start] interval={interval:.1f}s")

    def _loop():
        while True:
            time.sleep(interval)
            run_sweep_pass(app)

    socketio.start_background_task(_loop)
    return True
