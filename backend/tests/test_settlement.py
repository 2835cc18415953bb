import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from lyricbattle import db
from lyricbattle.errors import MatchNotActive, StorageFailure
from lyricbattle.models import (
    Account, AccountStatistics, LedgerEntry, Match, MatchAnalytics, MatchEvent, Prompt,
)
from lyricbattle.services import ledger, registry, settlement
from lyricbattle.services.clock import sweep_matches
from lyricbattle.services.settlement import compute_payout, expected_score, settle

T0 = datetime(2026, 1, 1, 12, 0, 0)


def at(seconds):
    return T0 + timedelta(seconds=seconds)


def test_compute_payout_rounds_fee_down():
    assert compute_payout(100, 1000) == (200, 20, 180)
    assert compute_payout(15, 250) == (30, 0, 30)
    assert compute_payout(33, 1000) == (66, 6, 60)
    assert compute_payout(50, 0) == (100, 0, 100)


def test_correct_answer_beats_incorrect_answer(flask_app, started_match):
    mid, alice, bob = started_match['match_id'], started_match['alice'], started_match['bob']

    registry.submit_answer(mid, alice, 'sunshine', submitted_at=at(3))
    assert db.session.get(Match, mid).status == 'in_progress'
    match = registry.submit_answer(mid, bob, 'sunset', submitted_at=at(7))

    assert match.status == 'completed'
    assert match.outcome == 'win'
    assert match.winner_id == alice
    assert (match.pot_amount, match.fee_amount, match.payout_amount) == (200, 20, 180)
    assert ledger.balance_of(alice) == 150 + 180
    assert ledger.balance_of(bob) == 150
    win = LedgerEntry.query.filter_by(match_id=mid, category='win_credit').one()
    assert (win.account_id, win.amount) == (alice, 180)


def test_money_is_conserved(flask_app, started_match):
    mid, alice, bob = started_match['match_id'], started_match['alice'], started_match['bob']
    registry.submit_answer(mid, alice, 'sunshine', submitted_at=at(3))
    registry.submit_answer(mid, bob, 'sunset', submitted_at=at(7))

    match = db.session.get(Match, mid)
    assert match.payout_amount + match.fee_amount == 2 * match.stake_amount
    assert ledger.balance_of(alice) + ledger.balance_of(bob) + match.fee_amount == 500
    assert ledger.reconcile(alice)['balanced']
    assert ledger.reconcile(bob)['balanced']


def test_both_correct_faster_wins(flask_app, started_match):
    mid, alice, bob = started_match['match_id'], started_match['alice'], started_match['bob']
    registry.submit_answer(mid, bob, 'Sunshine', submitted_at=at(4.2))
    match = registry.submit_answer(mid, alice, 'sunshine', submitted_at=at(6.1))
    assert match.winner_id == bob
    assert ledger.balance_of(bob) == 330
    assert ledger.balance_of(alice) == 150


def test_identical_times_push_refunds_both(flask_app, started_match):
    mid, alice, bob = started_match['match_id'], started_match['alice'], started_match['bob']
    registry.submit_answer(mid, alice, 'sunshine', submitted_at=at(5))
    match = registry.submit_answer(mid, bob, 'sunshine', submitted_at=at(5))

    assert match.status == 'completed'
    assert match.outcome == 'push'
    assert match.winner_id is None
    assert match.fee_amount == 0
    assert ledger.balance_of(alice) == 250
    assert ledger.balance_of(bob) == 250
    assert LedgerEntry.query.filter_by(match_id=mid, category='stake_refund').count() == 2


def test_no_winner_stakes_kept_by_house(flask_app, started_match):
    mid, alice, bob = started_match['match_id'], started_match['alice'], started_match['bob']
    registry.submit_answer(mid, alice, 'moonlight', submitted_at=at(2))
    match = registry.submit_answer(mid, bob, 'sunset', submitted_at=at(3))

    assert match.outcome == 'no_winner'
    assert (match.pot_amount, match.fee_amount, match.payout_amount) == (200, 200, 0)
    assert ledger.balance_of(alice) == 150
    assert ledger.balance_of(bob) == 150
    assert LedgerEntry.query.filter_by(match_id=mid, category='stake_refund').count() == 0


def test_no_winner_refund_policy(flask_app, make_account):
    flask_app.config['REFUND_ON_NO_WINNER'] = True
    alice = make_account('alice')
    bob = make_account('bob')
    match = registry.create_match(alice, 100, now=T0)
    registry.join_match(match.id, bob, now=T0)
    # Frozen at creation; flipping it back must not matter
    flask_app.config['REFUND_ON_NO_WINNER'] = False

    registry.submit_answer(match.id, alice, 'moonlight', submitted_at=at(2))
    match = registry.submit_answer(match.id, bob, 'sunset', submitted_at=at(3))
    assert match.outcome == 'no_winner'
    assert match.fee_amount == 0
    assert ledger.balance_of(alice) == 250
    assert ledger.balance_of(bob) == 250


def test_rake_change_mid_match_does_not_apply(flask_app, started_match):
    mid, alice, bob = started_match['match_id'], started_match['alice'], started_match['bob']
    flask_app.config['RAKE_PERCENT'] = 50
    registry.submit_answer(mid, alice, 'sunshine', submitted_at=at(3))
    match = registry.submit_answer(mid, bob, 'sunset', submitted_at=at(7))
    assert match.fee_amount == 20
    assert ledger.balance_of(alice) == 330


def test_settle_is_exactly_once(flask_app, started_match):
    mid, alice, bob = started_match['match_id'], started_match['alice'], started_match['bob']
    registry.submit_answer(mid, alice, 'sunshine', submitted_at=at(3))
    registry.submit_answer(mid, bob, 'sunset', submitted_at=at(7))

    for _ in range(5):
        assert settle(mid, now=at(8)).outcome == 'already_settled'
    assert ledger.balance_of(alice) == 330
    assert LedgerEntry.query.filter_by(match_id=mid, category='win_credit').count() == 1
    assert MatchEvent.query.filter_by(match_id=mid, event_type='settled').count() == 1


def test_settle_pending_while_slots_open(flask_app, started_match):
    mid, alice = started_match['match_id'], started_match['alice']
    registry.submit_answer(mid, alice, 'sunshine', submitted_at=at(3))
    result = settle(mid, now=at(10))
    assert result.outcome == 'pending'
    assert result.match.status == 'in_progress'


def test_settle_refuses_waiting_match(flask_app, make_account):
    alice = make_account('alice')
    match = registry.create_match(alice, 100, now=T0)
    with pytest.raises(MatchNotActive):
        settle(match.id, now=at(1))


def test_live_claim_blocks_second_settler(flask_app, started_match, monkeypatch):
    mid, alice, bob = started_match['match_id'], started_match['alice'], started_match['bob']
    monkeypatch.setattr(registry, 'settle_if_decided', lambda *a, **kw: None)
    registry.submit_answer(mid, alice, 'sunshine', submitted_at=at(3))
    registry.submit_answer(mid, bob, 'sunset', submitted_at=at(7))

    # Someone else claimed it a moment ago
    db.session.execute(update(Match).where(Match.id == mid).values(status='settling', settling_since=at(8)))
    db.session.commit()

    result = settle(mid, now=at(9))
    assert result.outcome == 'conflict'
    assert ledger.balance_of(alice) == 150
    assert LedgerEntry.query.filter_by(match_id=mid, category='win_credit').count() == 0


def test_expired_claim_is_taken_over(flask_app, started_match, monkeypatch):
    mid, alice, bob = started_match['match_id'], started_match['alice'], started_match['bob']
    monkeypatch.setattr(registry, 'settle_if_decided', lambda *a, **kw: None)
    registry.submit_answer(mid, alice, 'sunshine', submitted_at=at(3))
    registry.submit_answer(mid, bob, 'sunset', submitted_at=at(7))

    # A settler that crashed after claiming
    db.session.execute(update(Match).where(Match.id == mid).values(status='settling', settling_since=at(8)))
    db.session.commit()

    counts = sweep_matches(now=at(8 + 31))
    assert counts['resettled'] == 1
    match = db.session.get(Match, mid)
    assert match.status == 'completed'
    assert ledger.balance_of(alice) == 330


def test_failed_settlement_rolls_back_and_releases_claim(flask_app, started_match, monkeypatch):
    mid, alice, bob = started_match['match_id'], started_match['alice'], started_match['bob']

    def broken_credit(*args, **kwargs):
        raise OperationalError('UPDATE account', {}, Exception('disk I/O error'))

    monkeypatch.setattr(settlement.ledger, 'credit', broken_credit)
    registry.submit_answer(mid, alice, 'sunshine', submitted_at=at(3))
    # The answer is kept even though settlement fails
    registry.submit_answer(mid, bob, 'sunset', submitted_at=at(7))

    db.session.expire_all()
    match = db.session.get(Match, mid)
    assert match.status == 'in_progress'
    assert match.settling_since is None
    assert match.participant_for(bob).answer_text == 'sunset'
    assert ledger.balance_of(alice) == 150
    assert ledger.balance_of(bob) == 150
    assert db.session.get(Account, alice).games_played == 0

    with pytest.raises(StorageFailure):
        settle(mid, now=at(8))

    monkeypatch.undo()
    result = settle(mid, now=at(9))
    assert result.outcome == 'settled'
    assert ledger.balance_of(alice) == 330
    assert ledger.reconcile(alice)['balanced']


def test_counters_and_statistics_after_win(flask_app, started_match):
    mid, alice, bob = started_match['match_id'], started_match['alice'], started_match['bob']
    registry.submit_answer(mid, alice, 'sunshine', submitted_at=at(3))
    registry.submit_answer(mid, bob, 'sunset', submitted_at=at(7))

    db.session.expire_all()
    winner = db.session.get(Account, alice)
    loser = db.session.get(Account, bob)
    assert (winner.games_played, winner.total_wins, winner.win_streak, winner.longest_win_streak) == (1, 1, 1, 1)
    assert (loser.games_played, loser.total_wins, loser.win_streak) == (1, 0, 0)
    assert winner.elo_rating == 1216
    assert loser.elo_rating == 1184

    match = db.session.get(Match, mid)
    assert match.analytics_recorded is True
    analytics = MatchAnalytics.query.filter_by(match_id=mid).one()
    assert analytics.total_players == 2
    assert analytics.average_response_time == pytest.approx(5.0)
    assert analytics.completion_rate == pytest.approx(100.0)

    prompt = db.session.get(Prompt, match.prompt_id)
    assert (prompt.times_played, prompt.times_won) == (1, 1)

    stats = AccountStatistics.query.filter_by(account_id=alice).one()
    assert stats.fastest_correct_answer == pytest.approx(3.0)
    assert stats.total_credits_earned == 180
    assert AccountStatistics.query.filter_by(account_id=bob).one().fastest_correct_answer is None


def test_statistics_failure_does_not_undo_settlement(flask_app, started_match, monkeypatch):
    mid, alice, bob = started_match['match_id'], started_match['alice'], started_match['bob']

    def broken_elo(*args, **kwargs):
        raise RuntimeError('rating service down')

    monkeypatch.setattr(settlement, '_update_elo', broken_elo)
    registry.submit_answer(mid, alice, 'sunshine', submitted_at=at(3))
    registry.submit_answer(mid, bob, 'sunset', submitted_at=at(7))

    db.session.expire_all()
    match = db.session.get(Match, mid)
    assert match.status == 'completed'
    assert match.analytics_recorded is False
    assert ledger.balance_of(alice) == 330
    assert MatchAnalytics.query.count() == 0

    monkeypatch.undo()
    assert sweep_matches(now=at(60))['statistics'] == 1
    db.session.expire_all()
    assert db.session.get(Match, mid).analytics_recorded is True
    assert db.session.get(Account, alice).elo_rating == 1216


def test_win_streak_resets_on_loss(flask_app, make_account):
    alice = make_account('alice', credits=1000)
    bob = make_account('bob', credits=1000)

    def play(alice_answer, start):
        match = registry.create_match(alice, 10, now=start)
        registry.join_match(match.id, bob, now=start)
        registry.submit_answer(match.id, alice, alice_answer, submitted_at=start + timedelta(seconds=1))
        registry.submit_answer(match.id, bob, 'sunshine', submitted_at=start + timedelta(seconds=2))

    play('sunshine', T0)
    play('sunshine', T0 + timedelta(minutes=5))
    play('nope', T0 + timedelta(minutes=10))

    db.session.expire_all()
    account = db.session.get(Account, alice)
    assert account.total_wins == 2
    assert account.win_streak == 0
    assert account.longest_win_streak == 2
    assert account.games_played == 3


def test_expected_score_is_symmetric():
    assert expected_score(1200, 1200) == pytest.approx(0.5)
    assert expected_score(1400, 1200) + expected_score(1200, 1400) == pytest.approx(1.0)


def test_concurrent_settlers_pay_once(file_app, monkeypatch):
    alice = ledger.open_account('alice', 'password', 250).id
    bob = ledger.open_account('bob', 'password', 250).id
    match = registry.create_match(alice, 100, now=T0)
    mid = match.id
    registry.join_match(mid, bob, now=T0)
    monkeypatch.setattr(registry, 'settle_if_decided', lambda *a, **kw: None)
    registry.submit_answer(mid, alice, 'sunshine', submitted_at=at(3))
    registry.submit_answer(mid, bob, 'sunset', submitted_at=at(7))
    db.session.remove()

    outcomes = []
    lock = threading.Lock()

    def worker():
        with file_app.app_context():
            try:
                outcome = settle(mid, now=at(8)).outcome
            except StorageFailure:
                outcome = 'storage_failure'
            finally:
                db.session.remove()
            with lock:
                outcomes.append(outcome)

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes.count('settled') <= 1
    # Whatever contention happened, one more pass finishes the job exactly once
    settle(mid, now=at(8 + 31))
    assert db.session.get(Match, mid).status == 'completed'
    assert ledger.balance_of(alice) == 330
    assert ledger.balance_of(bob) == 150
    assert LedgerEntry.query.filter_by(match_id=mid, category='win_credit').count() == 1
    assert ledger.reconcile(alice)['balanced']


def test_simultaneous_answers_still_settle(file_app):
    alice = ledger.open_account('alice', 'password', 250).id
    bob = ledger.open_account('bob', 'password', 250).id
    mid = registry.create_match(alice, 100, now=T0).id
    registry.join_match(mid, bob, now=T0)
    db.session.remove()

    barrier = threading.Barrier(2)
    errors = []
    lock = threading.Lock()

    def worker(account_id, text, seconds):
        with file_app.app_context():
            barrier.wait()
            try:
                registry.submit_answer(mid, account_id, text, submitted_at=at(seconds))
            except Exception as exc:
                with lock:
                    errors.append(exc)
            finally:
                db.session.remove()

    threads = [
        threading.Thread(target=worker, args=(alice, 'sunshine', 3)),
        threading.Thread(target=worker, args=(bob, 'sunset', 7)),
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    # Whichever answer committed last saw both slots decided and settled
    match = db.session.get(Match, mid)
    assert match.status == 'completed'
    assert match.winner_id == alice
    assert LedgerEntry.query.filter_by(match_id=mid, category='win_credit').count() == 1
    assert ledger.balance_of(alice) == 330
    assert ledger.balance_of(bob) == 150
