from types import SimpleNamespace

import pytest

from lyricbattle.services.judge import Verdict, is_correct_answer, judge, normalize_answer


def slot(account_id, correct, elapsed):
    return SimpleNamespace(account_id=account_id, is_correct=correct, elapsed_seconds=elapsed)


def test_answer_matching_ignores_case_and_padding():
    assert normalize_answer('  SunShine ') == 'sunshine'
    assert is_correct_answer(' SUNSHINE', 'sunshine')
    assert not is_correct_answer('sunset', 'sunshine')
    assert not is_correct_answer(None, 'sunshine')
    assert not is_correct_answer('', 'sunshine')


def test_single_correct_answer_wins_regardless_of_speed():
    assert judge([slot(1, True, 9.5), slot(2, False, 1.0)]) == Verdict('win', 1)
    assert judge([slot(1, False, 2.0), slot(2, True, 29.0)]) == Verdict('win', 2)


def test_both_correct_faster_wins():
    assert judge([slot(1, True, 4.2), slot(2, True, 6.1)]) == Verdict('win', 1)
    assert judge([slot(1, True, 6.1), slot(2, True, 4.2)]) == Verdict('win', 2)


def test_identical_times_are_a_push():
    verdict = judge([slot(1, True, 5.0), slot(2, True, 5.0)])
    assert verdict.outcome == 'push'
    assert verdict.winner_id is None


def test_timed_out_slots_count_as_incorrect():
    # is_correct is None for a slot nobody answered
    assert judge([slot(1, None, None), slot(2, False, 30.0)]) == Verdict('no_winner')
    assert judge([slot(1, None, 30.0), slot(2, True, 12.0)]) == Verdict('win', 2)


def test_judge_requires_two_participants():
    with pytest.raises(ValueError):
        judge([slot(1, True, 1.0)])
