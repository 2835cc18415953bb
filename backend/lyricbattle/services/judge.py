"""Winner determination. Pure: no database, no clock."""

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class Verdict:
    outcome: str  # win, push, no_winner
    winner_id: Optional[int] = None


def normalize_answer(text) -> str:
    return (text or '').strip().lower()


def is_correct_answer(text, accepted) -> bool:
    """Exact match after trimming and lower-casing both sides."""
    if text is None:
        return False
    return normalize_answer(text) == normalize_answer(accepted)


def judge(participants) -> Verdict:
    """Decide a two-player match.

    Each participant needs ``account_id``, ``is_correct`` and
    ``elapsed_seconds``; unanswered or timed-out slots count as incorrect.

    - exactly one correct: that player wins
    - both correct: strictly faster player wins, identical times are a push
    - neither correct: no winner
    """
    if len(participants) != 2:
        raise ValueError(f'a match is judged between exactly two participants, got {len(participants)}')

    correct = [p for p in participants if p.is_correct]
    if len(correct) == 1:
        return Verdict('win', correct[0].account_id)
    if len(correct) == 2:
        a, b = correct
        if a.elapsed_seconds < b.elapsed_seconds:
            return Verdict('win', a.account_id)
        if b.elapsed_seconds < a.elapsed_seconds:
            return Verdict('win', b.account_id)
        return Verdict('push')
    return Verdict('no_winner')
