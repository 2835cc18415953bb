"""Stake escrow: the atomic debit and the idempotent refund.

``reserve`` is one conditional ``UPDATE ... WHERE balance >= amount``; the
store serialises concurrent updates of the same row, so two reserves can
never both pass the check against the same credits.
"""

from collections import namedtuple

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from lyricbattle import db
from lyricbattle.errors import InvalidStake, StorageFailure
from lyricbattle.models import Account, LedgerEntry
from lyricbattle.services.ledger import append_entry

ReserveResult = namedtuple('ReserveResult', ['granted'])


def reserve(account_id: int, amount: int, match_id=None, commit=True) -> ReserveResult:
    """Debit ``amount`` if the balance covers it.

    Insufficient funds is a normal ``granted=False`` result with no side
    effect. With ``commit=False`` the debit joins the caller's transaction.
    """
    if amount is None or amount <= 0:
        raise InvalidStake('Stake must be a positive number of credits')
    try:
        result = db.session.execute(
            update(Account)
            .where(Account.id == account_id, Account.balance >= amount)
            .values(balance=Account.balance - amount)
        )
        if result.rowcount != 1:
            if commit:
                db.session.rollback()
            current_app.logger.info(f"[escrow-deny] account={account_id} amount={amount} match={match_id}")
            return ReserveResult(granted=False)
        append_entry(account_id, -amount, 'stake_debit', match_id=match_id,
                     description=f'Stake {amount} credits')
        if commit:
            db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageFailure('Stake reservation failed') from exc
    current_app.logger.info(f"[escrow-reserve] account={account_id} amount={amount} match={match_id}")
    return ReserveResult(granted=True)


def already_refunded(account_id: int, match_id: int) -> bool:
    return LedgerEntry.query.filter_by(
        account_id=account_id, match_id=match_id, category='stake_refund'
    ).first() is not None


def release(account_id: int, amount: int, match_id: int, commit=True) -> bool:
    """Refund a stake for ``match_id``. Returns False if it was already refunded.

    The ledger's (match, account, category) uniqueness makes a racing second
    refund fail at commit, so at most one refund ever lands.
    """
    if amount is None or amount <= 0:
        raise InvalidStake('Refund must be a positive number of credits')
    try:
        if already_refunded(account_id, match_id):
            current_app.logger.info(f"[escrow-release-skip] account={account_id} match={match_id} already refunded")
            return False
        db.session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance=Account.balance + amount)
        )
        append_entry(account_id, amount, 'stake_refund', match_id=match_id,
                     description=f'Refund {amount} credits')
        if commit:
            db.session.commit()
    except IntegrityError:
        db.session.rollback()
        if commit:
            current_app.logger.info(f"[escrow-release-skip] account={account_id} match={match_id} lost refund race")
            return False
        raise StorageFailure('Refund conflicted with a concurrent refund')
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageFailure('Stake refund failed') from exc
    current_app.logger.info(f"[escrow-release] account={account_id} amount={amount} match={match_id}")
    return True
