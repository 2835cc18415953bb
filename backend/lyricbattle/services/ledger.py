"""Account balances and the append-only transaction history.

Balances only ever move through single-statement SQL increments and
decrements, each paired with a LedgerEntry in the same transaction, so the
ledger is the audit trail the balance reconciles against.
"""

from datetime import timedelta

from flask import current_app
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from lyricbattle import db
from lyricbattle.errors import FreeCreditsUnavailable, StorageFailure
from lyricbattle.models import Account, LedgerEntry, LEDGER_CATEGORIES, utcnow


def open_account(username: str, password: str, starting_credits: int = 0) -> Account:
    """Create an account, recording any opening balance as a free grant."""
    account = Account(username=username, balance=0)
    account.set_password(password)
    try:
        db.session.add(account)
        db.session.flush()
        if starting_credits > 0:
            credit(account.id, starting_credits, 'free_grant', description='Welcome credits', commit=False)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageFailure('Could not open account') from exc
    current_app.logger.info(f"[ledger-open] account={account.id} username={username} credits={starting_credits}")
    return account


def append_entry(account_id: int, amount: int, category: str, match_id=None, description=None) -> LedgerEntry:
    if category not in LEDGER_CATEGORIES:
        raise ValueError(f'unknown ledger category: {category}')
    entry = LedgerEntry(
        account_id=account_id,
        amount=amount,
        category=category,
        match_id=match_id,
        description=description,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def credit(account_id: int, amount: int, category: str, match_id=None, description=None, commit=True) -> LedgerEntry:
    """Atomically add ``amount`` to the balance and append the matching entry.

    With ``commit=False`` the caller owns the transaction.
    """
    if amount <= 0:
        raise ValueError('credit amount must be positive')
    try:
        result = db.session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance=Account.balance + amount)
        )
        if result.rowcount != 1:
            if commit:
                db.session.rollback()
            raise StorageFailure(f'Account {account_id} does not exist')
        entry = append_entry(account_id, amount, category, match_id=match_id, description=description)
        if commit:
            db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageFailure('Ledger credit failed') from exc
    return entry


def balance_of(account_id: int):
    row = db.session.execute(select(Account.balance).where(Account.id == account_id)).first()
    return row[0] if row else None


def ledger_total(account_id: int) -> int:
    total = db.session.execute(
        select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(LedgerEntry.account_id == account_id)
    ).scalar_one()
    return int(total)


def reconcile(account_id: int) -> dict:
    balance = balance_of(account_id)
    total = ledger_total(account_id)
    return {
        'account_id': account_id,
        'balance': balance,
        'ledger_total': total,
        'balanced': balance == total,
    }


def entries_for(account_id: int, limit: int = 100):
    return (
        LedgerEntry.query.filter_by(account_id=account_id)
        .order_by(LedgerEntry.id.desc())
        .limit(limit)
        .all()
    )


def claim_free_credits(account_id: int, now=None) -> LedgerEntry:
    """Grant the periodic free credits, at most once per configured interval."""
    now = now or utcnow()
    cfg = current_app.config
    amount = int(cfg.get('FREE_CREDITS_AMOUNT', 250))
    interval = timedelta(hours=float(cfg.get('FREE_CREDITS_INTERVAL_HOURS', 24)))
    cutoff = now - interval
    try:
        result = db.session.execute(
            update(Account)
            .where(
                Account.id == account_id,
                or_(Account.last_free_credit_at.is_(None), Account.last_free_credit_at <= cutoff),
            )
            .values(balance=Account.balance + amount, last_free_credit_at=now)
        )
        if result.rowcount != 1:
            db.session.rollback()
            account = db.session.get(Account, account_id)
            next_claim_at = account.last_free_credit_at + interval if account and account.last_free_credit_at else None
            raise FreeCreditsUnavailable('Free credits were already claimed recently', next_claim_at=next_claim_at)
        entry = append_entry(account_id, amount, 'free_grant', description=f'Claimed {amount} free credits')
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageFailure('Free credit claim failed') from exc
    current_app.logger.info(f"[ledger-free] account={account_id} amount={amount}")
    return entry
