"""
Ledger store and balance mutator.

This module is the only writer of ``User.wallet_balance`` and the aggregate
counters. A balance change and the Transaction row that explains it are
committed together; the user row is locked (``SELECT ... FOR UPDATE`` plus an
in-process lock per user id) for the whole read-compute-write sequence.
"""

import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from flask import current_app
from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from extensions import db
from models import User, Transaction, TRANSACTION_TYPES, CREDIT_TYPES, DEBIT_TYPES, \
    DEPOSIT, WITHDRAWAL, EARNING, COMMISSION
import state_machine as sm
from exceptions import InsufficientBalance, InvalidStateTransition, UserNotFound, UserInactive, \
    TransactionNotFound, TransientStorageFailure
from utils import to_money, generate_transaction_id, add_to_level

logger = logging.getLogger(__name__)

# Optional columns a caller may set on a new ledger entry
CONTEXT_FIELDS = (
    'currency', 'portfolio_id', 'subscription_id', 'accrual_date', 'subscription_fee',
    'payment_method', 'tx_hash', 'deposit_info', 'withdrawal_info', 'bot_info',
    'source_transaction_id', 'referral_level', 'referral_info', 'admin_notes',
)

# Unique-constrained columns that a failed entry must not occupy
_UNIQUE_CONTEXT = ('accrual_date', 'source_transaction_id', 'referral_level')

# Fixed stripe of re-entrant locks; a user id always maps to the same one
LOCK_STRIPES = 64
_user_locks = tuple(threading.RLock() for _ in range(LOCK_STRIPES))


@contextmanager
def user_lock(user_id):
    """
    Serialize balance work for one user inside this process.

    Ids can share a stripe, so callers never hold two users' locks at once.
    """
    with _user_locks[hash(user_id) % LOCK_STRIPES]:
        yield


def signed_delta(tx_type, amount):
    if tx_type in CREDIT_TYPES:
        return Decimal(amount)
    if tx_type in DEBIT_TYPES:
        return -Decimal(amount)
    raise ValueError(f"Unknown transaction type: {tx_type}")


def load_user_for_update(user_id, require_active=True):
    user = db.session.query(User).filter_by(id=user_id) \
        .populate_existing().with_for_update().first()
    if user is None:
        raise UserNotFound(f"User {user_id} not found")
    if require_active and not user.is_active:
        raise UserInactive(f"User {user_id} is inactive")
    return user


def load_transaction_for_update(transaction_pk):
    tx = db.session.query(Transaction).filter_by(id=transaction_pk) \
        .populate_existing().with_for_update().first()
    if tx is None:
        raise TransactionNotFound(f"Transaction {transaction_pk} not found")
    return tx


def update_rank(user):
    total = Decimal(user.total_deposited or 0)
    for rank, minimum in current_app.config['RANK_THRESHOLDS']:
        if total >= Decimal(minimum):
            if rank != user.current_rank:
                user.current_rank = rank
                user.rank_updated_at = datetime.utcnow()
                return True
            return False
    return False


def _update_aggregates(user, tx, amount):
    tx_type = tx.type
    if tx_type == DEPOSIT:
        user.total_deposited = Decimal(user.total_deposited or 0) + amount
        update_rank(user)
    elif tx_type == WITHDRAWAL:
        user.total_withdrawn = Decimal(user.total_withdrawn or 0) + amount
    elif tx_type == EARNING:
        user.total_earnings = Decimal(user.total_earnings or 0) + amount
    elif tx_type == COMMISSION:
        user.total_commissions = Decimal(user.total_commissions or 0) + amount
        if tx.referral_level:
            user.level_earnings = add_to_level(user.level_earnings, tx.referral_level, amount)


def post(user, tx, actor_id=None):
    """
    Apply ``tx`` to ``user`` and drive it to completed.

    The caller holds the user's lock and commits. Terminal transactions are
    never applied twice.
    """
    if sm.is_terminal(tx.status):
        raise InvalidStateTransition(
            f"Transaction {tx.transaction_id} is already {tx.status}", transaction=tx)

    amount = Decimal(tx.amount)
    before = Decimal(user.wallet_balance or 0)
    after = before + signed_delta(tx.type, amount)
    if after < 0:
        raise InsufficientBalance(
            f"Balance {before} is insufficient for {tx.type} of {amount}", transaction=tx)

    if tx.status == sm.PENDING:
        sm.transition(tx, sm.PROCESSING, actor_id)
    tx.balance_before = before
    tx.balance_after = after
    user.wallet_balance = after
    _update_aggregates(user, tx, amount)
    sm.transition(tx, sm.COMPLETED, actor_id)

    logger.info(f"Posted {tx.type} {tx.transaction_id} for user {user.id}: {before} -> {after}")
    return tx


def run_atomic(unit, label):
    """
    Run ``unit`` and commit, retrying transient storage errors with
    exponential backoff. Any other error rolls back and propagates.
    """
    max_retries = current_app.config['LEDGER_MAX_RETRIES']
    backoff = current_app.config['LEDGER_RETRY_BACKOFF']
    for attempt in range(1, max_retries + 1):
        try:
            result = unit()
            db.session.commit()
            return result
        except OperationalError as e:
            db.session.rollback()
            if attempt >= max_retries:
                logger.error(f"{label}: storage failure after {attempt} attempts: {e}")
                failure = TransientStorageFailure(f"{label} failed after {attempt} attempts")
                failure.attempts = attempt
                failure.cause = str(getattr(e, 'orig', e))
                raise failure from e
            logger.warning(f"{label}: transient storage failure (attempt {attempt}), retrying")
            time.sleep(backoff * (2 ** (attempt - 1)))
        except Exception:
            db.session.rollback()
            raise


def _error_payload(failure):
    return {
        'message': getattr(failure, 'cause', str(failure)),
        'code': failure.code,
        'timestamp': datetime.utcnow().isoformat(),
    }


def mark_failed(transaction_pk, failure):
    """Move an existing transaction to failed and record the error."""
    try:
        tx = db.session.get(Transaction, transaction_pk)
        if tx is None or sm.is_terminal(tx.status):
            return tx
        sm.transition(tx, sm.FAILED)
        tx.retry_count = (tx.retry_count or 0) + getattr(failure, 'attempts', 1)
        tx.last_error = _error_payload(failure)
        db.session.commit()
        return tx
    except OperationalError:
        db.session.rollback()
        logger.exception(f"Could not mark transaction {transaction_pk} as failed")
        return None


def record_failed_entry(user_id, tx_type, amount, category, description, context, failure):
    context = dict(context)
    moved = {key: context.pop(key) for key in _UNIQUE_CONTEXT if context.get(key) is not None}
    if moved.get('accrual_date') is not None:
        moved['accrual_date'] = moved['accrual_date'].isoformat()
    bot_info = dict(context.pop('bot_info', None) or {})
    bot_info.update(moved)
    try:
        tx = Transaction(
            transaction_id=generate_transaction_id(tx_type),
            user_id=user_id,
            type=tx_type,
            category=category,
            amount=amount,
            status=sm.PENDING,
            description=description,
            bot_info=bot_info or None,
            **context
        )
        sm.transition(tx, sm.FAILED)
        tx.retry_count = getattr(failure, 'attempts', 1)
        tx.last_error = _error_payload(failure)
        db.session.add(tx)
        db.session.commit()
        return tx
    except OperationalError:
        db.session.rollback()
        logger.exception(f"Could not record failed {tx_type} for user {user_id}")
        return None


def build_transaction(user_id, tx_type, amount, category=None, description=None, **context):
    unknown = set(context) - set(CONTEXT_FIELDS)
    if unknown:
        raise TypeError(f"Unknown transaction fields: {sorted(unknown)}")
    if tx_type not in TRANSACTION_TYPES:
        raise ValueError(f"Unknown transaction type: {tx_type}")
    context.setdefault('currency', current_app.config['DEFAULT_CURRENCY'])
    return Transaction(
        transaction_id=generate_transaction_id(tx_type),
        user_id=user_id,
        type=tx_type,
        category=category,
        amount=amount,
        status=sm.PENDING,
        description=description,
        initiated_at=datetime.utcnow(),
        **context
    )


def apply_transaction(user_id, tx_type, amount, category=None, description=None,
                      actor_id=None, **context):
    """
    Create a ledger entry and apply it to the user's balance in one commit.

    Raises InsufficientBalance, UserNotFound or UserInactive without writing
    anything. A storage failure that survives the retries leaves a failed
    entry behind and raises TransientStorageFailure.
    """
    amount = to_money(amount)
    if tx_type not in TRANSACTION_TYPES:
        raise ValueError(f"Unknown transaction type: {tx_type}")

    def unit():
        user = load_user_for_update(user_id)
        tx = build_transaction(user_id, tx_type, amount, category, description, **context)
        db.session.add(tx)
        post(user, tx, actor_id)
        db.session.flush()
        return tx

    with user_lock(user_id):
        try:
            return run_atomic(unit, f"{tx_type} for user {user_id}")
        except TransientStorageFailure as failure:
            failure.transaction = record_failed_entry(
                user_id, tx_type, amount, category, description, context, failure)
            raise


def settle_transaction(transaction_pk, actor_id=None, expected_types=None, allowed_from=None,
                       within_unit=None):
    """
    Apply an existing pending/processing transaction (deposit, withdrawal).

    ``within_unit(tx, user)`` runs inside the same commit after the balance
    is posted. The transaction's status is re-read under the owner's lock so
    a settled transaction is never applied again.
    """
    owner = db.session.query(Transaction.user_id).filter_by(id=transaction_pk).scalar()
    if owner is None:
        raise TransactionNotFound(f"Transaction {transaction_pk} not found")

    def unit():
        tx = load_transaction_for_update(transaction_pk)
        if expected_types and tx.type not in expected_types:
            raise InvalidStateTransition(
                f"Transaction {tx.transaction_id} of type {tx.type} cannot be settled here",
                transaction=tx)
        if allowed_from and tx.status not in allowed_from:
            raise InvalidStateTransition(
                f"Transaction {tx.transaction_id} is {tx.status}", transaction=tx)
        user = load_user_for_update(owner)
        post(user, tx, actor_id)
        if within_unit is not None:
            within_unit(tx, user)
        db.session.flush()
        return tx

    with user_lock(owner):
        try:
            return run_atomic(unit, f"settle transaction {transaction_pk}")
        except TransientStorageFailure as failure:
            failure.transaction = mark_failed(transaction_pk, failure)
            raise


def computed_balance(user_id):
    """Sum of signed deltas over the user's completed transactions."""
    rows = db.session.query(Transaction.type, func.sum(Transaction.amount)) \
        .filter(Transaction.user_id == user_id, Transaction.status == sm.COMPLETED) \
        .group_by(Transaction.type).all()
    total = Decimal('0.00')
    for tx_type, amount in rows:
        total += signed_delta(tx_type, amount or 0)
    return total


def reconcile_user(user_id):
    """Return (stored balance, ledger balance, consistent?) for one user."""
    user = db.session.get(User, user_id)
    if user is None:
        raise UserNotFound(f"User {user_id} not found")
    stored = Decimal(user.wallet_balance or 0)
    computed = computed_balance(user_id)
    if stored != computed:
        logger.error(f"Ledger mismatch for user {user_id}: stored {stored}, ledger {computed}")
    return stored, computed, stored == computed
