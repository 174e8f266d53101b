"""
Transactional API consumed by the HTTP and admin layers.

Deposits and withdrawals enter as pending transactions and wait for an admin
decision. Approval posts the balance change through ledger.py; a deposit
approval also activates the portfolio subscription and fans out referral
commissions.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from flask import current_app
from sqlalchemy import func
from extensions import db
from models import User, Portfolio, Subscription, Transaction, AdminWallet, \
    DEPOSIT, WITHDRAWAL, BONUS, PENALTY, REFUND, CATEGORY_MANUAL, CATEGORY_ADMIN, TRANSACTION_TYPES
import state_machine as sm
from exceptions import LedgerError, InsufficientBalance, InvalidStateTransition, UserNotFound, \
    UserInactive, TransactionNotFound, PortfolioNotFound, PortfolioUnavailable, PortfolioLocked, \
    PermissionDenied, InvalidParameter
from ledger import apply_transaction, settle_transaction, build_transaction, run_atomic, \
    user_lock, load_transaction_for_update
from referrals import distribute_commission
from utils import to_money, log_admin_activity

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ('USDT', 'BTC', 'ETH', 'BNB')
ADJUSTMENT_TYPES = (BONUS, PENALTY, REFUND)

# Permission required to decide on each manually reviewed type
APPROVAL_PERMISSIONS = {
    DEPOSIT: 'manage_payments',
    WITHDRAWAL: 'manage_withdrawals',
}

# --- Lookups ---

def get_active_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        raise UserNotFound(f"User {user_id} not found")
    if not user.is_active:
        raise UserInactive(f"User {user_id} is inactive")
    return user


def require_permission(admin_id, permission_name):
    admin = db.session.get(User, admin_id)
    if admin is None or not admin.is_active or not admin.has_permission(permission_name):
        raise PermissionDenied(f"User {admin_id} lacks permission {permission_name}")
    return admin


def get_transaction(transaction_pk):
    tx = db.session.get(Transaction, transaction_pk)
    if tx is None:
        raise TransactionNotFound(f"Transaction {transaction_pk} not found")
    return tx


def withdrawable_balance(user):
    """Wallet balance minus withdrawals still awaiting a decision."""
    reserved = db.session.query(func.sum(Transaction.amount)).filter(
        Transaction.user_id == user.id,
        Transaction.type == WITHDRAWAL,
        Transaction.status.in_([sm.PENDING, sm.PROCESSING]),
    ).scalar() or Decimal('0.00')
    return Decimal(user.wallet_balance or 0) - Decimal(reserved)

# --- Submission ---

def submit_deposit(user_id, portfolio_id, amount, payment_method, tx_hash=None):
    amount = to_money(amount)
    user = get_active_user(user_id)

    portfolio = db.session.get(Portfolio, portfolio_id)
    if portfolio is None:
        raise PortfolioNotFound(f"Portfolio {portfolio_id} not found")
    if not portfolio.is_active:
        raise PortfolioUnavailable(f"Portfolio {portfolio.name} is not accepting deposits")
    if amount < portfolio.min_investment or amount > portfolio.max_investment:
        raise PortfolioUnavailable(
            f"Investment must be between {portfolio.min_investment} and {portfolio.max_investment}")
    if not portfolio.has_free_slot():
        raise PortfolioUnavailable(f"Portfolio {portfolio.name} has no free slots")

    payment_method = (payment_method or '').upper()
    if payment_method not in PAYMENT_METHODS:
        raise LedgerError(f"Unsupported payment method {payment_method!r}")

    deposit_info = {}
    wallet = AdminWallet.query.filter_by(wallet_type=payment_method, is_active=True).first()
    if wallet:
        deposit_info['wallet_address'] = wallet.wallet_address
        deposit_info['network'] = wallet.network_type

    fee = portfolio.subscription_fee if portfolio.requires_subscription else Decimal('0.00')
    tx = build_transaction(
        user.id, DEPOSIT, amount,
        category=CATEGORY_MANUAL,
        description=f"Deposit for portfolio {portfolio.name}",
        portfolio_id=portfolio.id,
        subscription_fee=fee,
        payment_method=payment_method,
        tx_hash=tx_hash,
        deposit_info=deposit_info or None,
    )
    db.session.add(tx)
    db.session.commit()
    logger.info(f"Deposit {tx.transaction_id} of {amount} submitted by user {user.id}")
    return tx


def submit_withdrawal(user_id, amount, destination):
    amount = to_money(amount)
    with user_lock(user_id):
        user = get_active_user(user_id)
        available = withdrawable_balance(user)
        if amount > available:
            raise InsufficientBalance(f"Requested {amount}, available {available}")
        tx = build_transaction(
            user.id, WITHDRAWAL, amount,
            category=CATEGORY_MANUAL,
            description="Withdrawal request",
            withdrawal_info={'destination': destination},
        )
        db.session.add(tx)
        db.session.commit()
    logger.info(f"Withdrawal {tx.transaction_id} of {amount} requested by user {user_id}")
    return tx

# --- Admin decisions ---

def _activate_subscription(tx, user):
    portfolio = db.session.query(Portfolio).filter_by(id=tx.portfolio_id) \
        .populate_existing().with_for_update().first()
    if portfolio is None:
        raise PortfolioNotFound(f"Portfolio {tx.portfolio_id} not found")
    if not portfolio.has_free_slot():
        raise PortfolioUnavailable(f"Portfolio {portfolio.name} has no free slots")

    now = datetime.utcnow()
    previous = user.active_subscription
    if previous is not None and previous.status == 'active':
        previous.status = 'superseded'
        previous.closed_at = now

    subscription = Subscription(
        user_id=user.id,
        portfolio_id=portfolio.id,
        deposit_id=tx.id,
        principal=tx.amount,
        subscription_fee=tx.subscription_fee or Decimal('0.00'),
        status='active',
        activated_at=now,
        ends_at=now + timedelta(days=portfolio.duration_days),
    )
    db.session.add(subscription)
    db.session.flush()

    portfolio.used_slots = (portfolio.used_slots or 0) + 1
    user.active_subscription = subscription
    user.bot_active = True
    user.bot_activated_at = now
    tx.subscription_id = subscription.id
    return subscription


def approve_transaction(transaction_pk, admin_id, notes=None):
    tx = get_transaction(transaction_pk)
    permission = APPROVAL_PERMISSIONS.get(tx.type)
    if permission is None:
        raise InvalidStateTransition(f"{tx.type} transactions are not manually approved", transaction=tx)
    require_permission(admin_id, permission)
    if tx.type == DEPOSIT:
        return _approve_deposit(transaction_pk, admin_id, notes)
    return _approve_withdrawal(transaction_pk, admin_id, notes)


def _approve_deposit(transaction_pk, admin_id, notes):
    def within_unit(tx, user):
        if notes:
            tx.admin_notes = notes
        if tx.portfolio_id:
            _activate_subscription(tx, user)
        log_admin_activity(admin_id, 'Approve Deposit', f'Approved {tx.transaction_id} for {tx.amount}')

    tx = settle_transaction(transaction_pk, admin_id, expected_types=(DEPOSIT,),
                            allowed_from=(sm.PENDING,), within_unit=within_unit)
    try:
        distribute_commission(tx.user_id, tx.amount, tx.id)
    except LedgerError as e:
        logger.error(f"Commission distribution for deposit {tx.transaction_id} failed: {e}")
    return tx


def _approve_withdrawal(transaction_pk, admin_id, notes):
    def within_unit(tx, user):
        if notes:
            tx.admin_notes = notes
        log_admin_activity(admin_id, 'Approve Withdrawal', f'Approved {tx.transaction_id} for {tx.amount}')

    try:
        return settle_transaction(transaction_pk, admin_id, expected_types=(WITHDRAWAL,),
                                  allowed_from=(sm.PENDING, sm.PROCESSING), within_unit=within_unit)
    except InsufficientBalance as e:
        logger.warning(f"Withdrawal {transaction_pk} rejected automatically: {e}")
        rejected = _reject(transaction_pk, admin_id, 'Insufficient balance at approval time')
        raise InsufficientBalance(str(e), transaction=rejected)


def _reject(transaction_pk, admin_id, reason):
    tx = get_transaction(transaction_pk)
    owner = tx.user_id

    def unit():
        locked = load_transaction_for_update(transaction_pk)
        sm.transition(locked, sm.REJECTED, admin_id)
        locked.rejection_reason = reason
        log_admin_activity(admin_id, f'Reject {locked.type.title()}', f'Rejected {locked.transaction_id}: {reason}')
        return locked

    with user_lock(owner):
        return run_atomic(unit, f"reject transaction {transaction_pk}")


def reject_transaction(transaction_pk, admin_id, reason):
    tx = get_transaction(transaction_pk)
    permission = APPROVAL_PERMISSIONS.get(tx.type)
    if permission is None:
        raise InvalidStateTransition(f"{tx.type} transactions are not manually reviewed", transaction=tx)
    require_permission(admin_id, permission)
    if not reason or not reason.strip():
        raise LedgerError("A rejection reason is required")
    tx = _reject(transaction_pk, admin_id, reason.strip())
    logger.info(f"Transaction {tx.transaction_id} rejected by admin {admin_id}")
    return tx


def process_transaction(transaction_pk, admin_id, reference):
    """Mark a pending withdrawal as being paid out externally under ``reference``."""
    tx = get_transaction(transaction_pk)
    if tx.type != WITHDRAWAL:
        raise InvalidStateTransition("Only withdrawals are processed externally", transaction=tx)
    require_permission(admin_id, APPROVAL_PERMISSIONS[WITHDRAWAL])
    if not reference:
        raise LedgerError("An external payout reference is required")

    def unit():
        locked = load_transaction_for_update(transaction_pk)
        sm.transition(locked, sm.PROCESSING, admin_id)
        locked.tx_hash = reference
        info = dict(locked.withdrawal_info or {})
        info['reference'] = reference
        locked.withdrawal_info = info
        log_admin_activity(admin_id, 'Process Withdrawal', f'{locked.transaction_id} sent as {reference}')
        return locked

    with user_lock(tx.user_id):
        return run_atomic(unit, f"process transaction {transaction_pk}")


def cancel_transaction(transaction_pk, user_id):
    """Owner cancels a request that no admin has picked up yet."""
    tx = get_transaction(transaction_pk)
    if tx.user_id != user_id:
        raise PermissionDenied(f"Transaction {transaction_pk} does not belong to user {user_id}")

    def unit():
        locked = load_transaction_for_update(transaction_pk)
        if locked.status != sm.PENDING:
            raise InvalidStateTransition(
                f"Only pending transactions can be cancelled, {locked.transaction_id} is {locked.status}",
                transaction=locked)
        sm.transition(locked, sm.CANCELLED)
        return locked

    with user_lock(user_id):
        return run_atomic(unit, f"cancel transaction {transaction_pk}")


def adjust_balance(user_id, admin_id, tx_type, amount, reason):
    """Admin-authored bonus, penalty or refund."""
    if tx_type not in ADJUSTMENT_TYPES:
        raise LedgerError(f"Manual adjustments must be one of {', '.join(ADJUSTMENT_TYPES)}")
    require_permission(admin_id, 'adjust_balances')
    tx = apply_transaction(user_id, tx_type, amount, category=CATEGORY_ADMIN,
                           description=reason, actor_id=admin_id, admin_notes=reason)
    log_admin_activity(admin_id, f'Manual {tx_type.title()}', f'{tx.transaction_id} {tx.amount} for user {user_id}')
    db.session.commit()
    return tx

# --- Queries ---

def _check_filters(tx_type, statuses):
    if tx_type and tx_type not in TRANSACTION_TYPES:
        raise InvalidParameter(f"Unknown transaction type {tx_type!r}")
    unknown = [status for status in statuses if status not in sm.STATUSES]
    if unknown:
        raise InvalidParameter(f"Unknown status {unknown[0]!r}")


def get_ledger(user_id, tx_type=None, status=None, start=None, end=None, page=1, per_page=None):
    """Paginated ledger of one user, newest first."""
    if db.session.get(User, user_id) is None:
        raise UserNotFound(f"User {user_id} not found")
    _check_filters(tx_type, [status] if status else ())
    query = db.select(Transaction).where(Transaction.user_id == user_id)
    if tx_type:
        query = query.where(Transaction.type == tx_type)
    if status:
        query = query.where(Transaction.status == status)
    if start:
        query = query.where(Transaction.created_at >= start)
    if end:
        query = query.where(Transaction.created_at < end)
    query = query.order_by(Transaction.created_at.desc(), Transaction.id.desc())
    return db.paginate(query, page=page, per_page=per_page, error_out=False,
                       max_per_page=current_app.config['LEDGER_MAX_PAGE_SIZE'])


def review_queue(tx_type=None, statuses=(sm.PENDING, sm.PROCESSING), page=1, per_page=None):
    """Transactions awaiting an admin decision (or in ``statuses``), oldest first."""
    _check_filters(tx_type, statuses)
    query = db.select(Transaction).where(Transaction.status.in_(list(statuses)))
    if tx_type:
        query = query.where(Transaction.type == tx_type)
    query = query.order_by(Transaction.initiated_at.asc(), Transaction.id.asc())
    return db.paginate(query, page=page, per_page=per_page, error_out=False,
                       max_per_page=current_app.config['LEDGER_MAX_PAGE_SIZE'])

# --- Portfolios ---

def update_portfolio(portfolio_id, **fields):
    portfolio = db.session.get(Portfolio, portfolio_id)
    if portfolio is None:
        raise PortfolioNotFound(f"Portfolio {portfolio_id} not found")
    locked_fields = set(fields) - set(Portfolio.ADMIN_FIELDS)
    if locked_fields and Subscription.query.filter_by(portfolio_id=portfolio_id).first():
        raise PortfolioLocked(
            f"Portfolio {portfolio_id} has subscriptions; cannot change {', '.join(sorted(locked_fields))}")
    for key, value in fields.items():
        if not hasattr(Portfolio, key):
            raise AttributeError(f"Portfolio has no field {key}")
        setattr(portfolio, key, value)
    db.session.commit()
    return portfolio
