"""
Referral tree and multi-level commission engine.

The tree is the ``User.referred_by`` back-reference. Commissions walk up to
``MAX_REFERRAL_DEPTH`` ancestors and pay ``rate(level)`` percent of the
qualifying amount to each active one, one ancestor lock at a time.
"""

import logging
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import aliased
from flask import current_app
from extensions import db
from models import User, Transaction, COMMISSION, DEPOSIT, CATEGORY_REFERRAL
import state_machine as sm
from exceptions import LedgerError, DuplicateCommission, InvalidReferral, UserNotFound
from ledger import apply_transaction
from utils import to_money, percent_of, get_commission_rates, generate_referral_code, add_to_level

logger = logging.getLogger(__name__)


def iter_ancestors(user, max_depth=None):
    """Yield (level, ancestor) pairs from the direct referrer upwards."""
    seen = {user.id}
    level = 0
    current = user
    while current.referred_by is not None:
        if max_depth is not None and level >= max_depth:
            return
        level += 1
        ancestor = db.session.get(User, current.referred_by)
        if ancestor is None:
            logger.warning(f"Referrer {current.referred_by} of user {current.id} does not exist")
            return
        if ancestor.id in seen:
            logger.error(f"Referral cycle detected at user {ancestor.id}")
            return
        seen.add(ancestor.id)
        yield level, ancestor
        current = ancestor

# --- Tree maintenance ---

def assign_referrer(user, referral_code):
    """Attach ``user`` under the owner of ``referral_code``. Caller commits."""
    referrer = User.query.filter_by(referral_code=(referral_code or '').strip().upper()).first()
    if referrer is None:
        raise InvalidReferral(f"Unknown referral code {referral_code!r}")
    if user.referred_by is not None:
        raise InvalidReferral(f"User {user.id} already has a referrer")
    if user.id is not None:
        if referrer.id == user.id:
            raise InvalidReferral("A user cannot refer themselves")
        if any(ancestor.id == user.id for _, ancestor in iter_ancestors(referrer)):
            raise InvalidReferral(f"Referrer {referrer.id} is a descendant of user {user.id}")

    user.referred_by = referrer.id
    user.referral_level = (referrer.referral_level or 0) + 1
    referrer.direct_referrals = (referrer.direct_referrals or 0) + 1
    referrer.total_referrals = (referrer.total_referrals or 0) + 1
    referrer.level_counts = add_to_level(referrer.level_counts, 1, 1)
    depth = current_app.config['MAX_REFERRAL_DEPTH']
    for level, ancestor in iter_ancestors(referrer, max_depth=depth - 1):
        ancestor.total_referrals = (ancestor.total_referrals or 0) + 1
        ancestor.level_counts = add_to_level(ancestor.level_counts, level + 1, 1)
    return referrer


def create_user(email, first_name, last_name, referral_code=None, role=None, is_email_verified=False):
    user = User(
        email=email.strip().lower(),
        first_name=first_name,
        last_name=last_name,
        role=role,
        referral_code=generate_referral_code(),
        is_email_verified=is_email_verified,
    )
    db.session.add(user)
    try:
        db.session.flush()
        if referral_code:
            assign_referrer(user, referral_code)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info(f"Registered user {user.id} ({user.email}), referrer {user.referred_by}")
    return user


def deactivate_user(user_id):
    user = db.session.get(User, user_id)
    if user is None:
        raise UserNotFound(f"User {user_id} not found")
    user.is_active = False
    user.bot_active = False
    db.session.commit()
    logger.info(f"Deactivated user {user_id}")
    return user

# --- Commissions ---

def _paid_levels(source_transaction_id):
    """(ancestor id, level) pairs already paid for ``source_transaction_id``."""
    if source_transaction_id is None:
        return set()
    rows = db.session.query(Transaction.user_id, Transaction.referral_level).filter(
        Transaction.type == COMMISSION,
        Transaction.source_transaction_id == source_transaction_id,
        Transaction.status == sm.COMPLETED,
    ).all()
    return {(user_id, level) for user_id, level in rows}


def preview_commissions(user_id, amount):
    """Commissions a qualifying amount from ``user_id`` would pay, without writing."""
    amount = to_money(amount)
    user = db.session.get(User, user_id)
    if user is None:
        raise UserNotFound(f"User {user_id} not found")
    rates = get_commission_rates()
    preview = []
    for level, ancestor in iter_ancestors(user, max_depth=len(rates)):
        if not ancestor.is_active:
            continue
        rate = rates[level - 1]
        preview.append({
            'level': level,
            'referrer_id': ancestor.id,
            'rate': str(rate),
            'amount': percent_of(amount, rate),
        })
    return preview


def distribute_commission(source_user_id, base_amount, source_transaction_id):
    """
    Pay commissions on ``base_amount`` up the referral chain of ``source_user_id``.

    Missing or inactive ancestors are skipped. A failed payout at one level is
    logged and does not stop the others; calling again pays only the levels
    still missing for ``source_transaction_id``. Raises DuplicateCommission
    when every payable level was already paid. Returns the new commission
    transactions.
    """
    base_amount = to_money(base_amount)
    source = db.session.get(User, source_user_id)
    if source is None:
        raise UserNotFound(f"User {source_user_id} not found")

    paid = _paid_levels(source_transaction_id)
    rates = get_commission_rates()
    due = []
    for level, ancestor in iter_ancestors(source, max_depth=len(rates)):
        if not ancestor.is_active:
            logger.warning(f"Skipping inactive referrer {ancestor.id} at level {level}")
            continue
        rate = rates[level - 1]
        commission = percent_of(base_amount, rate)
        if commission <= 0 or (ancestor.id, level) in paid:
            continue
        due.append((level, ancestor.id, rate, commission))

    if paid and not due:
        raise DuplicateCommission(
            f"Commissions for transaction {source_transaction_id} were already distributed")

    payouts = []
    for level, ancestor_id, rate, commission in due:
        try:
            tx = apply_transaction(
                ancestor_id, COMMISSION, commission,
                category=CATEGORY_REFERRAL,
                description=f"Level {level} referral commission from user {source_user_id}",
                source_transaction_id=source_transaction_id,
                referral_level=level,
                referral_info={
                    'source_user_id': source_user_id,
                    'level': level,
                    'rate': str(rate),
                    'base_amount': str(base_amount),
                    'source_transaction_id': source_transaction_id,
                },
            )
            payouts.append(tx)
        except (LedgerError, SQLAlchemyError) as e:
            db.session.rollback()
            logger.error(f"Commission level {level} to user {ancestor_id} failed: {e}")

    logger.info(f"Distributed {len(payouts)} commissions for transaction {source_transaction_id}")
    return payouts


def distribute_missing_commissions():
    """Pay the commission levels that completed deposits are still missing."""
    Commission = aliased(Transaction)
    paid_count = db.session.query(func.count(Commission.id)).filter(
        Commission.type == COMMISSION,
        Commission.source_transaction_id == Transaction.id,
        Commission.status == sm.COMPLETED,
    ).correlate(Transaction).scalar_subquery()
    rows = db.session.query(Transaction.id, Transaction.user_id, Transaction.amount,
                            User.referral_level, paid_count) \
        .join(User, User.id == Transaction.user_id).filter(
            Transaction.type == DEPOSIT,
            Transaction.status == sm.COMPLETED,
            User.referred_by.isnot(None),
        ).order_by(Transaction.id).all()

    depth = len(get_commission_rates())
    pending = [(tx_id, user_id, amount) for tx_id, user_id, amount, level, paid in rows
               if paid < min(level or 0, depth)]
    count = 0
    for tx_id, user_id, amount in pending:
        try:
            count += len(distribute_commission(user_id, amount, tx_id))
        except DuplicateCommission:
            # remaining levels are inactive or round to zero
            logger.debug(f"Nothing left to pay for transaction {tx_id}")
        except LedgerError as e:
            logger.error(f"Retroactive commissions for transaction {tx_id} failed: {e}")
    logger.info(f"Retroactive distribution created {count} commission transactions")
    return count
