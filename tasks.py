"""
Background tasks: the daily ROI accrual cycle and its backfill.

Each active subscription earns ``principal * daily_roi / 100`` per calendar
day until its cumulative earnings reach ``principal * total_return_limit /
100`` or its duration elapses. At most one earning exists per
(subscription, accrual date), so re-running a day is a no-op.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from sqlalchemy import exists, and_, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from extensions import db
from models import User, Transaction, EARNING, CATEGORY_BOT
import state_machine as sm
from exceptions import LedgerError, DuplicateAccrual, PortfolioCapReached, TransientStorageFailure
from ledger import user_lock, load_user_for_update, build_transaction, post, run_atomic, \
    record_failed_entry
from referrals import distribute_commission
from utils import percent_of, commission_on_earnings

logger = logging.getLogger(__name__)


@dataclass
class AccrualReport:
    as_of: object
    users_processed: int = 0
    total_paid: Decimal = Decimal('0.00')
    subscriptions_closed: int = 0
    skipped: int = 0
    failed: int = 0
    earnings: list = field(default_factory=list)

    def to_dict(self):
        return {
            'as_of': self.as_of.isoformat(),
            'users_processed': self.users_processed,
            'total_paid': str(self.total_paid),
            'subscriptions_closed': self.subscriptions_closed,
            'skipped': self.skipped,
            'failed': self.failed,
        }


def earning_exists(subscription_id, as_of):
    return db.session.query(exists().where(and_(
        Transaction.type == EARNING,
        Transaction.subscription_id == subscription_id,
        Transaction.accrual_date == as_of,
    ))).scalar()


def already_paid(subscription_id):
    return db.session.query(func.sum(Transaction.amount)).filter(
        Transaction.type == EARNING,
        Transaction.subscription_id == subscription_id,
        Transaction.status == sm.COMPLETED,
    ).scalar() or Decimal('0.00')


def return_cap(subscription):
    return percent_of(subscription.principal, subscription.portfolio.total_return_limit)


def daily_payout(subscription, paid):
    """One day's ROI, trimmed so cumulative earnings never pass the cap."""
    cap = return_cap(subscription)
    remaining = cap - Decimal(paid)
    if remaining <= 0:
        raise PortfolioCapReached(f"Subscription {subscription.id} reached its return cap of {cap}")
    return min(percent_of(subscription.principal, subscription.portfolio.daily_roi), remaining)


def _close(user, subscription, status):
    subscription.status = status
    subscription.closed_at = datetime.utcnow()
    user.bot_active = False
    logger.info(f"Subscription {subscription.id} of user {user.id} closed as {status}")


def accrue_user(user_id, as_of):
    """
    Credit one day's ROI to the user's active subscription.

    Returns ``(earning or None, closed)``. Raises DuplicateAccrual when the
    day was already credited.
    """
    attempt = {}

    def unit():
        user = load_user_for_update(user_id)
        subscription = user.active_subscription
        if not user.bot_active or subscription is None or subscription.status != 'active':
            return None, False
        if earning_exists(subscription.id, as_of):
            raise DuplicateAccrual(f"Subscription {subscription.id} already earned for {as_of}")
        activated = subscription.activated_at.date()
        if as_of < activated:
            return None, False

        portfolio = subscription.portfolio
        if (as_of - activated).days >= portfolio.duration_days:
            _close(user, subscription, 'expired')
            return None, True

        paid = already_paid(subscription.id)
        try:
            payout = daily_payout(subscription, paid)
        except PortfolioCapReached:
            _close(user, subscription, 'completed')
            return None, True
        if payout <= 0:
            return None, False

        context = dict(
            portfolio_id=portfolio.id,
            subscription_id=subscription.id,
            accrual_date=as_of,
            bot_info={
                'daily_roi': str(portfolio.daily_roi),
                'principal': str(subscription.principal),
                'accrual_date': as_of.isoformat(),
            },
        )
        earning = build_transaction(
            user.id, EARNING, payout,
            category=CATEGORY_BOT,
            description=f"Daily ROI for {portfolio.name} on {as_of.isoformat()}",
            **context
        )
        attempt.update(amount=payout, context=context)
        db.session.add(earning)
        post(user, earning)
        subscription.last_accrual_date = as_of

        closed = False
        if Decimal(paid) + payout >= return_cap(subscription):
            _close(user, subscription, 'completed')
            closed = True
        db.session.flush()
        return earning, closed

    with user_lock(user_id):
        try:
            return run_atomic(unit, f"accrual for user {user_id} on {as_of}")
        except IntegrityError as e:
            # another worker inserted the same (subscription, date) first
            raise DuplicateAccrual(f"Accrual for user {user_id} on {as_of} already exists") from e
        except TransientStorageFailure as failure:
            if attempt:
                failure.transaction = record_failed_entry(
                    user_id, EARNING, attempt['amount'], CATEGORY_BOT,
                    f"Daily ROI on {as_of.isoformat()}", attempt['context'], failure)
            raise


def run_accrual_cycle(as_of=None):
    """Credit one day of ROI to every user with an active subscription."""
    as_of = as_of or datetime.utcnow().date()
    logger.info(f"--- Starting accrual cycle for {as_of} ---")
    report = AccrualReport(as_of=as_of)

    user_ids = [row[0] for row in db.session.query(User.id).filter(
        User.bot_active.is_(True),
        User.is_active.is_(True),
        User.active_subscription_id.isnot(None),
    ).order_by(User.id).all()]

    for user_id in user_ids:
        try:
            earning, closed = accrue_user(user_id, as_of)
        except DuplicateAccrual:
            report.skipped += 1
            continue
        except (LedgerError, SQLAlchemyError) as e:
            db.session.rollback()
            report.failed += 1
            logger.error(f"Error accruing for user {user_id} on {as_of}: {e}")
            continue

        report.users_processed += 1
        if closed:
            report.subscriptions_closed += 1
        if earning is not None:
            report.total_paid += Decimal(earning.amount)
            report.earnings.append(earning.id)
            if commission_on_earnings():
                try:
                    distribute_commission(user_id, earning.amount, earning.id)
                except LedgerError as e:
                    logger.error(f"Commission on earning {earning.transaction_id} failed: {e}")

    logger.info(f"--- Accrual cycle {as_of} completed: {report.users_processed} users, "
                f"{report.total_paid} paid, {report.subscriptions_closed} closed ---")
    return report


def backfill_accruals(start, end):
    """Run the cycle for every date in [start, end]; already credited days are skipped."""
    reports = []
    current = start
    while current <= end:
        reports.append(run_accrual_cycle(current))
        current += timedelta(days=1)
    logger.info(f"--- Backfill {start}..{end} completed: "
                f"{sum(len(r.earnings) for r in reports)} earnings created ---")
    return reports


def run_daily_accrual(app):
    """Scheduler entry point."""
    with app.app_context():
        return run_accrual_cycle()
