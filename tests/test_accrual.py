"""
test_accrual.py - Tests for the daily ROI accrual cycle (tasks.py)

Tests:
- One earning per subscription per day, re-runs are skipped
- Cumulative earnings never pass the return cap; the cap closes the subscription
- Duration expiry closes the subscription
- Backfill over a date range
- Optional commissions on earnings
- A racing insert of the same day is reported as a skip
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from extensions import db as _db
from models import User, Subscription, Transaction, EARNING, COMMISSION
import state_machine as sm
import tasks
from tasks import run_accrual_cycle, backfill_accruals, accrue_user, return_cap
from exceptions import DuplicateAccrual
from referrals import deactivate_user
from utils import set_setting


def activation_date(user):
    user = _db.session.get(User, user.id)
    return user.active_subscription.activated_at.date()


def earnings_of(user):
    return Transaction.query.filter_by(user_id=user.id, type=EARNING) \
        .order_by(Transaction.accrual_date).all()


class TestDailyCycle:

    def test_pays_daily_roi(self, make_user, make_portfolio, subscribe):
        user = make_user()
        subscribe(user, make_portfolio(daily_roi=Decimal('1.5')), '1000.00')
        day = activation_date(user)

        report = run_accrual_cycle(day)

        assert report.users_processed == 1
        assert report.total_paid == Decimal('15.00')
        [earning] = earnings_of(user)
        assert earning.amount == Decimal('15.00')
        assert earning.accrual_date == day
        assert earning.status == sm.COMPLETED
        assert earning.balance_after == Decimal('1015.00')
        user = _db.session.get(User, user.id)
        assert user.total_earnings == Decimal('15.00')
        assert user.active_subscription.last_accrual_date == day

    def test_rerun_same_day_is_skipped(self, make_user, make_portfolio, subscribe):
        user = make_user()
        subscribe(user, make_portfolio())
        day = activation_date(user)

        run_accrual_cycle(day)
        report = run_accrual_cycle(day)

        assert report.skipped == 1
        assert report.users_processed == 0
        assert report.total_paid == Decimal('0')
        assert len(earnings_of(user)) == 1

    def test_accrue_user_raises_on_duplicate(self, make_user, make_portfolio, subscribe):
        user = make_user()
        subscribe(user, make_portfolio())
        day = activation_date(user)
        accrue_user(user.id, day)
        with pytest.raises(DuplicateAccrual):
            accrue_user(user.id, day)

    def test_no_accrual_before_activation(self, make_user, make_portfolio, subscribe):
        user = make_user()
        subscribe(user, make_portfolio())
        report = run_accrual_cycle(activation_date(user) - timedelta(days=1))
        assert report.total_paid == Decimal('0')
        assert earnings_of(user) == []

    def test_users_without_subscription_are_ignored(self, make_user, make_portfolio, subscribe):
        idle = make_user()
        investor = make_user()
        subscribe(investor, make_portfolio())
        report = run_accrual_cycle(activation_date(investor))
        assert report.users_processed == 1
        assert earnings_of(idle) == []

    def test_inactive_user_is_ignored(self, make_user, make_portfolio, subscribe):
        user = make_user()
        subscribe(user, make_portfolio())
        day = activation_date(user)
        deactivate_user(user.id)
        report = run_accrual_cycle(day)
        assert report.users_processed == 0
        assert earnings_of(user) == []

    def test_report_dict(self, make_user, make_portfolio, subscribe):
        user = make_user()
        subscribe(user, make_portfolio())
        day = activation_date(user)
        data = run_accrual_cycle(day).to_dict()
        assert data == {
            'as_of': day.isoformat(),
            'users_processed': 1,
            'total_paid': '10.00',
            'subscriptions_closed': 0,
            'skipped': 0,
            'failed': 0,
        }


class TestReturnCap:

    def test_three_hundred_cycles_reach_cap_exactly(self, make_user, make_portfolio, subscribe):
        user = make_user()
        subscribe(user, make_portfolio(daily_roi=Decimal('1.0'), total_return_limit=Decimal('300')),
                  '1000.00')
        start = activation_date(user)
        subscription_id = _db.session.get(User, user.id).active_subscription_id

        closed_on = None
        for i in range(300):
            report = run_accrual_cycle(start + timedelta(days=i))
            assert report.total_paid == Decimal('10.00')
            if report.subscriptions_closed:
                closed_on = i
        assert closed_on == 299

        subscription = _db.session.get(Subscription, subscription_id)
        assert subscription.status == 'completed'
        assert subscription.closed_at is not None

        user = _db.session.get(User, user.id)
        assert user.total_earnings == Decimal('3000.00')
        assert user.total_earnings == return_cap(subscription)
        assert user.bot_active is False
        assert user.wallet_balance == Decimal('4000.00')

        report = run_accrual_cycle(start + timedelta(days=300))
        assert report.users_processed == 0
        assert len(earnings_of(user)) == 300

    def test_last_payout_is_trimmed(self, make_user, make_portfolio, subscribe):
        user = make_user()
        subscribe(user, make_portfolio(daily_roi=Decimal('7'), total_return_limit=Decimal('10')),
                  '1000.00')
        start = activation_date(user)

        run_accrual_cycle(start)
        report = run_accrual_cycle(start + timedelta(days=1))

        assert [e.amount for e in earnings_of(user)] == [Decimal('70.00'), Decimal('30.00')]
        assert report.subscriptions_closed == 1
        assert _db.session.get(User, user.id).total_earnings == Decimal('100.00')


class TestDuration:

    def test_subscription_expires(self, make_user, make_portfolio, subscribe):
        user = make_user()
        subscribe(user, make_portfolio(duration_value=5, duration_unit='days'))
        start = activation_date(user)
        subscription_id = _db.session.get(User, user.id).active_subscription_id

        for i in range(5):
            assert run_accrual_cycle(start + timedelta(days=i)).total_paid == Decimal('10.00')
        report = run_accrual_cycle(start + timedelta(days=5))

        assert report.total_paid == Decimal('0')
        assert report.subscriptions_closed == 1
        assert _db.session.get(Subscription, subscription_id).status == 'expired'
        assert _db.session.get(User, user.id).bot_active is False
        assert len(earnings_of(user)) == 5

    def test_duration_units(self, make_portfolio):
        assert make_portfolio(duration_value=2, duration_unit='months').duration_days == 60
        assert make_portfolio(duration_value=1, duration_unit='years').duration_days == 365


class TestBackfill:

    def test_backfill_range(self, make_user, make_portfolio, subscribe):
        user = make_user()
        subscribe(user, make_portfolio())
        start = activation_date(user)

        run_accrual_cycle(start + timedelta(days=1))
        reports = backfill_accruals(start, start + timedelta(days=3))

        assert len(reports) == 4
        assert sum(len(r.earnings) for r in reports) == 3
        assert sum(r.skipped for r in reports) == 1
        assert [e.accrual_date for e in earnings_of(user)] == [start + timedelta(days=i) for i in range(4)]

    def test_backfill_is_idempotent(self, make_user, make_portfolio, subscribe):
        user = make_user()
        subscribe(user, make_portfolio())
        start = activation_date(user)
        backfill_accruals(start, start + timedelta(days=2))
        reports = backfill_accruals(start, start + timedelta(days=2))
        assert sum(len(r.earnings) for r in reports) == 0
        assert len(earnings_of(user)) == 3


class TestCommissionOnEarnings:

    def test_disabled_by_default(self, chain, make_portfolio, subscribe):
        a, b, c, d = chain
        subscribe(d, make_portfolio())
        deposit_commissions = Transaction.query.filter_by(type=COMMISSION).count()
        run_accrual_cycle(activation_date(d))
        assert Transaction.query.filter_by(type=COMMISSION).count() == deposit_commissions

    def test_enabled_by_setting(self, chain, make_portfolio, subscribe):
        a, b, c, d = chain
        subscribe(d, make_portfolio())
        set_setting('commission_on_earnings', 'true')

        report = run_accrual_cycle(activation_date(d))

        [earning_id] = report.earnings
        rows = Transaction.query.filter_by(type=COMMISSION, source_transaction_id=earning_id) \
            .order_by(Transaction.referral_level).all()
        assert [(row.user_id, row.amount) for row in rows] == [
            (c.id, Decimal('1.00')), (b.id, Decimal('0.50')), (a.id, Decimal('0.30'))]


class TestRaces:

    def test_concurrent_insert_is_reported_as_skip(self, make_user, make_portfolio, subscribe,
                                                   monkeypatch):
        user = make_user()
        subscribe(user, make_portfolio())
        day = activation_date(user)
        run_accrual_cycle(day)

        # the pre-check misses the row a racing worker just wrote
        monkeypatch.setattr(tasks, 'earning_exists', lambda subscription_id, as_of: False)
        report = run_accrual_cycle(day)

        assert report.skipped == 1
        assert report.failed == 0
        assert len(earnings_of(user)) == 1
        assert _db.session.get(User, user.id).wallet_balance == Decimal('1010.00')
