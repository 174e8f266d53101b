"""
Shared pytest fixtures.

Every test gets a fresh in-memory database plus small factories for users,
roles, portfolios and funded wallets.
"""

import itertools
from decimal import Decimal

import pytest

from app import create_app
from extensions import db as _db
from models import Role, Portfolio, BONUS
from referrals import create_user
from ledger import apply_transaction
from services import submit_deposit, approve_transaction


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        _db.create_all()
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    counter = itertools.count(1)

    def _make(referral_code=None, role=None, **fields):
        n = next(counter)
        user = create_user(f"user{n}@example.com", 'Test', f'User{n}',
                           referral_code=referral_code, role=role)
        if fields:
            for key, value in fields.items():
                setattr(user, key, value)
            _db.session.commit()
        return user
    return _make


@pytest.fixture
def make_role(app):
    def _make(name, permissions=''):
        role = Role(name=name, description=name, permissions=permissions)
        _db.session.add(role)
        _db.session.commit()
        return role
    return _make


@pytest.fixture
def admin(make_user, make_role):
    return make_user(role=make_role('Admin'))


@pytest.fixture
def make_portfolio(app):
    def _make(**fields):
        data = dict(
            name='Test Plan',
            min_investment=Decimal('100.00'),
            max_investment=Decimal('100000.00'),
            daily_roi=Decimal('1.0'),
            total_return_limit=Decimal('300'),
            duration_value=365,
            duration_unit='days',
        )
        data.update(fields)
        portfolio = Portfolio(**data)
        _db.session.add(portfolio)
        _db.session.commit()
        return portfolio
    return _make


@pytest.fixture
def fund(app):
    """Credit a wallet through the balance mutator."""
    def _fund(user, amount, tx_type=BONUS):
        return apply_transaction(user.id, tx_type, amount)
    return _fund


@pytest.fixture
def subscribe(admin):
    """Submit and approve a deposit into ``portfolio``."""
    def _subscribe(user, portfolio, amount='1000.00'):
        tx = submit_deposit(user.id, portfolio.id, amount, 'USDT')
        return approve_transaction(tx.id, admin.id)
    return _subscribe


@pytest.fixture
def chain(make_user):
    """Referral chain A -> B -> C -> D (D referred by C, C by B, B by A)."""
    a = make_user()
    b = make_user(referral_code=a.referral_code)
    c = make_user(referral_code=b.referral_code)
    d = make_user(referral_code=c.referral_code)
    return a, b, c, d
