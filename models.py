"""
Database models (SQLAlchemy).

Each class maps to one table. Money columns are Numeric(15, 2); balances and
aggregate counters on User are written only by ledger.py.
"""

from datetime import datetime
from decimal import Decimal
from flask_login import UserMixin
from extensions import db

# Transaction types
DEPOSIT = 'deposit'
WITHDRAWAL = 'withdrawal'
COMMISSION = 'commission'
EARNING = 'earning'
BONUS = 'bonus'
PENALTY = 'penalty'
REFUND = 'refund'

TRANSACTION_TYPES = (DEPOSIT, WITHDRAWAL, COMMISSION, EARNING, BONUS, PENALTY, REFUND)
CREDIT_TYPES = (DEPOSIT, EARNING, COMMISSION, BONUS, REFUND)
DEBIT_TYPES = (WITHDRAWAL, PENALTY)

# Transaction categories
CATEGORY_MANUAL = 'manual'
CATEGORY_BOT = 'bot'
CATEGORY_REFERRAL = 'referral'
CATEGORY_ADMIN = 'admin'

DURATION_DAYS = {'days': 1, 'months': 30, 'years': 365}


class SystemSetting(db.Model):
    """Key/value store for runtime settings (e.g. commission_rates)."""
    __tablename__ = 'system_settings'
    key = db.Column(db.String(50), primary_key=True)
    value = db.Column(db.String(200))

# ==========================================
# 1. Roles & Permissions
# ==========================================
class Role(db.Model):
    """User roles (Admin, Investor, Finance)."""
    __tablename__ = 'roles'
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(50), unique=True, nullable=False)
    description = db.Column(db.String(200))
    permissions = db.Column(db.Text)  # comma separated permission names
    users = db.relationship('User', backref='role', lazy=True)

    def allows(self, permission_name):
        if self.name == 'Admin':
            return True
        perms = self.permissions.split(',') if self.permissions else []
        return permission_name in perms

# ==========================================
# 2. Users
# ==========================================
class User(UserMixin, db.Model):
    """Platform user with wallet balance and referral position."""
    __tablename__ = 'users'
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(150), unique=True, nullable=False)
    first_name = db.Column(db.String(150), nullable=False)
    last_name = db.Column(db.String(150), nullable=False)
    role_id = db.Column(db.Integer, db.ForeignKey('roles.id'))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    is_email_verified = db.Column(db.Boolean, default=False)

    # Wallet
    wallet_balance = db.Column(db.Numeric(15, 2), default=Decimal('0.00'), nullable=False)
    total_deposited = db.Column(db.Numeric(15, 2), default=Decimal('0.00'), nullable=False)
    total_withdrawn = db.Column(db.Numeric(15, 2), default=Decimal('0.00'), nullable=False)
    total_earnings = db.Column(db.Numeric(15, 2), default=Decimal('0.00'), nullable=False)
    total_commissions = db.Column(db.Numeric(15, 2), default=Decimal('0.00'), nullable=False)

    # Referral tree
    referral_code = db.Column(db.String(20), unique=True, nullable=False)
    referred_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    referral_level = db.Column(db.Integer, default=0, nullable=False)
    direct_referrals = db.Column(db.Integer, default=0, nullable=False)
    total_referrals = db.Column(db.Integer, default=0, nullable=False)
    level_counts = db.Column(db.JSON)  # {"level1": 3, "level2": 7, ...}
    level_earnings = db.Column(db.JSON)  # {"level1": "12.50", ...}

    # Rank
    current_rank = db.Column(db.String(20), default='Bronze', nullable=False)
    rank_updated_at = db.Column(db.DateTime, default=datetime.utcnow)

    # Active subscription / bot
    active_subscription_id = db.Column(
        db.Integer, db.ForeignKey('subscriptions.id', use_alter=True, name='fk_users_active_subscription'))
    bot_active = db.Column(db.Boolean, default=False, nullable=False)
    bot_activated_at = db.Column(db.DateTime)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    referrals = db.relationship('User', backref=db.backref('referrer', remote_side=[id]), lazy=True)
    subscriptions = db.relationship('Subscription', backref='user', lazy=True,
                                    foreign_keys='Subscription.user_id')
    active_subscription = db.relationship('Subscription', foreign_keys=[active_subscription_id],
                                          post_update=True)
    transactions = db.relationship('Transaction', backref='user', lazy='dynamic',
                                   foreign_keys='Transaction.user_id')

    def has_permission(self, permission_name):
        return bool(self.role and self.role.allows(permission_name))

# ==========================================
# 3. Portfolios (investment plans)
# ==========================================
class Portfolio(db.Model):
    """Investment plan template paying a fixed daily ROI up to a return cap."""
    __tablename__ = 'portfolios'
    ADMIN_FIELDS = ('name', 'description', 'is_active', 'is_visible', 'display_order')

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.String(500))
    min_investment = db.Column(db.Numeric(15, 2), nullable=False)
    max_investment = db.Column(db.Numeric(15, 2), nullable=False)
    daily_roi = db.Column(db.Numeric(8, 4), nullable=False)  # percent per day
    total_return_limit = db.Column(db.Numeric(8, 2), nullable=False)  # percent of principal
    duration_value = db.Column(db.Integer, nullable=False)
    duration_unit = db.Column(db.String(10), default='days', nullable=False)
    type = db.Column(db.String(30), default='Basic')
    category = db.Column(db.String(30))
    subscription_fee = db.Column(db.Numeric(15, 2), default=Decimal('0.00'))
    requires_subscription = db.Column(db.Boolean, default=False)
    available_slots = db.Column(db.Integer, default=-1)  # -1 means unlimited
    used_slots = db.Column(db.Integer, default=0, nullable=False)
    is_active = db.Column(db.Boolean, default=True)
    is_visible = db.Column(db.Boolean, default=True)
    display_order = db.Column(db.Integer, default=0)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    @property
    def duration_days(self):
        return self.duration_value * DURATION_DAYS[self.duration_unit]

    def has_free_slot(self):
        return self.available_slots == -1 or self.used_slots < self.available_slots

# ==========================================
# 4. Subscriptions
# ==========================================
class Subscription(db.Model):
    """An activated investment of a user in a portfolio."""
    __tablename__ = 'subscriptions'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    portfolio_id = db.Column(db.Integer, db.ForeignKey('portfolios.id'), nullable=False)
    portfolio = db.relationship('Portfolio', backref='subscriptions')
    deposit_id = db.Column(db.Integer, db.ForeignKey('transactions.id', use_alter=True,
                                                     name='fk_subscriptions_deposit'))
    principal = db.Column(db.Numeric(15, 2), nullable=False)
    subscription_fee = db.Column(db.Numeric(15, 2), default=Decimal('0.00'))
    status = db.Column(db.String(20), default='active', nullable=False)
    activated_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    ends_at = db.Column(db.DateTime)
    closed_at = db.Column(db.DateTime)
    last_accrual_date = db.Column(db.Date)

# ==========================================
# 5. Transactions (ledger)
# ==========================================
class Transaction(db.Model):
    """Ledger entry. Amount and balances are frozen once completed."""
    __tablename__ = 'transactions'
    __table_args__ = (
        db.UniqueConstraint('subscription_id', 'accrual_date', name='uq_earning_per_day'),
        db.UniqueConstraint('source_transaction_id', 'user_id', 'referral_level',
                            name='uq_commission_per_level'),
        db.Index('ix_transactions_user_created', 'user_id', 'created_at'),
        db.Index('ix_transactions_type_status', 'type', 'status'),
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.String(50), unique=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    type = db.Column(db.String(20), nullable=False)
    category = db.Column(db.String(20), default=CATEGORY_MANUAL)
    amount = db.Column(db.Numeric(15, 2), nullable=False)
    currency = db.Column(db.String(10), default='USD')
    status = db.Column(db.String(20), default='pending', nullable=False)

    # Filled when the balance mutation is applied
    balance_before = db.Column(db.Numeric(15, 2))
    balance_after = db.Column(db.Numeric(15, 2))

    # Deposit / earning context
    portfolio_id = db.Column(db.Integer, db.ForeignKey('portfolios.id'))
    subscription_id = db.Column(db.Integer, db.ForeignKey('subscriptions.id'))
    accrual_date = db.Column(db.Date)
    subscription_fee = db.Column(db.Numeric(15, 2), default=Decimal('0.00'))
    payment_method = db.Column(db.String(20))
    tx_hash = db.Column(db.String(100))
    deposit_info = db.Column(db.JSON)
    withdrawal_info = db.Column(db.JSON)
    bot_info = db.Column(db.JSON)

    # Referral commission context
    source_transaction_id = db.Column(db.Integer, db.ForeignKey('transactions.id'))
    referral_level = db.Column(db.Integer)
    referral_info = db.Column(db.JSON)

    # Admin handling
    processed_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    processed_at = db.Column(db.DateTime)
    approved_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    approved_at = db.Column(db.DateTime)
    rejected_by = db.Column(db.Integer, db.ForeignKey('users.id'))
    rejected_at = db.Column(db.DateTime)
    rejection_reason = db.Column(db.Text)
    admin_notes = db.Column(db.Text)
    description = db.Column(db.String(500))

    # Timestamps and error tracking
    initiated_at = db.Column(db.DateTime, default=datetime.utcnow)
    completed_at = db.Column(db.DateTime)
    retry_count = db.Column(db.Integer, default=0, nullable=False)
    last_error = db.Column(db.JSON)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    portfolio = db.relationship('Portfolio')
    subscription = db.relationship('Subscription', foreign_keys=[subscription_id])
    source_transaction = db.relationship('Transaction', remote_side=[id])

    @property
    def direction(self):
        return 'credit' if self.type in CREDIT_TYPES else 'debit'

    def to_dict(self):
        def money(value):
            return str(value) if value is not None else None

        def stamp(value):
            return value.isoformat() if value else None

        return {
            'id': self.id,
            'transaction_id': self.transaction_id,
            'user_id': self.user_id,
            'type': self.type,
            'direction': self.direction,
            'category': self.category,
            'amount': money(self.amount),
            'currency': self.currency,
            'status': self.status,
            'balance_before': money(self.balance_before),
            'balance_after': money(self.balance_after),
            'portfolio_id': self.portfolio_id,
            'subscription_id': self.subscription_id,
            'accrual_date': stamp(self.accrual_date),
            'referral_info': self.referral_info,
            'rejection_reason': self.rejection_reason,
            'initiated_at': stamp(self.initiated_at),
            'completed_at': stamp(self.completed_at),
            'last_error': self.last_error,
        }

# ==========================================
# 6. Admin deposit wallets
# ==========================================
class AdminWallet(db.Model):
    """Destination address per currency for deposits (reference data)."""
    __tablename__ = 'admin_wallets'
    id = db.Column(db.Integer, primary_key=True)
    wallet_type = db.Column(db.String(10), nullable=False)  # USDT, BTC, ETH, BNB
    wallet_address = db.Column(db.String(200), nullable=False)
    network_type = db.Column(db.String(30))
    description = db.Column(db.String(200))
    is_active = db.Column(db.Boolean, default=True)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'))

# ==========================================
# 7. Audit Logs
# ==========================================
class AuditLog(db.Model):
    """Record of admin decisions over the ledger."""
    __tablename__ = 'audit_logs'
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    action = db.Column(db.String(100), nullable=False)
    details = db.Column(db.String(500))
    ip_address = db.Column(db.String(50))
    timestamp = db.Column(db.DateTime, default=datetime.utcnow)
