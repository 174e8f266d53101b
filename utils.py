import random
import string
import time
import logging
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from flask import current_app, has_request_context, request
from extensions import db
from models import User, SystemSetting, AuditLog
from exceptions import InvalidAmount

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')

# --- Money ---

def to_money(value):
    """Parse ``value`` into a positive two-decimal amount or raise InvalidAmount."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount(f"Invalid amount: {value!r}")
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmount(f"Amount must be positive, got {value!r}")
    if amount != amount.quantize(CENT):
        raise InvalidAmount(f"Amount has more than two decimal places: {value!r}")
    return amount.quantize(CENT)


def percent_of(amount, rate):
    """``amount * rate / 100`` truncated to cents."""
    return (Decimal(amount) * Decimal(str(rate)) / Decimal('100')).quantize(CENT, rounding=ROUND_DOWN)


def add_to_level(counters, level, delta):
    """Copy of a per-level JSON counter with ``delta`` added under ``level<N>``."""
    counters = dict(counters or {})
    key = f"level{level}"
    if isinstance(delta, Decimal):
        counters[key] = str((Decimal(counters.get(key) or 0) + delta).quantize(CENT))
    else:
        counters[key] = (counters.get(key) or 0) + delta
    return counters

# --- Identifiers ---

def generate_referral_code():
    while True:
        code = ''.join(random.choices(string.ascii_uppercase + string.digits, k=8))
        if not User.query.filter_by(referral_code=code).first():
            return code


def generate_transaction_id(tx_type):
    """Type prefix + base36 millisecond timestamp + random suffix, e.g. DEPLX3K9A2QF7T2."""
    millis = int(time.time() * 1000)
    digits = string.digits + string.ascii_uppercase
    stamp = ''
    while millis:
        millis, rem = divmod(millis, 36)
        stamp = digits[rem] + stamp
    suffix = ''.join(random.choices(digits, k=6))
    return f"{tx_type[:3].upper()}{stamp}{suffix}"

# --- Settings ---

def get_setting(key, default=''):
    setting = db.session.get(SystemSetting, key)
    return setting.value if setting else default


def set_setting(key, value):
    setting = db.session.get(SystemSetting, key)
    if not setting:
        setting = SystemSetting(key=key)
        db.session.add(setting)
    setting.value = value
    db.session.commit()


def validate_rate_table(rates):
    rates = [Decimal(str(rate)) for rate in rates]
    if not rates:
        raise ValueError("Commission rate table is empty")
    for rate in rates:
        if rate < 0 or rate > 100:
            raise ValueError(f"Commission rate out of range: {rate}")
    for upper, lower in zip(rates, rates[1:]):
        if lower > upper:
            raise ValueError(f"Commission rates must be non-increasing by level: {rates}")
    return rates


def get_commission_rates():
    """Rate per level in percent, level 1 first, capped at MAX_REFERRAL_DEPTH."""
    raw = get_setting('commission_rates')
    if raw:
        rates = raw.split(',')
    else:
        rates = current_app.config['COMMISSION_RATES']
    rates = validate_rate_table(rates)
    return rates[:current_app.config['MAX_REFERRAL_DEPTH']]


def commission_on_earnings():
    raw = get_setting('commission_on_earnings')
    if raw:
        return raw.lower() in ('true', '1', 'yes')
    return current_app.config['COMMISSION_ON_EARNINGS']

# --- Audit ---

def log_admin_activity(admin_id, action, details):
    """Add an AuditLog row to the current session; the caller commits."""
    ip_address = request.remote_addr if has_request_context() else None
    db.session.add(AuditLog(user_id=admin_id, action=action, details=details, ip_address=ip_address))
