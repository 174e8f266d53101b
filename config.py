import os
from dotenv import load_dotenv

# Load variables from a local .env file
basedir = os.path.abspath(os.path.dirname(__file__))
load_dotenv(os.path.join(basedir, '.env'))


def _rates_from_env(name, default):
    raw = os.environ.get(name)
    if not raw:
        return default
    return [float(part) for part in raw.split(',') if part.strip()]


class Config:
    """Base settings shared by every environment."""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'hard-to-guess-fallback-key'

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or \
        'sqlite:///' + os.path.join(basedir, 'instance', 'ledger.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Identity is resolved by the upstream auth layer and forwarded in this header
    AUTH_USER_HEADER = os.environ.get('AUTH_USER_HEADER', 'X-Authenticated-User')

    DEFAULT_CURRENCY = os.environ.get('DEFAULT_CURRENCY', 'USD')

    # Referral commissions, percent per level (level 1 = direct referrer)
    COMMISSION_RATES = _rates_from_env('COMMISSION_RATES', [10, 5, 3, 2, 1])
    MAX_REFERRAL_DEPTH = int(os.environ.get('MAX_REFERRAL_DEPTH') or len(COMMISSION_RATES))
    COMMISSION_ON_EARNINGS = os.environ.get('COMMISSION_ON_EARNINGS') == 'True'

    # Balance mutator retry policy for transient storage failures
    LEDGER_MAX_RETRIES = int(os.environ.get('LEDGER_MAX_RETRIES') or 3)
    LEDGER_RETRY_BACKOFF = float(os.environ.get('LEDGER_RETRY_BACKOFF') or 0.05)

    # Daily ROI accrual job
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED') == 'True'
    ACCRUAL_HOUR = int(os.environ.get('ACCRUAL_HOUR') or 0)
    ACCRUAL_MINUTE = int(os.environ.get('ACCRUAL_MINUTE') or 5)

    # Minimum total deposited for each rank, highest first
    RANK_THRESHOLDS = [
        ('Diamond', 100000),
        ('Platinum', 25000),
        ('Gold', 5000),
        ('Silver', 1000),
        ('Bronze', 0),
    ]

    LEDGER_PAGE_SIZE = 50
    LEDGER_MAX_PAGE_SIZE = 200


class DevelopmentConfig(Config):
    DEBUG = True


class ProductionConfig(Config):
    DEBUG = False
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'True') == 'True'


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SCHEDULER_ENABLED = False
    COMMISSION_RATES = [10, 5, 3, 2, 1]
    MAX_REFERRAL_DEPTH = 5
    COMMISSION_ON_EARNINGS = False
    LEDGER_RETRY_BACKOFF = 0


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
