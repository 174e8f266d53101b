"""
Seed script for a fresh database.

1. Create every table defined in models.py.
2. Create the default roles (Admin, Investor, Finance).
3. Create the super admin from environment variables.
4. Create the starter portfolios and admin deposit wallets.
"""

import os
from decimal import Decimal
from app import create_app
from extensions import db
from models import Role, User, Portfolio, AdminWallet, SystemSetting
from referrals import create_user

app = create_app(os.environ.get('FLASK_CONFIG', 'default'))

ROLES = {
    'Admin': ('Super Administrator', ''),
    'Investor': ('Standard User', ''),
    'Finance': ('Reviews deposits and withdrawals',
                'manage_payments,manage_withdrawals,view_ledger'),
}

PORTFOLIOS = [
    dict(name='AI Driven Trading', description='7-10% Monthly Returns',
         min_investment=Decimal('1000.00'), max_investment=Decimal('1000000.00'),
         daily_roi=Decimal('0.30'), total_return_limit=Decimal('240.0'),
         duration_value=24, duration_unit='months', type='AI Trading', category='Monthly'),
    dict(name='Gold Vault Investment', description='12-15% Annual Returns',
         min_investment=Decimal('1000.00'), max_investment=Decimal('1000000.00'),
         daily_roi=Decimal('0.0384'), total_return_limit=Decimal('15.0'),
         duration_value=12, duration_unit='months', type='Gold Vault', category='Annual'),
    dict(name='Weekly Arbitrage Strategy', description='3-5% Weekly Returns',
         min_investment=Decimal('1000.00'), max_investment=Decimal('1000000.00'),
         daily_roi=Decimal('0.571'), total_return_limit=Decimal('480.0'),
         duration_value=24, duration_unit='months', type='Arbitrage', category='Weekly'),
]


def seed_database():
    with app.app_context():
        db.create_all()
        print("Database tables created.")

        for role_name, (role_desc, permissions) in ROLES.items():
            if not Role.query.filter_by(name=role_name).first():
                db.session.add(Role(name=role_name, description=role_desc, permissions=permissions))
                print(f"   Role created: {role_name}")
        db.session.commit()

        # Admin credentials come from the environment
        admin_email = os.environ.get('ADMIN_EMAIL', 'admin@example.com')
        admin = User.query.filter_by(email=admin_email).first()
        if not admin:
            admin = create_user(admin_email, 'Super', 'Admin',
                                role=Role.query.filter_by(name='Admin').first(),
                                is_email_verified=True)
            print(f"Super Admin created: {admin_email}")

        if not Portfolio.query.first():
            for order, data in enumerate(PORTFOLIOS):
                db.session.add(Portfolio(created_by=admin.id, display_order=order, **data))
            print(f"   {len(PORTFOLIOS)} portfolios created")

        if not AdminWallet.query.first():
            for wallet_type, env_key, network in (('USDT', 'WALLET_USDT', 'TRC20'),
                                                  ('BTC', 'WALLET_BTC', 'Bitcoin'),
                                                  ('ETH', 'WALLET_ETH', 'ERC20'),
                                                  ('BNB', 'WALLET_BNB', 'BEP20')):
                address = os.environ.get(env_key)
                if address:
                    db.session.add(AdminWallet(wallet_type=wallet_type, wallet_address=address,
                                               network_type=network, created_by=admin.id))

        if not db.session.get(SystemSetting, 'commission_rates'):
            rates = ','.join(str(rate) for rate in app.config['COMMISSION_RATES'])
            db.session.add(SystemSetting(key='commission_rates', value=rates))

        db.session.commit()
        print("\nDatabase seeding completed successfully!")


if __name__ == '__main__':
    seed_database()
