import os
import logging
from datetime import date
from logging.handlers import RotatingFileHandler
import click
from flask import Flask, jsonify, current_app
from werkzeug.middleware.proxy_fix import ProxyFix

from config import config
from extensions import db, login_manager, scheduler
from exceptions import LedgerError
from tasks import run_accrual_cycle, backfill_accruals, run_daily_accrual
from referrals import distribute_missing_commissions
from ledger import reconcile_user

from routes.api import api_bp
from routes.admin import admin_bp


def create_app(config_name='default', overrides=None):
    app = Flask(__name__)

    # Load Config
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    # Init Extensions
    db.init_app(app)
    login_manager.init_app(app)

    from models import User

    # Identity is asserted by the upstream auth layer
    @login_manager.request_loader
    def load_user_from_request(req):
        raw = req.headers.get(current_app.config['AUTH_USER_HEADER'])
        if not raw or not raw.isdigit():
            return None
        user = db.session.get(User, int(raw))
        return user if user and user.is_active else None

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify(error='Unauthorized', message='Authentication required'), 401

    # Register Blueprints
    app.register_blueprint(api_bp)
    app.register_blueprint(admin_bp)

    # Error Handlers
    @app.errorhandler(LedgerError)
    def handle_ledger_error(e):
        payload = {'error': e.code, 'message': str(e)}
        if e.transaction is not None and e.transaction.id is not None:
            payload['transaction'] = e.transaction.to_dict()
        return jsonify(payload), e.status_code

    @app.errorhandler(404)
    def page_not_found(e):
        return jsonify(error='NotFound', message='Resource not found'), 404

    @app.errorhandler(500)
    def internal_server_error(e):
        app.logger.error('Server Error: {}'.format(e))
        return jsonify(error='InternalError', message='Please try again later.'), 500

    # Logging
    if not app.debug and not app.testing:
        if not os.path.exists('logs'):
            os.mkdir('logs')
        file_handler = RotatingFileHandler('logs/ledger.log', maxBytes=10240, backupCount=10)
        file_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(name)s: %(message)s'))
        file_handler.setLevel(logging.INFO)
        app.logger.addHandler(file_handler)
        app.logger.setLevel(logging.INFO)
        root = logging.getLogger()
        root.addHandler(file_handler)
        root.setLevel(logging.INFO)
        app.logger.info('Ledger startup')

    # Register CLI Commands
    @app.cli.command('run-accrual')
    @click.option('--date', 'as_of', default=None, help='Accrual date (YYYY-MM-DD), defaults to today.')
    def run_accrual_command(as_of):
        """Run the daily ROI accrual cycle once."""
        report = run_accrual_cycle(date.fromisoformat(as_of) if as_of else None)
        click.echo(f"Accrual {report.as_of}: {report.users_processed} users, "
                   f"{report.total_paid} paid, {report.subscriptions_closed} closed, "
                   f"{report.skipped} skipped, {report.failed} failed")

    @app.cli.command('backfill-accruals')
    @click.option('--start', required=True, help='First date (YYYY-MM-DD).')
    @click.option('--end', default=None, help='Last date (YYYY-MM-DD), defaults to today.')
    def backfill_command(start, end):
        """Credit missed accrual days in a date range."""
        end_date = date.fromisoformat(end) if end else date.today()
        reports = backfill_accruals(date.fromisoformat(start), end_date)
        click.echo(f"Backfill finished. Total earnings created: {sum(len(r.earnings) for r in reports)}")

    @app.cli.command('distribute-missing-commissions')
    def distribute_missing_command():
        """Pay referral commissions for completed deposits that never got any."""
        count = distribute_missing_commissions()
        click.echo(f"Created {count} commission transactions")

    @app.cli.command('audit-ledger')
    def audit_ledger_command():
        """Compare every wallet balance with the sum of its completed transactions."""
        mismatches = 0
        for (user_id,) in db.session.query(User.id).order_by(User.id):
            stored, computed, ok = reconcile_user(user_id)
            if not ok:
                mismatches += 1
                click.echo(f"User {user_id}: stored {stored}, ledger {computed}")
        click.echo(f"Audit finished with {mismatches} mismatches")

    # Daily accrual job
    if app.config.get('SCHEDULER_ENABLED') and not scheduler.running:
        scheduler.add_job(run_daily_accrual, 'cron', args=[app], id='daily_accrual',
                          hour=app.config['ACCRUAL_HOUR'], minute=app.config['ACCRUAL_MINUTE'],
                          replace_existing=True)
        scheduler.start()
        app.logger.info('Accrual scheduler started')

    return app

# Create App instance for Gunicorn
app = create_app(os.environ.get('FLASK_CONFIG', 'default'))
app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

if __name__ == '__main__':
    app.run(debug=True, host='0.0.0.0', port=5000)
