"""
test_api.py - Tests for the JSON endpoints (routes/api.py, routes/admin.py)

Each test acts as a single identity; the caller id is forwarded in the
X-Authenticated-User header.
"""

from decimal import Decimal

from extensions import db as _db
from models import User, Transaction, DEPOSIT, WITHDRAWAL
import state_machine as sm
from services import submit_deposit, submit_withdrawal


def as_user(user):
    return {'X-Authenticated-User': str(user.id)}


class TestAuthentication:

    def test_missing_identity(self, client):
        response = client.get('/api/balance')
        assert response.status_code == 401
        assert response.get_json()['error'] == 'Unauthorized'

    def test_unknown_identity(self, client):
        response = client.get('/api/balance', headers={'X-Authenticated-User': '404'})
        assert response.status_code == 401

    def test_balance(self, client, make_user, fund):
        user = make_user()
        fund(user, '42.50')
        response = client.get('/api/balance', headers=as_user(user))
        assert response.status_code == 200
        data = response.get_json()
        assert data['wallet_balance'] == '42.50'
        assert data['withdrawable'] == '42.50'
        assert data['current_rank'] == 'Bronze'


class TestUserEndpoints:

    def test_submit_deposit(self, client, make_user, make_portfolio):
        user = make_user()
        portfolio = make_portfolio()
        response = client.post('/api/deposits', headers=as_user(user), json={
            'portfolio_id': portfolio.id, 'amount': '250.00', 'payment_method': 'ETH'})
        assert response.status_code == 201
        data = response.get_json()
        assert data['status'] == sm.PENDING
        assert data['type'] == DEPOSIT
        assert data['amount'] == '250.00'

    def test_invalid_deposit(self, client, make_user, make_portfolio):
        user = make_user()
        portfolio = make_portfolio()
        response = client.post('/api/deposits', headers=as_user(user), json={
            'portfolio_id': portfolio.id, 'amount': 'lots', 'payment_method': 'ETH'})
        assert response.status_code == 400
        assert response.get_json()['error'] == 'InvalidAmount'

    def test_withdrawal_over_balance(self, client, make_user, fund):
        user = make_user()
        fund(user, '10.00')
        response = client.post('/api/withdrawals', headers=as_user(user),
                               json={'amount': '20.00', 'destination': 'TADDR'})
        assert response.status_code == 409
        assert response.get_json()['error'] == 'InsufficientBalance'
        assert Transaction.query.filter_by(type=WITHDRAWAL).count() == 0

    def test_cancel_withdrawal(self, client, make_user, fund):
        user = make_user()
        fund(user, '10.00')
        tx = submit_withdrawal(user.id, '5.00', 'TADDR')
        response = client.post(f'/api/transactions/{tx.id}/cancel', headers=as_user(user))
        assert response.status_code == 200
        assert response.get_json()['status'] == sm.CANCELLED

    def test_ledger_page(self, client, make_user, fund):
        user = make_user()
        for amount in ('1.00', '2.00', '3.00'):
            fund(user, amount)
        response = client.get('/api/ledger?per_page=2', headers=as_user(user))
        data = response.get_json()
        assert data['total'] == 3
        assert data['pages'] == 2
        assert [item['amount'] for item in data['items']] == ['3.00', '2.00']
        assert data['items'][0]['direction'] == 'credit'

    def test_ledger_rejects_malformed_filters(self, client, make_user):
        user = make_user()
        for query in ('start=notadate', 'end=2024-13-40', 'status=lost', 'type=gift'):
            response = client.get(f'/api/ledger?{query}', headers=as_user(user))
            assert response.status_code == 400
            assert response.get_json()['error'] == 'InvalidParameter'

    def test_ledger_page_size_is_capped(self, app, client, make_user, fund):
        user = make_user()
        fund(user, '1.00')
        response = client.get('/api/ledger?per_page=100000', headers=as_user(user))
        assert response.status_code == 200
        assert response.get_json()['per_page'] == app.config['LEDGER_MAX_PAGE_SIZE']

    def test_commission_preview(self, client, chain):
        a, b, c, d = chain
        response = client.get('/api/commissions/preview?amount=100.00', headers=as_user(d))
        data = response.get_json()
        assert [row['amount'] for row in data] == ['10.00', '5.00', '3.00']


class TestAdminEndpoints:

    def test_investor_cannot_view_queue(self, client, make_user):
        user = make_user()
        response = client.get('/admin/transactions', headers=as_user(user))
        assert response.status_code == 403
        assert response.get_json()['error'] == 'PermissionDenied'

    def test_investor_cannot_approve(self, client, make_user, make_portfolio):
        user = make_user()
        tx = submit_deposit(user.id, make_portfolio().id, '500.00', 'USDT')
        response = client.post(f'/admin/transactions/{tx.id}/approve', headers=as_user(user))
        assert response.status_code == 403
        assert _db.session.get(Transaction, tx.id).status == sm.PENDING

    def test_approve_deposit(self, client, admin, make_user, make_portfolio):
        user = make_user()
        tx = submit_deposit(user.id, make_portfolio().id, '500.00', 'USDT')
        response = client.post(f'/admin/transactions/{tx.id}/approve', headers=as_user(admin),
                               json={'notes': 'ok'})
        assert response.status_code == 200
        assert response.get_json()['status'] == sm.COMPLETED
        assert _db.session.get(User, user.id).wallet_balance == Decimal('500.00')

    def test_double_approval_conflict(self, client, admin, make_user, make_portfolio):
        user = make_user()
        tx = submit_deposit(user.id, make_portfolio().id, '500.00', 'USDT')
        client.post(f'/admin/transactions/{tx.id}/approve', headers=as_user(admin))
        response = client.post(f'/admin/transactions/{tx.id}/approve', headers=as_user(admin))
        assert response.status_code == 409
        data = response.get_json()
        assert data['error'] == 'InvalidStateTransition'
        assert data['transaction']['status'] == sm.COMPLETED

    def test_reject_requires_reason(self, client, admin, make_user, make_portfolio):
        user = make_user()
        tx = submit_deposit(user.id, make_portfolio().id, '500.00', 'USDT')
        response = client.post(f'/admin/transactions/{tx.id}/reject', headers=as_user(admin), json={})
        assert response.status_code == 400

    def test_adjust_balance(self, client, admin, make_user):
        user = make_user()
        response = client.post(f'/admin/users/{user.id}/adjust', headers=as_user(admin),
                               json={'type': 'bonus', 'amount': '12.00', 'reason': 'Welcome'})
        assert response.status_code == 201
        assert _db.session.get(User, user.id).wallet_balance == Decimal('12.00')

    def test_run_accrual(self, client, admin, make_user, make_portfolio, subscribe):
        user = make_user()
        subscribe(user, make_portfolio())
        day = _db.session.get(User, user.id).active_subscription.activated_at.date()
        response = client.post('/admin/accrual/run', headers=as_user(admin),
                               json={'date': day.isoformat()})
        assert response.status_code == 200
        assert response.get_json()['total_paid'] == '10.00'

    def test_run_accrual_rejects_bad_date(self, client, admin):
        response = client.post('/admin/accrual/run', headers=as_user(admin), json={'date': '19-10-2026'})
        assert response.status_code == 400
        assert response.get_json()['error'] == 'InvalidParameter'

    def test_unknown_transaction(self, client, admin):
        response = client.post('/admin/transactions/999/approve', headers=as_user(admin))
        assert response.status_code == 404
        assert response.get_json()['error'] == 'TransactionNotFound'
