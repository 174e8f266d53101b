from datetime import datetime
from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from services import submit_deposit, submit_withdrawal, cancel_transaction, get_ledger, \
    withdrawable_balance
from referrals import preview_commissions
from exceptions import InvalidParameter

api_bp = Blueprint('api', __name__, url_prefix='/api')


def _parse_date(name):
    value = request.args.get(name)
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise InvalidParameter(f"{name} must be an ISO date, got {value!r}")


def _page_payload(page):
    return {
        'items': [tx.to_dict() for tx in page.items],
        'page': page.page,
        'per_page': page.per_page,
        'total': page.total,
        'pages': page.pages,
    }


@api_bp.route('/balance')
@login_required
def balance():
    user = current_user
    return jsonify(
        user_id=user.id,
        wallet_balance=str(user.wallet_balance),
        withdrawable=str(withdrawable_balance(user)),
        total_deposited=str(user.total_deposited),
        total_withdrawn=str(user.total_withdrawn),
        total_earnings=str(user.total_earnings),
        total_commissions=str(user.total_commissions),
        current_rank=user.current_rank,
        bot_active=user.bot_active,
        active_subscription_id=user.active_subscription_id,
    )


@api_bp.route('/deposits', methods=['POST'])
@login_required
def create_deposit():
    data = request.get_json(silent=True) or {}
    tx = submit_deposit(
        current_user.id,
        data.get('portfolio_id'),
        data.get('amount'),
        data.get('payment_method'),
        tx_hash=data.get('tx_hash'),
    )
    return jsonify(tx.to_dict()), 201


@api_bp.route('/withdrawals', methods=['POST'])
@login_required
def create_withdrawal():
    data = request.get_json(silent=True) or {}
    tx = submit_withdrawal(current_user.id, data.get('amount'), data.get('destination'))
    return jsonify(tx.to_dict()), 201


@api_bp.route('/transactions/<int:tx_id>/cancel', methods=['POST'])
@login_required
def cancel(tx_id):
    tx = cancel_transaction(tx_id, current_user.id)
    return jsonify(tx.to_dict())


@api_bp.route('/ledger')
@login_required
def ledger():
    page = get_ledger(
        current_user.id,
        tx_type=request.args.get('type'),
        status=request.args.get('status'),
        start=_parse_date('start'),
        end=_parse_date('end'),
        page=request.args.get('page', 1, type=int),
        per_page=request.args.get('per_page', current_app.config['LEDGER_PAGE_SIZE'], type=int),
    )
    return jsonify(_page_payload(page))


@api_bp.route('/commissions/preview')
@login_required
def commission_preview():
    preview = preview_commissions(current_user.id, request.args.get('amount'))
    for row in preview:
        row['amount'] = str(row['amount'])
    return jsonify(preview)
