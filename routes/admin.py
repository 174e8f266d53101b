from datetime import date
from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required, current_user
from decorators import permission_required
from services import approve_transaction, reject_transaction, process_transaction, adjust_balance, \
    review_queue
from tasks import run_accrual_cycle
import state_machine as sm
from exceptions import InvalidParameter

admin_bp = Blueprint('admin', __name__, url_prefix='/admin')


# --- Review queue ---
@admin_bp.route('/transactions')
@login_required
@permission_required('view_ledger')
def transactions():
    page = review_queue(
        tx_type=request.args.get('type'),
        statuses=request.args.getlist('status') or (sm.PENDING, sm.PROCESSING),
        page=request.args.get('page', 1, type=int),
        per_page=request.args.get('per_page', current_app.config['LEDGER_PAGE_SIZE'], type=int),
    )
    return jsonify(items=[tx.to_dict() for tx in page.items], page=page.page, total=page.total)


# --- Deposits & withdrawals ---
@admin_bp.route('/transactions/<int:tx_id>/approve', methods=['POST'])
@login_required
def approve(tx_id):
    data = request.get_json(silent=True) or {}
    tx = approve_transaction(tx_id, current_user.id, notes=data.get('notes'))
    return jsonify(tx.to_dict())


@admin_bp.route('/transactions/<int:tx_id>/reject', methods=['POST'])
@login_required
def reject(tx_id):
    data = request.get_json(silent=True) or {}
    tx = reject_transaction(tx_id, current_user.id, data.get('reason'))
    return jsonify(tx.to_dict())


@admin_bp.route('/transactions/<int:tx_id>/process', methods=['POST'])
@login_required
def process(tx_id):
    data = request.get_json(silent=True) or {}
    tx = process_transaction(tx_id, current_user.id, data.get('reference'))
    return jsonify(tx.to_dict())


# --- Manual adjustments ---
@admin_bp.route('/users/<int:user_id>/adjust', methods=['POST'])
@login_required
def adjust(user_id):
    data = request.get_json(silent=True) or {}
    tx = adjust_balance(user_id, current_user.id, data.get('type'), data.get('amount'), data.get('reason'))
    return jsonify(tx.to_dict()), 201


# --- Accrual ---
@admin_bp.route('/accrual/run', methods=['POST'])
@login_required
@permission_required('run_accrual')
def run_accrual():
    data = request.get_json(silent=True) or {}
    as_of = None
    if data.get('date'):
        try:
            as_of = date.fromisoformat(data['date'])
        except (TypeError, ValueError):
            raise InvalidParameter(f"date must be YYYY-MM-DD, got {data['date']!r}")
    report = run_accrual_cycle(as_of)
    return jsonify(report.to_dict())
