from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user
from lyricbattle.errors import FreeCreditsUnavailable
from lyricbattle.services import ledger


accounts = Blueprint('accounts', __name__)


@accounts.route('/me', methods=['GET'])
@login_required
def me():
    payload = current_user.to_dict()
    stats = current_user.statistics
    payload['statistics'] = stats.to_dict() if stats else None
    return jsonify(payload)


@accounts.route('/me/ledger', methods=['GET'])
@login_required
def my_ledger():
    try:
        limit = min(int(request.args.get('limit', 100)), 500)
    except ValueError:
        limit = 100
    entries = ledger.entries_for(current_user.id, limit=limit)
    return jsonify({
        'entries': [e.to_dict() for e in entries],
        'reconciliation': ledger.reconcile(current_user.id),
    })


@accounts.route('/me/free-credits', methods=['POST'])
@login_required
def claim_free_credits():
    try:
        entry = ledger.claim_free_credits(current_user.id)
    except FreeCreditsUnavailable as exc:
        return jsonify({
            'error': str(exc),
            'code': exc.code,
            'next_claim_at': exc.next_claim_at.isoformat() if exc.next_claim_at else None,
        }), exc.status_code
    return jsonify({
        'message': f'Claimed {entry.amount} free credits',
        'balance': ledger.balance_of(current_user.id),
    })
