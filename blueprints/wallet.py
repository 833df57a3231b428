import logging
import uuid
from decimal import Decimal, InvalidOperation
from typing import Tuple
from flask import Blueprint, current_app, jsonify, request
from flask_login import login_required
from models import TransactionType
from rewards.dashboard import DashboardService
from rewards.ledger import RewardLedger, InsufficientFundsError, LedgerError
from utils import authenticate, validate_phone

logger = logging.getLogger(__name__)

bp = Blueprint("wallet", __name__, url_prefix="/api/wallet")


# ==========================================================
#                  WITHDRAWAL VALIDATOR
# ==========================================================
class WithdrawalValidator:
    @staticmethod
    def validate_withdrawal_request(amount, phone) -> Tuple[bool, str, Decimal]:
        if not phone or not validate_phone(phone.strip()):
            return False, "Valid phone number is required", None

        try:
            value = Decimal(str(amount)).quantize(Decimal("0.01"))
        except (InvalidOperation, ValueError, TypeError):
            return False, "Invalid amount format", None

        minimum = Decimal(str(current_app.config.get("MIN_WITHDRAWAL", "10.00")))
        maximum = Decimal(str(current_app.config.get("MAX_WITHDRAWAL", "1000.00")))
        if value < minimum:
            return False, f"Minimum withdrawal is {minimum}", None
        if value > maximum:
            return False, f"Maximum withdrawal is {maximum}", None
        return True, "Validation passed", value


@bp.route("/transactions", methods=["GET"])
@login_required
def transactions():
    user = authenticate()
    limit = min(max(request.args.get("limit", 20, type=int), 1), 100)
    offset = max(request.args.get("offset", 0, type=int), 0)

    tx_type = None
    raw_type = request.args.get("type")
    if raw_type:
        try:
            tx_type = TransactionType(raw_type.upper())
        except ValueError:
            return jsonify({"error": f"Unknown transaction type {raw_type}"}), 400

    rows, total = RewardLedger.get_transactions(user.id, limit=limit, offset=offset, tx_type=tx_type)
    return jsonify({
        "transactions": [tx.to_dict() for tx in rows],
        "walletBalance": float(user.wallet_balance or 0),
        "pagination": {"limit": limit, "offset": offset, "total": total, "hasMore": offset + len(rows) < total},
    }), 200


@bp.route("/withdraw", methods=["POST"])
@login_required
def withdraw():
    user = authenticate()
    data = request.get_json(silent=True) or {}
    ok, message, amount = WithdrawalValidator.validate_withdrawal_request(data.get("amount"), data.get("phone"))
    if not ok:
        return jsonify({"error": message}), 400

    reference = f"WITHDRAW_{uuid.uuid4().hex[:16].upper()}"
    try:
        tx = RewardLedger.debit(
            user.id,
            amount,
            description="Withdrawal",
            reference_id=reference,
            metadata={"phone": data.get("phone").strip()},
        )
    except InsufficientFundsError:
        return jsonify({"error": "Insufficient balance"}), 400
    except LedgerError as e:
        logger.error(f"Withdrawal for user {user.id} failed: {e}")
        return jsonify({"error": "Withdrawal failed"}), 500

    DashboardService.invalidate(user.id)
    current_app.logger.info(f"User {user.id} withdrew {amount} ({reference})")
    return jsonify({
        "message": "Withdrawal recorded",
        "reference": reference,
        "amount": float(amount),
        "newBalance": float(tx.balance_after),
    }), 200
