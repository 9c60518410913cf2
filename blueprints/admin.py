#======================================================================================
#
# ADMIN API: withdrawals moderation, balance adjustments, ledger search
#
#=======================================================================================
import logging
from functools import wraps

from flask import jsonify, request, Blueprint, session, abort
from flask_login import current_user

from exceptions import ValidationError, NotFoundError
from extensions import db
from models import User, TransactionType
from services.accounts import AccountService, AdminService
from services.deposits import DepositProcessor
from services.ledger import LedgerStore, DepositDetails
from services.referrals import ReferralGraph
from services.wallet import WalletService
from services.withdrawals import WithdrawalService
from utils import pagination_args, parse_amount

logger = logging.getLogger(__name__)


def admin_required(f):
    """
    Decorator to restrict access to admin-only routes.
    - 401 when nobody is logged in.
    - Fetches the user from the database (to get the current role).
    - Aborts with 403 Forbidden if not an admin.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if "user_id" not in session or not current_user.is_authenticated:
            abort(401)

        user = db.session.get(User, session["user_id"])
        if not user or user.role != "admin":
            abort(403)

        return f(*args, **kwargs)

    return decorated_function


admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')


def _pagination(total, page, per_page):
    return {"total": total, "page": page, "limit": per_page, "pages": -(-total // per_page)}


def _transaction_type_arg():
    value = request.args.get("type")
    if not value or value == "all":
        return None
    try:
        return TransactionType(value.lower())
    except ValueError:
        raise ValidationError(f"Unknown transaction type: {value}")


#============================================================================================================
#     USERS & BALANCES
#============================================================================================================

@admin_bp.route("/users", methods=["GET"])
@admin_required
def list_users():
    page, per_page = pagination_args(request.args)
    users, total = AdminService.list_users(page=page, per_page=per_page, search=request.args.get("search"))
    result = []
    for user in users:
        data = user.to_dict()
        data["wallet"] = user.wallet.to_dict() if user.wallet else None
        result.append(data)
    return jsonify({"success": True, "users": result, "pagination": _pagination(total, page, per_page)}), 200


@admin_bp.route("/users/<int:user_id>/balance", methods=["POST"])
@admin_required
def update_user_balance(user_id):
    """
    Expected JSON: {"adjustment": -5.5, "reason": ""} or {"newBalance": 100, "reason": ""}
    """
    data = request.get_json(silent=True) or {}
    transaction, balance = AdminService.adjust_balance(
        user_id,
        data.get("reason"),
        adjustment=data.get("adjustment"),
        new_balance=data.get("newBalance"),
        admin_id=session.get("user_id"),
    )
    return jsonify({
        "success": True,
        "message": "Balance updated successfully",
        "transaction": transaction.to_dict(),
        "balance": {"available": float(balance["available"]), "pending": float(balance["pending"])},
    }), 200


@admin_bp.route("/users/<int:user_id>/verify", methods=["POST"])
@admin_required
def verify_user(user_id):
    user = AccountService.verify_email(user_id)
    return jsonify({"success": True, "user": user.to_dict(), "referralLink": AccountService.referral_link(user)}), 200


@admin_bp.route("/users/<int:user_id>/lock", methods=["POST", "PUT"])
@admin_required
def lock_user(user_id):
    user = AdminService.set_active(user_id, False, admin_id=session.get("user_id"))
    return jsonify({"success": True, "message": "User locked successfully", "user": user.to_dict()}), 200


@admin_bp.route("/users/<int:user_id>/unlock", methods=["POST", "PUT"])
@admin_required
def unlock_user(user_id):
    user = AdminService.set_active(user_id, True, admin_id=session.get("user_id"))
    return jsonify({"success": True, "message": "User unlocked successfully", "user": user.to_dict()}), 200


@admin_bp.route("/users/<int:user_id>/deposit-address", methods=["POST"])
@admin_required
def assign_deposit_address(user_id):
    data = request.get_json(silent=True) or {}
    if db.session.get(User, user_id) is None:
        raise NotFoundError("User not found")
    wallet = WalletService.assign_deposit_address(user_id, (data.get("address") or "").strip())
    db.session.commit()
    return jsonify({"success": True, "wallet": wallet.to_dict()}), 200


#============================================================================================================
#     WITHDRAWALS
#============================================================================================================

@admin_bp.route("/withdrawals", methods=["GET"])
@admin_required
def pending_withdrawals():
    page, per_page = pagination_args(request.args)
    items, total = WithdrawalService.pending_withdrawals(page=page, per_page=per_page)
    return jsonify({
        "success": True,
        "withdrawals": [t.to_dict() for t in items],
        "pagination": _pagination(total, page, per_page),
    }), 200


@admin_bp.route("/withdrawals/<int:transaction_id>", methods=["GET"])
@admin_required
def withdrawal_details(transaction_id):
    return jsonify({"success": True, "withdrawal": WithdrawalService.details(transaction_id)}), 200


@admin_bp.route("/withdrawals/<int:transaction_id>/process", methods=["POST"])
@admin_required
def process_withdrawal(transaction_id):
    """
    Expected JSON: {"action": "approve" | "reject", "notes": "", "txHash": ""}
    """
    data = request.get_json(silent=True) or {}
    transaction = WithdrawalService.process(
        transaction_id,
        data.get("action"),
        notes=data.get("notes"),
        tx_hash=data.get("txHash"),
        admin_id=session.get("user_id"),
    )
    return jsonify({
        "success": True,
        "message": f"Withdrawal {transaction.status.value}",
        "transaction": transaction.to_dict(),
    }), 200


#============================================================================================================
#     LEDGER, DEPOSITS & REFERRALS
#============================================================================================================

@admin_bp.route("/transactions", methods=["GET"])
@admin_required
def list_transactions():
    try:
        limit = min(max(int(request.args.get("limit", 50)), 1), 200)
        offset = max(int(request.args.get("offset", 0)), 0)
    except ValueError:
        raise ValidationError("limit and offset must be integers")
    items, total = LedgerStore.search(
        type=_transaction_type_arg(),
        search=request.args.get("search"),
        limit=limit,
        offset=offset,
    )
    return jsonify({
        "success": True,
        "transactions": [t.to_dict() for t in items],
        "pagination": {"total": total, "limit": limit, "offset": offset},
    }), 200


@admin_bp.route("/deposits", methods=["POST"])
@admin_required
def confirm_deposit():
    """
    Operator confirmed deposit. Expected JSON: {"userId": 1, "amount": 100, "txHash": ""}
    """
    data = request.get_json(silent=True) or {}
    try:
        user_id = int(data.get("userId"))
    except (TypeError, ValueError):
        raise ValidationError("userId is required")
    if db.session.get(User, user_id) is None:
        raise NotFoundError("User not found")

    transaction = DepositProcessor.complete_deposit(
        user_id,
        parse_amount(data.get("amount")),
        tx_hash=(data.get("txHash") or "").strip() or None,
        details=DepositDetails(network=data.get("network") or "TRC20", source="admin"),
    )
    return jsonify({"success": True, "transaction": transaction.to_dict()}), 201


@admin_bp.route("/referrals", methods=["GET"])
@admin_required
def all_referrals():
    page, per_page = pagination_args(request.args)
    edges, total = ReferralGraph.list_all_edges(page=page, per_page=per_page)
    return jsonify({
        "success": True,
        "referrals": [edge.to_dict() for edge in edges],
        "pagination": _pagination(total, page, per_page),
    }), 200


@admin_bp.route("/referrals/<int:edge_id>/commission", methods=["POST"])
@admin_required
def modify_commission(edge_id):
    """
    Expected JSON: {"amount": 5, "action": "add" | "subtract"}
    """
    data = request.get_json(silent=True) or {}
    edge = ReferralGraph.adjust_edge_commission(edge_id, parse_amount(data.get("amount")), data.get("action"))
    return jsonify({"success": True, "referral": edge.to_dict()}), 200


@admin_bp.route("/stats", methods=["GET"])
@admin_required
def platform_stats():
    return jsonify({"success": True, "stats": AdminService.platform_stats()}), 200
