import logging
from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user

from exceptions import NotFoundError, ValidationError
from models import TransactionType, TransactionStatus
from services.deposits import DepositMonitor
from services.investments import InvestmentService
from services.ledger import LedgerStore
from services.notifications import Notifier
from services.wallet import WalletService
from services.withdrawals import WithdrawalService, WithdrawalConfig
from utils import pagination_args

logger = logging.getLogger(__name__)

bp = Blueprint("wallet", __name__, url_prefix="/api/wallet")


def _enum_arg(enum_cls, name):
    value = request.args.get(name)
    if not value:
        return None
    try:
        return enum_cls(value.lower())
    except ValueError:
        raise ValidationError(f"Unknown {name}: {value}")


def _balance_json(balance):
    return {"available": float(balance["available"]), "pending": float(balance["pending"])}


@bp.route("/balance", methods=["GET"])
@login_required
def balance():
    return jsonify({"success": True, "balance": _balance_json(WalletService.get_balance(current_user.id))}), 200


@bp.route("/summary", methods=["GET"])
@login_required
def summary():
    wallet = WalletService.get_wallet(current_user.id)
    recent, _ = LedgerStore.list_for_user(current_user.id, per_page=5)
    return jsonify({
        "success": True,
        "wallet": wallet.to_dict(),
        "totals": {
            "deposits": float(LedgerStore.total_by_type(TransactionType.DEPOSIT, user_id=current_user.id)),
            "withdrawals": float(-LedgerStore.total_by_type(TransactionType.WITHDRAWAL, user_id=current_user.id)),
            "referralEarnings": float(LedgerStore.total_referral_earnings(current_user.id)),
            "activeInvestments": float(InvestmentService.total_active(current_user.id)),
        },
        "withdrawalRules": {
            "minimum": float(WithdrawalConfig.min_withdrawal()),
            "fee": float(WithdrawalConfig.fee()),
        },
        "recentTransactions": [t.to_dict() for t in recent],
    }), 200


@bp.route("/transactions", methods=["GET"])
@login_required
def transactions():
    page, per_page = pagination_args(request.args)
    items, total = LedgerStore.list_for_user(
        current_user.id,
        page=page,
        per_page=per_page,
        type=_enum_arg(TransactionType, "type"),
        status=_enum_arg(TransactionStatus, "status"),
    )
    return jsonify({
        "success": True,
        "transactions": [t.to_dict() for t in items],
        "pagination": {"total": total, "page": page, "limit": per_page, "pages": -(-total // per_page)},
    }), 200


@bp.route("/deposit-address", methods=["GET"])
@login_required
def deposit_address():
    wallet = WalletService.get_wallet(current_user.id)
    if not wallet.deposit_address:
        raise NotFoundError("No deposit address has been assigned to this wallet yet")
    return jsonify({"success": True, "address": wallet.deposit_address, "network": "TRC20"}), 200


@bp.route("/deposit-notification", methods=["POST"])
@login_required
def deposit_notification():
    """User says they sent funds: scan their deposit address now instead of waiting for the poller."""
    wallet = WalletService.get_wallet(current_user.id)
    if not wallet.deposit_address:
        raise NotFoundError("No deposit address has been assigned to this wallet yet")
    credited = DepositMonitor.check_for_deposits(wallet.deposit_address, current_user.id)
    return jsonify({
        "success": True,
        "credited": credited,
        "balance": _balance_json(WalletService.get_balance(current_user.id)),
    }), 200


@bp.route("/withdraw", methods=["POST"])
@login_required
def withdraw():
    """
    Expected JSON:
    {
        "amount": 25,
        "walletAddress": "T...",
        "network": "TRC20"
    }
    """
    data = request.get_json(silent=True) or {}
    transaction = WithdrawalService.request(
        current_user.id,
        data.get("amount"),
        data.get("walletAddress"),
        data.get("network"),
    )
    return jsonify({
        "success": True,
        "message": "Withdrawal request submitted successfully",
        "transactionId": transaction.id,
        "transaction": transaction.to_dict(),
        "balance": _balance_json(WalletService.get_balance(current_user.id)),
    }), 201


@bp.route("/notifications", methods=["GET"])
@login_required
def notifications():
    unread_only = request.args.get("unread", "false").lower() in ("true", "1")
    items = Notifier.list_for_user(current_user.id, unread_only=unread_only)
    return jsonify({"success": True, "notifications": [n.to_dict() for n in items]}), 200


@bp.route("/notifications/<int:notification_id>/read", methods=["POST"])
@login_required
def mark_notification_read(notification_id):
    if not Notifier.mark_read(notification_id, current_user.id):
        raise NotFoundError("Notification not found")
    return jsonify({"success": True}), 200
