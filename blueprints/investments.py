import logging
from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user

from services.investments import InvestmentService, INVESTMENT_PLANS, plan_to_dict

logger = logging.getLogger(__name__)

bp = Blueprint("investments", __name__, url_prefix="/api/investments")


def _with_plan(investment):
    data = investment.to_dict()
    plan = INVESTMENT_PLANS.get(investment.plan_id)
    data["planDetails"] = plan_to_dict(plan) if plan else None
    return data


def _balance_json(balance):
    return {"available": float(balance["available"]), "pending": float(balance["pending"])}


@bp.route("/plans", methods=["GET"])
@login_required
def plans():
    return jsonify({"success": True, "plans": {key: plan_to_dict(plan) for key, plan in INVESTMENT_PLANS.items()}}), 200


@bp.route("/active", methods=["GET"])
@login_required
def active_investments():
    items = InvestmentService.list_for_user(current_user.id, active=True)
    return jsonify({"success": True, "count": len(items), "investments": [_with_plan(i) for i in items]}), 200


@bp.route("/history", methods=["GET"])
@login_required
def investment_history():
    items = InvestmentService.list_for_user(current_user.id, active=False)
    return jsonify({"success": True, "count": len(items), "investments": [_with_plan(i) for i in items]}), 200


@bp.route("/<int:investment_id>", methods=["GET"])
@login_required
def investment_details(investment_id):
    investment = InvestmentService.get_for_user(investment_id, current_user.id)
    return jsonify({"success": True, "investment": _with_plan(investment)}), 200


@bp.route("/create", methods=["POST"])
@login_required
def create_investment():
    """
    Expected JSON: {"planId": "starter", "amount": 100}
    """
    data = request.get_json(silent=True) or {}
    investment, balance = InvestmentService.create(current_user.id, data.get("planId"), data.get("amount"))
    return jsonify({
        "success": True,
        "message": "Investment created successfully",
        "investment": _with_plan(investment),
        "balance": _balance_json(balance),
    }), 201


@bp.route("/cancel/<int:investment_id>", methods=["POST"])
@login_required
def cancel_investment(investment_id):
    investment, balance = InvestmentService.cancel(investment_id, current_user.id, is_admin=current_user.is_admin)
    return jsonify({
        "success": True,
        "message": "Investment cancelled successfully",
        "investment": _with_plan(investment),
        "balance": _balance_json(balance),
    }), 200
