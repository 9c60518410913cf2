import logging
from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user

from services.accounts import AccountService
from services.milestones import MilestoneService
from services.referrals import ReferralGraph
from utils import pagination_args

logger = logging.getLogger(__name__)

bp = Blueprint("referrals", __name__, url_prefix="/api/referrals")


def _pagination(total, page, per_page):
    return {"total": total, "page": page, "limit": per_page, "pages": -(-total // per_page)}


@bp.route("/link", methods=["GET"])
@login_required
def referral_link():
    link = AccountService.referral_link(current_user)
    if link is None:
        return jsonify({"success": False, "error": "Verify your email to get a referral code"}), 400
    return jsonify({"success": True, "referralCode": current_user.referral_code, "referralLink": link}), 200


@bp.route("/stats", methods=["GET"])
@login_required
def referral_stats():
    progress = MilestoneService.progress(current_user.id)
    return jsonify({
        "success": True,
        "stats": ReferralGraph.referral_stats(current_user.id),
        "milestone": {
            "currentProgress": progress["currentReferrals"],
            "progressPercentage": progress["progressPercentage"],
            "nextTarget": progress["targetReferrals"],
            "nextReward": progress["nextReward"],
            "isClaimable": progress["milestoneReached"],
        },
    }), 200


@bp.route("/list", methods=["GET"])
@login_required
def referral_list():
    page, per_page = pagination_args(request.args)
    edges, total = ReferralGraph.list_referrals(current_user.id, page=page, per_page=per_page)
    direct = ReferralGraph.list_direct_referrals(current_user.id)
    return jsonify({
        "success": True,
        "referrals": [edge.to_dict() for edge in edges],
        "directReferrals": [
            {"id": u.id, "username": u.username, "joinedAt": u.created_at.isoformat() if u.created_at else None}
            for u in direct
        ],
        "pagination": _pagination(total, page, per_page),
    }), 200


@bp.route("/commissions", methods=["GET"])
@login_required
def commission_history():
    page, per_page = pagination_args(request.args)
    items, total = ReferralGraph.commission_history(current_user.id, page=page, per_page=per_page)
    return jsonify({
        "success": True,
        "commissions": [t.to_dict() for t in items],
        "pagination": _pagination(total, page, per_page),
    }), 200


@bp.route("/milestone", methods=["GET"])
@login_required
def milestone_progress():
    return jsonify({"success": True, **MilestoneService.progress(current_user.id)}), 200


@bp.route("/claim-milestone", methods=["POST"])
@login_required
def claim_milestone():
    data = request.get_json(silent=True) or {}
    milestone = MilestoneService.claim(data.get("milestoneId"), current_user.id)
    return jsonify({
        "success": True,
        "message": "Milestone reward claimed successfully",
        "milestone": milestone.to_dict(),
    }), 200
