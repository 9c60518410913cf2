import logging
from flask import Blueprint, jsonify, request, session
from flask_login import login_user, logout_user

from services.accounts import AccountService

logger = logging.getLogger(__name__)

bp = Blueprint("auth", __name__, url_prefix="/auth")


 # --------------------------------------------------
 #      Register Route
 # --------------------------------------------------
@bp.route("/register", methods=["POST"])
def register():
    """
    Create an account and its wallet.
    Expected JSON:
    {
        "username": "",
        "email": "",
        "password": "",
        "referralCode": ""   (optional, or ?ref= in the query string)
    }
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"success": False, "error": "Invalid or missing JSON body"}), 400

    referral_code = data.get("referralCode") or request.args.get("ref")
    user = AccountService.register(
        data.get("username"),
        data.get("email"),
        data.get("password"),
        referral_code=referral_code,
    )
    return jsonify({"success": True, "message": "Registration successful", "user": user.to_dict()}), 201


 # --------------------------------------------------
 #      Login Route
 # --------------------------------------------------
@bp.route("/login", methods=["POST"])
def login():
    """
    Expected JSON:
    {
        "login": "username or email",
        "password": ""
    }
    """
    data = request.get_json(silent=True) or {}
    login_value = data.get("login") or data.get("email") or data.get("username")
    password = data.get("password")
    if not login_value or not password:
        return jsonify({"success": False, "error": "Login and password are required"}), 400

    user = AccountService.authenticate(login_value, password)
    if user is None:
        logger.info(f"Failed login for {login_value}")
        return jsonify({"success": False, "error": "Invalid credentials"}), 401

    login_user(user)
    session["user_id"] = user.id
    return jsonify({"success": True, "message": "Login successful", "user": user.to_dict()}), 200


@bp.route("/logout", methods=["POST"])
def logout():
    """
    Destroy User session
    """
    logout_user()
    session.clear()
    return jsonify({"success": True, "message": "Logged out successfully"}), 200
