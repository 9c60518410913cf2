import os
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from config import Config
from exceptions import LedgerError
from extensions import db, login_manager, init_extensions
from logger import app_logger
from models import User


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    if not app.config.get("SECRET_KEY"):
        raise ValueError("SECRET_KEY must be set")

    if not app.debug and not app.testing:
        app.config.update(
            SESSION_COOKIE_SECURE=True,
            SESSION_COOKIE_HTTPONLY=True,
            REMEMBER_COOKIE_SECURE=True,
            REMEMBER_COOKIE_HTTPONLY=True,
        )

    # ------------------------------------------------------------------------------------------
    # Logging: route app.logger through the shared rotating file handlers
    # ------------------------------------------------------------------------------------------
    app.logger.handlers.clear()
    for handler in app_logger.handlers:
        app.logger.addHandler(handler)
    app.logger.setLevel(app_logger.level)
    app.logger.propagate = False

    # ------------------------------------------------------------------------------------------
    # SQLite file location for local runs
    # ------------------------------------------------------------------------------------------
    database_uri = app.config.get("SQLALCHEMY_DATABASE_URI", "")
    if database_uri.startswith("sqlite:///"):
        os.makedirs(os.path.join(os.path.abspath(os.path.dirname(__file__)), "instance"), exist_ok=True)

    init_extensions(app)

    @login_manager.user_loader
    def load_user(user_id):
        # locked accounts lose their existing sessions too
        user = db.session.get(User, int(user_id))
        return user if user is not None and user.is_active else None

    register_blueprints(app)
    register_error_handlers(app)

    @app.route("/healthz")
    def healthz():
        return {"status": "ok"}, 200

    if app.config.get("SCHEDULER_ENABLED") and not app.testing:
        from scheduler import init_scheduler
        init_scheduler(app)

    return app


def register_blueprints(app):
    from blueprints.auth import bp as auth_bp
    from blueprints.wallet import bp as wallet_bp
    from blueprints.referrals import bp as referrals_bp
    from blueprints.investments import bp as investments_bp
    from blueprints.admin import admin_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(wallet_bp)
    app.register_blueprint(referrals_bp)
    app.register_blueprint(investments_bp)
    app.register_blueprint(admin_bp)


def register_error_handlers(app):

    @app.errorhandler(LedgerError)
    def handle_ledger_error(error):
        if error.status_code >= 500:
            app.logger.error(f"{error.__class__.__name__}: {error.message}")
        else:
            app.logger.info(f"{error.__class__.__name__}: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({"success": False, "error": error.description}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        db.session.rollback()
        app.logger.error(f"Unhandled error: {error}", exc_info=True)
        return jsonify({"success": False, "error": "Internal server error"}), 500


# ----------------------
# Local development
# ----------------------
if __name__ == "__main__":
    app = create_app()
    port = int(os.environ.get("PORT", 5000))
    app.run(debug=app.config.get("DEBUG", False), host="0.0.0.0", port=port, use_reloader=False)
