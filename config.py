# ==========================================================================================================
# -------------- Configuration file for the ledger & referral service ---------------------------------------
# ==========================================================================================================
import os
from decimal import Decimal
from dotenv import load_dotenv
from sqlalchemy.pool import StaticPool


if os.environ.get("FLASK_ENV") != "production":
    load_dotenv()

basedir = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name, default="False"):
    return os.getenv(name, default).lower() in ("true", "1", "t")


def _database_uri():
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        database_url = f"sqlite:///{os.path.join(basedir, 'instance', 'ledger.db')}"

    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql+pg8000://", 1)
    return database_url


class Config:

    SECRET_KEY = os.getenv("SECRET_KEY")
    FLASK_ENV = os.getenv("FLASK_ENV", "production")
    DEBUG = _env_bool("DEBUG")
    TESTING = False

    SQLALCHEMY_DATABASE_URI = _database_uri()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {"pool_pre_ping": True, "pool_recycle": 300}
    if not SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS.update({"pool_size": 10, "max_overflow": 20})

    # Ledger rules
    MIN_WITHDRAWAL = Decimal(os.getenv("MIN_WITHDRAWAL", "10"))
    WITHDRAWAL_FEE = Decimal(os.getenv("WITHDRAWAL_FEE", "1"))
    COMMISSION_RATES = tuple(
        Decimal(rate.strip()) for rate in os.getenv("COMMISSION_RATES", "0.05,0.02,0.01").split(",")
    )
    MILESTONE_TARGET = int(os.getenv("MILESTONE_TARGET", "25"))
    MILESTONE_REWARD = Decimal(os.getenv("MILESTONE_REWARD", "250"))

    # Tron / USDT
    USDT_CONTRACT_ADDRESS = os.getenv("USDT_CONTRACT_ADDRESS", "TR7NHqjeKQxGTCi8q8ZY4pL8otSzgjLj6t")
    TRONGRID_BASE_URL = os.getenv("TRONGRID_BASE_URL", "https://api.trongrid.io")
    TRONGRID_API_KEY = os.getenv("TRONGRID_API_KEY")
    TRONGRID_TIMEOUT = int(os.getenv("TRONGRID_TIMEOUT", "10"))

    # Payout gateway
    PAYOUT_API_URL = os.getenv("PAYOUT_API_URL")
    PAYOUT_API_KEY = os.getenv("PAYOUT_API_KEY")
    PAYOUT_TIMEOUT = int(os.getenv("PAYOUT_TIMEOUT", "30"))

    # Background deposit scanning
    SCHEDULER_ENABLED = _env_bool("SCHEDULER_ENABLED", "True")
    DEPOSIT_SCAN_INTERVAL_MINUTES = int(os.getenv("DEPOSIT_SCAN_INTERVAL_MINUTES", "5"))

    # Mail
    MAIL_SERVER = os.getenv("MAIL_SERVER", "localhost")
    MAIL_PORT = int(os.getenv("MAIL_PORT", "587"))
    MAIL_USE_TLS = _env_bool("MAIL_USE_TLS", "True")
    MAIL_USERNAME = os.getenv("MAIL_USERNAME")
    MAIL_PASSWORD = os.getenv("MAIL_PASSWORD")
    MAIL_DEFAULT_SENDER = os.getenv("MAIL_DEFAULT_SENDER", "no-reply@quantum-ledger.local")
    MAIL_SUPPRESS_SEND = _env_bool("MAIL_SUPPRESS_SEND")
    ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")

    APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5000")


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret-key"
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    # one shared in-memory database for every session and thread
    SQLALCHEMY_ENGINE_OPTIONS = {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    SCHEDULER_ENABLED = False
    MAIL_SUPPRESS_SEND = True
    PAYOUT_API_URL = None
    ADMIN_EMAIL = "ops@example.com"
