# logger.py - Centralized logging configuration
import os
import logging
from logging.handlers import RotatingFileHandler


def setup_logger(name, log_file=None, level=logging.INFO):
    """Set up a logger with file rotation"""
    if not os.path.exists("logs"):
        os.makedirs("logs")

    if not log_file:
        log_file = f"logs/{name}.log"

    logger = logging.getLogger(name)

    # Avoid adding handlers multiple times
    if not logger.handlers:
        logger.setLevel(level)

        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=1024 * 1024,
            backupCount=10
        )
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]"
        ))
        file_handler.setLevel(level)
        logger.addHandler(file_handler)

        # Console handler for development
        if os.environ.get("FLASK_ENV") != "production":
            console_handler = logging.StreamHandler()
            console_handler.setLevel(logging.DEBUG)
            console_handler.setFormatter(logging.Formatter(
                "%(name)s - %(levelname)s - %(message)s"
            ))
            logger.addHandler(console_handler)

    return logger


# Global loggers, one file per money-moving concern
app_logger = setup_logger("app")
ledger_logger = setup_logger("ledger")
referral_logger = setup_logger("referrals")
payout_logger = setup_logger("payouts")
deposit_logger = setup_logger("deposits")
