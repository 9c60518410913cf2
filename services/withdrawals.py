from decimal import Decimal
from typing import Tuple

from flask import current_app

from exceptions import (
    ValidationError, InsufficientFundsError, ConflictError, ExternalServiceError,
    IntegrityError, PayoutTimeoutError, PermissionDeniedError,
)
from extensions import db
from logger import payout_logger
from models import Transaction, TransactionType, TransactionStatus, User
from services.ledger import LedgerStore, WithdrawalDetails
from services.notifications import Notifier
from services.wallet import WalletService, UserLockManager
from utils import parse_amount, validate_wallet_address, PayoutClient

# ==========================================================
#                  CONFIGURATION
# ==========================================================


class WithdrawalConfig:
    SUPPORTED_NETWORKS = ("TRC20", "TRON", "TRX", "BTC", "BITCOIN", "ETH", "ETHEREUM", "BSC", "BINANCE")

    @staticmethod
    def min_withdrawal() -> Decimal:
        return Decimal(str(current_app.config.get("MIN_WITHDRAWAL", "10")))

    @staticmethod
    def fee() -> Decimal:
        return Decimal(str(current_app.config.get("WITHDRAWAL_FEE", "1")))

# ==========================================================
#                  WITHDRAWAL VALIDATOR
# ==========================================================


class WithdrawalValidator:

    @staticmethod
    def validate_request(amount, wallet_address, network) -> Tuple[Decimal, str, str]:
        """Checks that need no balance. Returns normalized (amount, address, network)."""
        if amount in (None, "") or not wallet_address or not network:
            raise ValidationError("Amount, wallet address, and network are required")

        amount = parse_amount(amount)
        minimum = WithdrawalConfig.min_withdrawal()
        if amount < minimum:
            raise ValidationError(f"Minimum withdrawal amount is {minimum} USDT")

        network = network.strip().upper()
        wallet_address = wallet_address.strip()
        if network not in WithdrawalConfig.SUPPORTED_NETWORKS:
            raise ValidationError(f"Unsupported network: {network}")
        if not validate_wallet_address(wallet_address, network):
            raise ValidationError(f"Invalid {network} wallet address format")

        return amount, wallet_address, network

# ==========================================================
#                  WITHDRAWAL STATE MACHINE
# ==========================================================


class WithdrawalService:
    """
    pending -> completed | failed | rejected

    A request holds amount + fee right away. Every exit from pending either
    consumes the hold (completed) or returns it in full (failed, rejected),
    and the status change and the balance change commit together.
    """

    @staticmethod
    def hold_amount(transaction: Transaction) -> Decimal:
        details = transaction.detail_payload()
        return -transaction.amount + details.fee

    @staticmethod
    def request(user_id: int, amount, wallet_address, network) -> Transaction:
        amount, wallet_address, network = WithdrawalValidator.validate_request(amount, wallet_address, network)
        fee = WithdrawalConfig.fee()
        total = amount + fee

        user = db.session.get(User, user_id)
        if user is None:
            raise IntegrityError(f"User {user_id} not found")
        if not user.is_active:
            raise PermissionDeniedError("Account is inactive")

        with UserLockManager.lock(user_id):
            balance = WalletService.get_balance(user_id)
            if balance["available"] < total:
                raise InsufficientFundsError(
                    f"Insufficient balance. Required: {total} USDT (including {fee} USDT fee)"
                )
            try:
                transaction = LedgerStore.record(
                    user_id,
                    TransactionType.WITHDRAWAL,
                    -amount,
                    status=TransactionStatus.PENDING,
                    details=WithdrawalDetails(wallet_address=wallet_address, network=network, fee=fee),
                )
                WalletService.place_hold(user_id, total)
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

        payout_logger.info(f"Withdrawal #{transaction.id} requested by user {user_id}: {amount} + fee {fee} to {wallet_address}")
        Notifier.notify(
            user_id,
            "Withdrawal Requested",
            f"Your withdrawal of {amount} USDT is pending review.",
            "info",
        )
        return transaction

    @staticmethod
    def process(transaction_id, action, notes=None, tx_hash=None, admin_id=None, payout_client=None) -> Transaction:
        """Admin decision on a pending withdrawal: approve (with payout) or reject."""
        try:
            transaction_id = int(transaction_id)
        except (TypeError, ValueError):
            raise ValidationError("Invalid transaction ID")
        if action not in ("approve", "reject"):
            raise ValidationError('Invalid action. Must be "approve" or "reject"')

        tx_hash = str(tx_hash).strip() if tx_hash is not None else ""

        transaction = LedgerStore.get(transaction_id)
        if transaction.type is not TransactionType.WITHDRAWAL:
            raise ValidationError("Transaction is not a withdrawal")

        with UserLockManager.lock(transaction.user_id):
            db.session.refresh(transaction)
            if transaction.status is not TransactionStatus.PENDING:
                payout_logger.warning(
                    f"Admin {admin_id} tried to {action} withdrawal #{transaction_id} which is {transaction.status.value}"
                )
                raise ConflictError(f"Withdrawal has already been {transaction.status.value}")

            WalletService.get_wallet(transaction.user_id)
            hold = WithdrawalService.hold_amount(transaction)

            # A pending withdrawal only carries a hash once funds have left the platform.
            sent_hash = transaction.tx_hash

            if action == "reject":
                if sent_hash:
                    payout_logger.warning(
                        f"Admin {admin_id} tried to reject withdrawal #{transaction_id} already paid out in tx {sent_hash}"
                    )
                    raise ConflictError(
                        f"Payout already sent in transaction {sent_hash}. Approve the withdrawal to complete it."
                    )
                return WithdrawalService._reject(transaction, hold, notes, admin_id)

            if tx_hash or sent_hash:
                return WithdrawalService._complete(
                    transaction, hold, tx_hash or sent_hash,
                    notes or "Completed with manually supplied transaction hash", admin_id,
                )

            details = transaction.detail_payload()
            client = payout_client or PayoutClient.from_config(current_app.config)
            try:
                success, payout_hash, error = client.send_tokens(
                    details.wallet_address, -transaction.amount, details.network,
                    reference=f"withdrawal-{transaction.id}",
                )
            except PayoutTimeoutError as e:
                WithdrawalService._leave_pending(transaction, str(e), admin_id)
                raise ExternalServiceError(
                    "Payout outcome unknown. The withdrawal stays pending until an operator confirms it."
                )

            if success:
                return WithdrawalService._complete(
                    transaction, hold, payout_hash, notes, admin_id, from_gateway=True
                )
            return WithdrawalService._fail_and_refund(transaction, hold, error, admin_id)

    # ===== Transitions =====

    @staticmethod
    def _complete(transaction, hold, proof, notes, admin_id, from_gateway=False):
        try:
            LedgerStore.resolve(transaction.id, TransactionStatus.COMPLETED, notes=notes, proof=proof)
            WalletService.release_hold(transaction.user_id, hold)
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            if from_gateway:
                WithdrawalService._record_sent_payout(transaction, proof, e, admin_id)
            raise

        payout_logger.info(f"Withdrawal #{transaction.id} completed by admin {admin_id}, tx {proof}")
        Notifier.notify_and_email(
            transaction.user_id,
            "Withdrawal Approved",
            f"Your withdrawal of {-transaction.amount} USDT has been sent. Transaction hash: {proof}",
            "success",
        )
        return transaction

    @staticmethod
    def _reject(transaction, hold, notes, admin_id):
        try:
            LedgerStore.resolve(transaction.id, TransactionStatus.REJECTED, notes=notes or "Rejected by admin")
            WalletService.refund_hold(transaction.user_id, hold)
            db.session.commit()
        except Exception:
            db.session.rollback()
            payout_logger.critical(f"Rejecting withdrawal #{transaction.id} failed, hold still in place", exc_info=True)
            raise

        payout_logger.info(f"Withdrawal #{transaction.id} rejected by admin {admin_id}, refunded {hold}")
        reason = f" Reason: {notes}" if notes else ""
        Notifier.notify_and_email(
            transaction.user_id,
            "Withdrawal Rejected",
            f"Your withdrawal of {-transaction.amount} USDT was rejected and {hold} USDT was returned to your balance.{reason}",
            "danger",
        )
        return transaction

    @staticmethod
    def _fail_and_refund(transaction, hold, error, admin_id):
        notes = f"Admin approved, but automated transfer failed: {error}"
        try:
            LedgerStore.resolve(transaction.id, TransactionStatus.FAILED, notes=notes)
            WalletService.refund_hold(transaction.user_id, hold)
            db.session.commit()
        except Exception:
            db.session.rollback()
            payout_logger.critical(f"Refund for failed withdrawal #{transaction.id} did not apply", exc_info=True)
            Notifier.alert_operators(
                "Withdrawal Refund Failed",
                f"Withdrawal #{transaction.id} payout failed ({error}) and the refund could not be written. "
                f"It is still pending with its hold.",
                critical=True,
            )
            raise

        payout_logger.warning(f"Withdrawal #{transaction.id} failed after approval by admin {admin_id}: {error}")
        Notifier.notify_and_email(
            transaction.user_id,
            "Withdrawal Processing Failed",
            f"Your withdrawal of {-transaction.amount} USDT could not be sent. {hold} USDT was returned to your balance.",
            "error",
        )
        Notifier.alert_operators(
            "Automated Withdrawal Failed",
            f"Withdrawal #{transaction.id} for user {transaction.user_id} failed: {error}",
        )
        return transaction

    @staticmethod
    def _record_sent_payout(transaction, proof, error, admin_id):
        """
        The gateway paid out but the completion did not commit. Keep the hash
        on the still pending entry so it can only be approved, never refunded.
        """
        transaction_id, user_id = transaction.id, transaction.user_id
        payout_logger.critical(
            f"Withdrawal #{transaction_id} was paid out in tx {proof} but completion failed: {error}",
            exc_info=True,
        )
        try:
            LedgerStore.annotate(
                transaction_id,
                f"Payout sent by admin {admin_id} (tx {proof}) but completion failed: {error}",
                tx_hash=proof,
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            payout_logger.critical(f"Could not record payout hash {proof} on withdrawal #{transaction_id}", exc_info=True)
        Notifier.alert_operators(
            "Withdrawal Paid But Not Completed",
            f"Withdrawal #{transaction_id} for user {user_id} was sent in tx {proof}, "
            f"but the ledger could not be updated ({error}). Do not reject it: approve it again to complete.",
            critical=True,
        )

    @staticmethod
    def _leave_pending(transaction, error, admin_id):
        try:
            LedgerStore.annotate(
                transaction.id,
                f"Automated transfer attempted by admin {admin_id}, outcome unknown: {error}",
            )
            db.session.commit()
        except Exception:
            db.session.rollback()
            payout_logger.error(f"Could not annotate withdrawal #{transaction.id}", exc_info=True)
        Notifier.alert_operators(
            "Withdrawal Payout Unconfirmed",
            f"Withdrawal #{transaction.id} for user {transaction.user_id}: {error}. "
            f"Verify on chain, then approve with the transaction hash or reject.",
            critical=True,
        )

    # ===== Readers =====

    @staticmethod
    def pending_withdrawals(page=1, per_page=20):
        return LedgerStore.list_by_status(
            TransactionStatus.PENDING, page=page, per_page=per_page, type=TransactionType.WITHDRAWAL
        )

    @staticmethod
    def details(transaction_id) -> dict:
        transaction = LedgerStore.get(transaction_id)
        if transaction.type is not TransactionType.WITHDRAWAL:
            raise ValidationError("Transaction is not a withdrawal")
        user = db.session.get(User, transaction.user_id)
        data = transaction.to_dict()
        data["user"] = user.to_dict() if user else None
        data["hold"] = float(WithdrawalService.hold_amount(transaction))
        return data
