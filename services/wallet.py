import threading
from contextlib import contextmanager
from decimal import Decimal

from sqlalchemy import update

from exceptions import InsufficientFundsError, IntegrityError, ValidationError, ConflictError
from extensions import db
from logger import ledger_logger
from models import Wallet, User
from utils import quantize_amount, validate_wallet_address, AMOUNT_QUANTUM

# ==========================================================
#                  PER-USER LOCKS
# ==========================================================


class UserLockManager:
    """
    One re-entrant lock per user id for balance read-modify-write sequences.

    This serializes flows inside one process. Across processes the
    conditional UPDATE statements in WalletService keep balances exact.
    """
    _locks = {}
    _registry_lock = threading.Lock()

    @classmethod
    def get_lock(cls, user_id: int):
        with cls._registry_lock:
            lock = cls._locks.get(user_id)
            if lock is None:
                lock = cls._locks[user_id] = threading.RLock()
            return lock

    @classmethod
    @contextmanager
    def lock(cls, user_id: int):
        lock = cls.get_lock(user_id)
        with lock:
            yield

# ==========================================================
#                  WALLET SERVICE
# ==========================================================


class WalletService:
    """
    Balance mutations. None of these commit: they join the caller's unit of
    work, which commits the ledger entry and the balance change together.
    """

    @staticmethod
    def ensure_wallet(user_id: int) -> Wallet:
        wallet = Wallet.query.filter_by(user_id=user_id).first()
        if wallet is None:
            if db.session.get(User, user_id) is None:
                raise IntegrityError(f"User {user_id} not found")
            wallet = Wallet(user_id=user_id, available=Decimal("0"), pending=Decimal("0"))
            db.session.add(wallet)
            db.session.flush()
            ledger_logger.info(f"Created wallet for user {user_id}")
        return wallet

    @staticmethod
    def get_wallet(user_id: int) -> Wallet:
        wallet = Wallet.query.filter_by(user_id=user_id).first()
        if wallet is None:
            raise IntegrityError(f"Wallet not found for user {user_id}")
        return wallet

    @staticmethod
    def get_balance(user_id: int) -> dict:
        wallet = WalletService.get_wallet(user_id)
        db.session.refresh(wallet)
        return {
            "available": quantize_amount(wallet.available or 0),
            "pending": quantize_amount(wallet.pending or 0),
        }

    @staticmethod
    def _apply(user_id: int, available_delta=Decimal("0"), pending_delta=Decimal("0")):
        """Relative update in one statement. Refuses to drive either balance below zero."""
        stmt = update(Wallet).where(Wallet.user_id == user_id)
        if available_delta < 0:
            stmt = stmt.where(Wallet.available >= -available_delta)
        if pending_delta < 0:
            stmt = stmt.where(Wallet.pending >= -pending_delta)
        stmt = stmt.values(
            available=Wallet.available + available_delta,
            pending=Wallet.pending + pending_delta,
        ).execution_options(synchronize_session="fetch")

        result = db.session.execute(stmt)
        if result.rowcount == 1:
            return

        WalletService.get_wallet(user_id)
        if available_delta < 0:
            raise InsufficientFundsError("Insufficient balance")
        raise IntegrityError(f"Pending balance of user {user_id} is lower than the hold being released")

    @staticmethod
    def credit(user_id: int, amount) -> dict:
        amount = quantize_amount(amount)
        if amount <= 0:
            raise ValidationError("Credit amount must be positive")
        with UserLockManager.lock(user_id):
            WalletService._apply(user_id, available_delta=amount)
        ledger_logger.info(f"Credited {amount} to user {user_id}")
        return WalletService.get_balance(user_id)

    @staticmethod
    def debit(user_id: int, amount) -> dict:
        amount = quantize_amount(amount)
        if amount <= 0:
            raise ValidationError("Debit amount must be positive")
        with UserLockManager.lock(user_id):
            WalletService._apply(user_id, available_delta=-amount)
        ledger_logger.info(f"Debited {amount} from user {user_id}")
        return WalletService.get_balance(user_id)

    # ===== Withdrawal holds =====

    @staticmethod
    def place_hold(user_id: int, amount) -> dict:
        """Move funds from available to pending."""
        amount = quantize_amount(amount)
        with UserLockManager.lock(user_id):
            WalletService._apply(user_id, available_delta=-amount, pending_delta=amount)
        ledger_logger.info(f"Placed hold of {amount} for user {user_id}")
        return WalletService.get_balance(user_id)

    @staticmethod
    def release_hold(user_id: int, amount) -> dict:
        """A completed withdrawal consumes its hold."""
        amount = quantize_amount(amount)
        with UserLockManager.lock(user_id):
            WalletService._apply(user_id, pending_delta=-amount)
        ledger_logger.info(f"Released hold of {amount} for user {user_id}")
        return WalletService.get_balance(user_id)

    @staticmethod
    def refund_hold(user_id: int, amount) -> dict:
        """A failed or rejected withdrawal returns its hold in full."""
        amount = quantize_amount(amount)
        with UserLockManager.lock(user_id):
            WalletService._apply(user_id, available_delta=amount, pending_delta=-amount)
        ledger_logger.info(f"Refunded hold of {amount} to user {user_id}")
        return WalletService.get_balance(user_id)

    @staticmethod
    def set_balance(user_id: int, available, expected_available) -> dict:
        """
        Absolute set of the available balance, applied only if it still equals
        `expected_available`. A balance that moved since it was read is a ConflictError.
        """
        available = quantize_amount(available)
        expected_available = quantize_amount(expected_available)
        if available < 0:
            raise ValidationError("Balance cannot go below zero")
        with UserLockManager.lock(user_id):
            result = db.session.execute(
                update(Wallet)
                # same balance at ledger precision, as read through quantize_amount
                .where(
                    Wallet.user_id == user_id,
                    Wallet.available >= expected_available,
                    Wallet.available < expected_available + AMOUNT_QUANTUM,
                )
                .values(available=available)
                .execution_options(synchronize_session="fetch")
            )
            if result.rowcount != 1:
                WalletService.get_wallet(user_id)
                raise ConflictError("Balance changed while it was being set, retry the adjustment")
        ledger_logger.info(f"Set balance of user {user_id} from {expected_available} to {available}")
        return WalletService.get_balance(user_id)

    @staticmethod
    def assign_deposit_address(user_id: int, address: str) -> Wallet:
        if not validate_wallet_address(address, "TRC20"):
            raise ValidationError("Invalid TRC20 deposit address")
        wallet = WalletService.ensure_wallet(user_id)
        taken = Wallet.query.filter(Wallet.deposit_address == address, Wallet.user_id != user_id).first()
        if taken:
            raise ConflictError("Deposit address already assigned to another wallet")
        wallet.deposit_address = address
        db.session.flush()
        return wallet
