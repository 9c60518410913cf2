import secrets
from decimal import Decimal

from flask import current_app
from sqlalchemy import or_, func
from sqlalchemy.exc import IntegrityError as DBIntegrityError

from exceptions import ValidationError, ConflictError, NotFoundError, IntegrityError
from extensions import db
from logger import app_logger, ledger_logger
from models import User, Wallet, TransactionType, TransactionStatus
from services.investments import InvestmentService
from services.ledger import LedgerStore, AdjustmentDetails
from services.milestones import MilestoneService
from services.wallet import WalletService, UserLockManager
from utils import validate_email, parse_decimal


def generate_referral_code(username: str) -> str:
    prefix = "".join(ch for ch in username if ch.isalnum())[:5].upper() or "USER"
    return f"{prefix}-{secrets.token_hex(4).upper()}"


class AccountService:

    @staticmethod
    def register(username, email, password, referral_code=None) -> User:
        username = (username or "").strip()
        email = (email or "").strip().lower()
        if not username or not email or not password:
            raise ValidationError("Username, email and password are required")
        if len(username) < 3:
            raise ValidationError("Username must be at least 3 characters")
        if not validate_email(email):
            raise ValidationError("Invalid email address")
        if len(password) < 8:
            raise ValidationError("Password must be at least 8 characters")

        if User.query.filter(or_(User.username == username, User.email == email)).first():
            raise ConflictError("Username or email already registered")

        referrer = None
        if referral_code:
            referrer = User.query.filter_by(referral_code=referral_code.strip()).first()
            if referrer is None:
                raise ValidationError("Invalid referral code")

        user = User(username=username, email=email, referred_by=referrer.id if referrer else None)
        user.set_password(password)
        try:
            db.session.add(user)
            db.session.flush()
            db.session.add(Wallet(user_id=user.id, available=Decimal("0"), pending=Decimal("0")))
            db.session.commit()
        except DBIntegrityError:
            db.session.rollback()
            raise ConflictError("Username or email already registered")

        app_logger.info(f"Registered user {user.id} ({username}), referred by {user.referred_by}")
        return user

    @staticmethod
    def authenticate(login, password):
        login = (login or "").strip()
        user = User.query.filter(or_(User.username == login, User.email == login.lower())).first()
        if user is None or not user.check_password(password or ""):
            return None
        if not user.is_active:
            return None
        return user

    @staticmethod
    def verify_email(user_id: int) -> User:
        """Mark verified and assign the referral code once."""
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")

        user.is_verified = True
        if not user.referral_code:
            for _ in range(5):
                code = generate_referral_code(user.username)
                if User.query.filter_by(referral_code=code).first() is None:
                    user.referral_code = code
                    break
            else:
                raise IntegrityError("Could not allocate a unique referral code")
        db.session.commit()

        MilestoneService.initialize(user.id)
        app_logger.info(f"User {user.id} verified with referral code {user.referral_code}")
        return user

    @staticmethod
    def referral_link(user: User):
        if not user.referral_code:
            return None
        base_url = current_app.config.get("APP_BASE_URL", "").rstrip("/")
        return f"{base_url}/?ref={user.referral_code}"


class AdminService:

    @staticmethod
    def adjust_balance(user_id: int, reason, adjustment=None, new_balance=None, admin_id=None):
        """Audited balance change. Exactly one of adjustment or new_balance."""
        if (adjustment is None) == (new_balance is None):
            raise ValidationError("Provide either adjustment or newBalance")
        if not reason or not str(reason).strip():
            raise ValidationError("A reason is required for balance adjustments")
        if db.session.get(User, user_id) is None:
            raise NotFoundError("User not found")

        with UserLockManager.lock(user_id):
            try:
                WalletService.ensure_wallet(user_id)
                previous = WalletService.get_balance(user_id)["available"]

                if adjustment is not None:
                    delta = parse_decimal(adjustment, "adjustment")
                    target = previous + delta
                else:
                    target = parse_decimal(new_balance, "newBalance")
                    delta = target - previous

                if target < 0:
                    raise ValidationError("Adjustment would make the balance negative")
                if delta == 0:
                    raise ValidationError("Adjustment does not change the balance")

                transaction = LedgerStore.record(
                    user_id,
                    TransactionType.ADMIN_ADJUSTMENT,
                    delta,
                    status=TransactionStatus.COMPLETED,
                    details=AdjustmentDetails(
                        reason=str(reason).strip(),
                        previous_balance=previous,
                        new_balance=target,
                        admin_id=admin_id,
                    ),
                    notes=str(reason).strip(),
                )
                if new_balance is not None:
                    balance = WalletService.set_balance(user_id, target, expected_available=previous)
                elif delta > 0:
                    balance = WalletService.credit(user_id, delta)
                else:
                    balance = WalletService.debit(user_id, -delta)
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

        ledger_logger.info(f"Admin {admin_id} adjusted user {user_id} by {delta}: {reason}")
        return transaction, balance

    @staticmethod
    def set_active(user_id: int, active: bool, admin_id=None) -> User:
        """Lock (active=False) or unlock an account. Locked users cannot log in, withdraw or invest."""
        user = db.session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        if not active and admin_id is not None and user.id == admin_id:
            raise ValidationError("Admins cannot lock their own account")

        user.is_active = active
        db.session.commit()
        app_logger.warning(f"Admin {admin_id} {'unlocked' if active else 'locked'} user {user_id}")
        return user

    @staticmethod
    def list_users(page=1, per_page=20, search=None):
        query = User.query
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(or_(
                User.username.ilike(pattern),
                User.email.ilike(pattern),
                User.referral_code.ilike(pattern),
            ))
        pagination = query.order_by(User.created_at.desc(), User.id.desc()) \
                          .paginate(page=page, per_page=per_page, error_out=False)
        return pagination.items, pagination.total

    @staticmethod
    def platform_stats() -> dict:
        return {
            "totalUsers": User.query.count(),
            "verifiedUsers": User.query.filter_by(is_verified=True).count(),
            "totalDeposits": float(LedgerStore.total_by_type(TransactionType.DEPOSIT)),
            "totalWithdrawals": float(-LedgerStore.total_by_type(TransactionType.WITHDRAWAL)),
            "pendingWithdrawals": LedgerStore.list_by_status(
                TransactionStatus.PENDING, per_page=1, type=TransactionType.WITHDRAWAL
            )[1],
            "totalReferralCommissions": float(LedgerStore.total_by_type(TransactionType.REFERRAL_COMMISSION)),
            "totalActiveInvestments": float(InvestmentService.total_active()),
            "totalAvailableBalance": float(
                db.session.query(func.coalesce(func.sum(Wallet.available), 0)).scalar()
            ),
        }
