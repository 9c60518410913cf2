"""
Investment plans: moving wallet funds into a plan and back out on cancellation.

Opening debits the wallet and cancelling credits the same amount back, each
as a completed ledger entry committed with the balance change. Plans do not
accrue returns here.
"""
from collections import namedtuple
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from sqlalchemy import update

from exceptions import ValidationError, NotFoundError, ConflictError, PermissionDeniedError, IntegrityError
from extensions import db
from logger import ledger_logger
from models import Investment, InvestmentStatus, TransactionType, TransactionStatus, User
from services.ledger import LedgerStore, InvestmentDetails, InvestmentRefundDetails
from services.notifications import Notifier
from services.wallet import WalletService, UserLockManager
from utils import parse_amount

# ==========================================================
#                  PLAN CATALOG
# ==========================================================

InvestmentPlan = namedtuple(
    "InvestmentPlan", ["id", "name", "daily_roi", "total_return", "duration_days", "min_amount", "max_amount"]
)

INVESTMENT_PLANS = {
    "starter": InvestmentPlan("starter", "Starter Plan", Decimal("0.02"), Decimal("2.0"), 50,
                              Decimal("50"), Decimal("1000")),
    "premium": InvestmentPlan("premium", "Premium Plan", Decimal("0.025"), Decimal("2.0"), 40,
                              Decimal("1001"), Decimal("5000")),
    "vip": InvestmentPlan("vip", "VIP Plan", Decimal("0.03"), Decimal("2.0"), 33,
                          Decimal("5001"), None),
}


def plan_to_dict(plan: InvestmentPlan) -> dict:
    return {
        "id": plan.id,
        "name": plan.name,
        "dailyRoi": float(plan.daily_roi),
        "totalReturn": float(plan.total_return),
        "durationDays": plan.duration_days,
        "minAmount": float(plan.min_amount),
        "maxAmount": float(plan.max_amount) if plan.max_amount is not None else None,
    }

# ==========================================================
#                  INVESTMENT SERVICE
# ==========================================================


class InvestmentService:

    @staticmethod
    def get_plan(plan_id) -> InvestmentPlan:
        plan = INVESTMENT_PLANS.get(str(plan_id or "").strip().lower())
        if plan is None:
            raise ValidationError("Invalid investment plan")
        return plan

    @staticmethod
    def create(user_id: int, plan_id, amount):
        """Debit the wallet and open an active investment. Returns (investment, balance)."""
        if not plan_id or amount in (None, ""):
            raise ValidationError("Plan ID and amount are required")
        plan = InvestmentService.get_plan(plan_id)
        amount = parse_amount(amount)
        if amount < plan.min_amount or (plan.max_amount is not None and amount > plan.max_amount):
            upper = plan.max_amount if plan.max_amount is not None else "no limit"
            raise ValidationError(f"Investment amount must be between {plan.min_amount} and {upper}")

        user = db.session.get(User, user_id)
        if user is None:
            raise IntegrityError(f"User {user_id} not found")
        if not user.is_active:
            raise PermissionDeniedError("Account is inactive")

        with UserLockManager.lock(user_id):
            try:
                start = datetime.now(timezone.utc)
                investment = Investment(
                    user_id=user_id,
                    plan_id=plan.id,
                    amount=amount,
                    daily_roi=plan.daily_roi,
                    total_return=plan.total_return,
                    duration_days=plan.duration_days,
                    status=InvestmentStatus.ACTIVE,
                    start_date=start,
                    end_date=start + timedelta(days=plan.duration_days),
                )
                db.session.add(investment)
                db.session.flush()

                LedgerStore.record(
                    user_id,
                    TransactionType.INVESTMENT,
                    -amount,
                    status=TransactionStatus.COMPLETED,
                    details=InvestmentDetails(investment_id=investment.id, plan_id=plan.id),
                    notes=f"Investment in {plan.name}",
                    idempotency_key=f"investment:{investment.id}:open",
                )
                balance = WalletService.debit(user_id, amount)
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

        ledger_logger.info(f"User {user_id} opened investment #{investment.id}: {amount} in {plan.id}")
        Notifier.notify(user_id, "Investment Created", f"You invested {amount} USDT in the {plan.name}.", "success")
        return investment, balance

    @staticmethod
    def cancel(investment_id, actor_id: int, is_admin: bool = False):
        """Cancel an active investment and refund its amount. Returns (investment, balance)."""
        try:
            investment_id = int(investment_id)
        except (TypeError, ValueError):
            raise ValidationError("Invalid investment ID")

        investment = db.session.get(Investment, investment_id)
        if investment is None:
            raise NotFoundError("Investment not found")
        if not is_admin and investment.user_id != actor_id:
            raise PermissionDeniedError("Unauthorized to cancel this investment")

        user_id = investment.user_id
        with UserLockManager.lock(user_id):
            try:
                result = db.session.execute(
                    update(Investment)
                    .where(Investment.id == investment_id, Investment.status == InvestmentStatus.ACTIVE)
                    .values(status=InvestmentStatus.CANCELLED, cancelled_at=datetime.now(timezone.utc))
                    .execution_options(synchronize_session="fetch")
                )
                if result.rowcount != 1:
                    raise ConflictError("Only active investments can be cancelled")

                LedgerStore.record(
                    user_id,
                    TransactionType.INVESTMENT_REFUND,
                    investment.amount,
                    status=TransactionStatus.COMPLETED,
                    details=InvestmentRefundDetails(
                        investment_id=investment.id, plan_id=investment.plan_id, cancelled_by=actor_id,
                    ),
                    notes="Refund from cancelled investment",
                    idempotency_key=f"investment:{investment.id}:refund",
                )
                balance = WalletService.credit(user_id, investment.amount)
                db.session.commit()
            except Exception:
                db.session.rollback()
                raise

        db.session.refresh(investment)
        ledger_logger.info(f"Investment #{investment_id} cancelled by {actor_id}, refunded {investment.amount}")
        Notifier.notify(
            user_id,
            "Investment Cancelled",
            f"Your investment #{investment_id} was cancelled and {investment.amount} USDT returned to your balance.",
            "info",
        )
        return investment, balance

    # ===== Readers =====

    @staticmethod
    def get_for_user(investment_id: int, user_id: int) -> Investment:
        investment = db.session.get(Investment, investment_id)
        if investment is None:
            raise NotFoundError("Investment not found")
        if investment.user_id != user_id:
            raise PermissionDeniedError("Unauthorized access to this investment")
        return investment

    @staticmethod
    def list_for_user(user_id: int, active=None):
        query = Investment.query.filter_by(user_id=user_id)
        if active is True:
            query = query.filter(Investment.status == InvestmentStatus.ACTIVE)
        elif active is False:
            query = query.filter(Investment.status != InvestmentStatus.ACTIVE)
        return query.order_by(Investment.start_date.desc(), Investment.id.desc()).all()

    @staticmethod
    def total_active(user_id=None) -> Decimal:
        query = db.session.query(db.func.coalesce(db.func.sum(Investment.amount), 0)) \
                          .filter(Investment.status == InvestmentStatus.ACTIVE)
        if user_id is not None:
            query = query.filter(Investment.user_id == user_id)
        return Decimal(str(query.scalar()))
