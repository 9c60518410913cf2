"""
Referral graph and the three level commission cascade.

A completed deposit is announced once as a DepositCompleted event. The
cascade pays each ancestor in its own unit of work and keys every payment
on (deposit transaction id, level), so replaying the event pays nothing twice.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Tuple

from flask import current_app
from sqlalchemy import func, distinct
from sqlalchemy.exc import IntegrityError as DBIntegrityError, SQLAlchemyError

from exceptions import LedgerError, IntegrityError, NotFoundError, ValidationError
from extensions import db
from logger import referral_logger
from models import ReferralEdge, Transaction, TransactionType, TransactionStatus, User
from services.ledger import LedgerStore, CommissionDetails
from services.notifications import Notifier
from services.wallet import WalletService, UserLockManager
from utils import quantize_amount

MAX_LEVELS = 3
DEFAULT_RATES = (Decimal("0.05"), Decimal("0.02"), Decimal("0.01"))


@dataclass(frozen=True)
class DepositCompleted:
    user_id: int
    amount: Decimal
    transaction_id: int


def commission_rates():
    rates = tuple(current_app.config.get("COMMISSION_RATES") or DEFAULT_RATES)
    return rates[:MAX_LEVELS]


def commission_key(deposit_transaction_id, level):
    return f"commission:{deposit_transaction_id}:{level}"

# ==========================================================
#                  REFERRAL GRAPH
# ==========================================================


class ReferralGraph:

    @staticmethod
    def ancestors(user_id: int, depth: int = MAX_LEVELS) -> List[int]:
        """Referrer ids from level 1 upward, at most `depth` of them."""
        user = db.session.get(User, user_id)
        if user is None:
            raise IntegrityError(f"User {user_id} not found")

        chain = []
        seen = {user_id}
        current = user
        while current is not None and current.referred_by and len(chain) < depth:
            if current.referred_by in seen:
                referral_logger.warning(f"Referral cycle detected above user {user_id} at {current.referred_by}")
                break
            seen.add(current.referred_by)
            chain.append(current.referred_by)
            current = db.session.get(User, current.referred_by)
        return chain

    @staticmethod
    def upsert_edge(referrer_id: int, referred_id: int, level: int, commission) -> ReferralEdge:
        """Create the edge with `commission` as its total, or accumulate onto it. Level never changes."""
        edge = ReferralEdge.query.filter_by(referrer_id=referrer_id, referred_id=referred_id) \
                                 .with_for_update().first()
        if edge is None:
            edge = ReferralEdge(
                referrer_id=referrer_id,
                referred_id=referred_id,
                level=level,
                commission_earned=quantize_amount(commission),
            )
            db.session.add(edge)
        else:
            if edge.level != level:
                referral_logger.warning(
                    f"Edge {referrer_id}->{referred_id} is level {edge.level}, commission computed at level {level}"
                )
            edge.commission_earned = ReferralEdge.commission_earned + quantize_amount(commission)
        db.session.flush()
        return edge

    # ===== Read side =====

    @staticmethod
    def count_referrals(user_id: int) -> int:
        """Users who signed up with this user's code."""
        return User.query.filter_by(referred_by=user_id).count()

    @staticmethod
    def count_active_referrals(user_id: int) -> int:
        """Referred users, at any tracked level, with at least one completed deposit."""
        return db.session.query(func.count(distinct(ReferralEdge.referred_id))) \
            .join(Transaction, Transaction.user_id == ReferralEdge.referred_id) \
            .filter(
                ReferralEdge.referrer_id == user_id,
                Transaction.type == TransactionType.DEPOSIT,
                Transaction.status == TransactionStatus.COMPLETED,
            ).scalar() or 0

    @staticmethod
    def pending_commissions(user_id: int) -> Decimal:
        """What pending deposits below this user would pay once they complete."""
        rates = commission_rates()
        rows = db.session.query(ReferralEdge.level, func.coalesce(func.sum(Transaction.amount), 0)) \
            .join(Transaction, Transaction.user_id == ReferralEdge.referred_id) \
            .filter(
                ReferralEdge.referrer_id == user_id,
                Transaction.type == TransactionType.DEPOSIT,
                Transaction.status == TransactionStatus.PENDING,
            ).group_by(ReferralEdge.level).all()
        total = Decimal("0")
        for level, amount in rows:
            if 1 <= level <= len(rates):
                total += Decimal(str(amount)) * rates[level - 1]
        return quantize_amount(total)

    @staticmethod
    def referral_stats(user_id: int) -> dict:
        by_level = {str(level): {"count": 0, "commission": 0.0} for level in range(1, MAX_LEVELS + 1)}
        rows = db.session.query(
            ReferralEdge.level,
            func.count(ReferralEdge.id),
            func.coalesce(func.sum(ReferralEdge.commission_earned), 0),
        ).filter(ReferralEdge.referrer_id == user_id).group_by(ReferralEdge.level).all()
        for level, count, commission in rows:
            by_level[str(level)] = {"count": count, "commission": float(commission)}

        return {
            "totalReferrals": ReferralGraph.count_referrals(user_id),
            "activeReferrals": ReferralGraph.count_active_referrals(user_id),
            "totalEarnings": float(LedgerStore.total_referral_earnings(user_id)),
            "pendingCommissions": float(ReferralGraph.pending_commissions(user_id)),
            "referralsByLevel": {level: data["count"] for level, data in by_level.items()},
            "commissionsByLevel": {level: data["commission"] for level, data in by_level.items()},
        }

    @staticmethod
    def list_referrals(user_id: int, page=1, per_page=20):
        pagination = ReferralEdge.query.filter_by(referrer_id=user_id) \
            .order_by(ReferralEdge.level.asc(), ReferralEdge.created_at.desc()) \
            .paginate(page=page, per_page=per_page, error_out=False)
        return pagination.items, pagination.total

    @staticmethod
    def list_direct_referrals(user_id: int):
        return User.query.filter_by(referred_by=user_id).order_by(User.created_at.desc()).all()

    @staticmethod
    def commission_history(user_id: int, page=1, per_page=20):
        return LedgerStore.list_for_user(
            user_id, page=page, per_page=per_page, type=TransactionType.REFERRAL_COMMISSION
        )

    # ===== Admin =====

    @staticmethod
    def list_all_edges(page=1, per_page=20):
        pagination = ReferralEdge.query.order_by(ReferralEdge.created_at.desc()) \
            .paginate(page=page, per_page=per_page, error_out=False)
        return pagination.items, pagination.total

    @staticmethod
    def adjust_edge_commission(edge_id: int, amount, action: str) -> ReferralEdge:
        """Correct the reporting total of an edge. Wallets are not touched."""
        edge = db.session.get(ReferralEdge, edge_id)
        if edge is None:
            raise NotFoundError("Referral not found")
        amount = quantize_amount(amount)
        if action == "add":
            edge.commission_earned = quantize_amount(edge.commission_earned + amount)
        elif action == "subtract":
            edge.commission_earned = max(Decimal("0"), quantize_amount(edge.commission_earned - amount))
        else:
            raise ValidationError('Invalid action. Use "add" or "subtract"')
        db.session.commit()
        referral_logger.info(f"Admin {action} {amount} on referral edge {edge_id}")
        return edge

# ==========================================================
#                  COMMISSION CASCADE
# ==========================================================


class CommissionEngine:

    @staticmethod
    def handle_deposit_completed(event: DepositCompleted) -> List[Tuple[int, int, Decimal]]:
        """
        Pay levels 1..3 for a completed deposit.
        Returns the (level, referrer_id, commission) payments made by this call.
        """
        deposit = db.session.get(Transaction, event.transaction_id)
        if deposit is None or deposit.type is not TransactionType.DEPOSIT \
                or deposit.status is not TransactionStatus.COMPLETED:
            referral_logger.warning(f"Ignoring commission request for #{event.transaction_id}: not a completed deposit")
            return []

        deposit_amount = quantize_amount(deposit.amount)
        ancestors = ReferralGraph.ancestors(deposit.user_id)
        if not ancestors:
            referral_logger.info(f"User {deposit.user_id} has no referrer, no commissions for #{deposit.id}")
            return []

        paid = []
        for level, (referrer_id, rate) in enumerate(zip(ancestors, commission_rates()), start=1):
            commission = quantize_amount(deposit_amount * rate)
            if commission <= 0:
                continue

            key = commission_key(deposit.id, level)
            if LedgerStore.find_by_idempotency_key(key) is not None:
                referral_logger.info(f"Level {level} commission for deposit #{deposit.id} already paid, skipping")
                continue

            try:
                with UserLockManager.lock(referrer_id):
                    LedgerStore.record(
                        referrer_id,
                        TransactionType.REFERRAL_COMMISSION,
                        commission,
                        status=TransactionStatus.COMPLETED,
                        details=CommissionDetails(
                            level=level,
                            referred_user=deposit.user_id,
                            deposit_amount=deposit_amount,
                            commission=commission,
                            deposit_transaction_id=deposit.id,
                        ),
                        idempotency_key=key,
                    )
                    WalletService.credit(referrer_id, commission)
                    ReferralGraph.upsert_edge(referrer_id, deposit.user_id, level, commission)
                    db.session.commit()
            except DBIntegrityError:
                db.session.rollback()
                referral_logger.info(f"Level {level} commission for deposit #{deposit.id} paid concurrently, skipping")
                continue
            except (LedgerError, SQLAlchemyError) as e:
                db.session.rollback()
                referral_logger.error(
                    f"Level {level} commission for deposit #{deposit.id} to user {referrer_id} failed: {e}",
                    exc_info=True,
                )
                break

            referral_logger.info(
                f"Paid level {level} commission {commission} to user {referrer_id} for deposit #{deposit.id}"
            )
            paid.append((level, referrer_id, commission))
            Notifier.notify(
                referrer_id,
                "Referral Commission Earned",
                f"You earned {commission} USDT (level {level}) from a referral deposit.",
                "success",
            )

        return paid
