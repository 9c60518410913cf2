from datetime import datetime, timezone
from decimal import Decimal

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError as DBIntegrityError

from exceptions import NotFoundError, PermissionDeniedError, ConflictError, ValidationError
from extensions import db
from logger import referral_logger
from models import Milestone, TransactionType, TransactionStatus
from services.ledger import LedgerStore, MilestoneDetails
from services.notifications import Notifier
from services.referrals import ReferralGraph
from services.wallet import WalletService, UserLockManager


class MilestoneService:
    """One-time rewards unlocked by active referral counts."""

    @staticmethod
    def _target_for(level: int) -> int:
        return level * int(current_app.config.get("MILESTONE_TARGET", 25))

    @staticmethod
    def _reward() -> Decimal:
        return Decimal(str(current_app.config.get("MILESTONE_REWARD", "250")))

    @staticmethod
    def initialize(user_id: int):
        """Create the level 1 milestone if the user has none yet."""
        if Milestone.query.filter_by(user_id=user_id).first() is not None:
            return None
        milestone = Milestone(
            user_id=user_id,
            level=1,
            target=MilestoneService._target_for(1),
            reward=MilestoneService._reward(),
        )
        db.session.add(milestone)
        try:
            db.session.commit()
        except DBIntegrityError:
            # created concurrently
            db.session.rollback()
            return None
        referral_logger.info(f"Initialized milestones for user {user_id}")
        return milestone

    @staticmethod
    def for_user(user_id: int):
        return Milestone.query.filter_by(user_id=user_id).order_by(Milestone.level.asc()).all()

    @staticmethod
    def next_milestone(user_id: int):
        return Milestone.query.filter_by(user_id=user_id, claimed=False) \
                              .order_by(Milestone.level.asc()).first()

    @staticmethod
    def claim(milestone_id, user_id: int) -> Milestone:
        if not milestone_id:
            raise ValidationError("Milestone ID is required")
        try:
            milestone_id = int(milestone_id)
        except (TypeError, ValueError):
            raise ValidationError("Invalid milestone ID")
        milestone = db.session.get(Milestone, milestone_id)
        if milestone is None:
            raise NotFoundError("Milestone not found")
        if milestone.user_id != user_id:
            raise PermissionDeniedError("You do not have permission to claim this milestone")
        if milestone.claimed:
            raise ConflictError("This milestone has already been claimed")

        active = ReferralGraph.count_active_referrals(user_id)
        if active < milestone.target:
            raise ValidationError(
                f"You need {milestone.target - active} more active referrals to claim this reward"
            )

        with UserLockManager.lock(user_id):
            try:
                result = db.session.execute(
                    update(Milestone)
                    .where(Milestone.id == milestone.id, Milestone.claimed.is_(False))
                    .values(claimed=True, claimed_at=datetime.now(timezone.utc))
                    .execution_options(synchronize_session="fetch")
                )
                if result.rowcount != 1:
                    raise ConflictError("This milestone has already been claimed")

                LedgerStore.record(
                    user_id,
                    TransactionType.MILESTONE_REWARD,
                    milestone.reward,
                    status=TransactionStatus.COMPLETED,
                    details=MilestoneDetails(
                        milestone_id=milestone.id,
                        milestone_level=milestone.level,
                        milestone_target=milestone.target,
                        reward=milestone.reward,
                    ),
                    idempotency_key=f"milestone:{milestone.id}",
                )
                WalletService.credit(user_id, milestone.reward)

                next_level = milestone.level + 1
                if Milestone.query.filter_by(user_id=user_id, level=next_level).first() is None:
                    db.session.add(Milestone(
                        user_id=user_id,
                        level=next_level,
                        target=MilestoneService._target_for(next_level),
                        reward=MilestoneService._reward(),
                    ))
                db.session.commit()
            except DBIntegrityError:
                db.session.rollback()
                raise ConflictError("This milestone has already been claimed")
            except Exception:
                db.session.rollback()
                raise

        referral_logger.info(f"User {user_id} claimed milestone {milestone.id} (level {milestone.level}) for {milestone.reward}")
        Notifier.notify_and_email(
            user_id,
            "Referral Milestone Reward Claimed",
            f"You claimed the level {milestone.level} milestone: {milestone.reward} USDT was added to your balance.",
            "success",
        )
        return milestone

    @staticmethod
    def progress(user_id: int) -> dict:
        MilestoneService.initialize(user_id)
        active = ReferralGraph.count_active_referrals(user_id)
        milestones = MilestoneService.for_user(user_id)
        upcoming = MilestoneService.next_milestone(user_id)

        progress_percentage = 100
        next_target = 0
        next_reward = 0.0
        if upcoming is not None:
            next_target = upcoming.target
            next_reward = float(upcoming.reward)
            previous = next((m for m in milestones if m.level == upcoming.level - 1), None)
            start = previous.target if previous else 0
            span = upcoming.target - start
            progress_percentage = min(int((active - start) / span * 100), 100) if span > 0 else 100
            progress_percentage = max(progress_percentage, 0)

        return {
            "currentReferrals": active,
            "targetReferrals": next_target,
            "nextReward": next_reward,
            "progressPercentage": progress_percentage,
            "milestoneReached": upcoming is not None and active >= upcoming.target,
            "nextMilestoneId": upcoming.id if upcoming else None,
            "milestones": [m.to_dict(active_referrals=active) for m in milestones],
        }
