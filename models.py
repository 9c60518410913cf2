# models.py - Flask-SQLAlchemy models for the ledger, referral graph and milestones
import json
from decimal import Decimal
import enum
from sqlalchemy import UniqueConstraint, CheckConstraint, Index
from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash
from extensions import db

MONEY = db.Numeric(precision=18, scale=6)

# ===========================================================
# ENUM DEFINITIONS
# ===========================================================


class TransactionType(enum.Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    PROFIT = "profit"
    REFERRAL_COMMISSION = "referral_commission"
    MILESTONE_REWARD = "milestone_reward"
    ADMIN_ADJUSTMENT = "admin_adjustment"
    INVESTMENT = "investment"
    INVESTMENT_REFUND = "investment_refund"


class TransactionStatus(enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REJECTED = "rejected"

    @property
    def is_terminal(self):
        return self is not TransactionStatus.PENDING


class InvestmentStatus(enum.Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


class NotificationType(enum.Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    DANGER = "danger"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# ===========================================================
# BASE MIXIN FOR COMMON FIELDS
# ===========================================================

class BaseMixin:
    """Provides created_at and updated_at timestamps to inheriting models."""
    created_at = db.Column(db.DateTime(timezone=True), default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True),
                           default=db.func.now(),
                           onupdate=db.func.now())

# ===========================================================
# USER MODEL
# ===========================================================


class User(UserMixin, db.Model, BaseMixin):
    """Account: identity, role and who-referred-them link."""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default="user", index=True)

    referral_code = db.Column(db.String(20), unique=True, nullable=True)  # assigned at email verification
    referred_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)  # fixed at registration

    is_active = db.Column(db.Boolean, default=True)
    is_verified = db.Column(db.Boolean, default=False)

    wallet = db.relationship('Wallet', uselist=False, back_populates='user', cascade="all,delete-orphan")
    referrer = db.relationship('User', remote_side=[id], backref='direct_referrals')

    __table_args__ = (
        Index('idx_user_referral_code', 'referral_code'),
    )

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self):
        return self.role == "admin"

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "referralCode": self.referral_code,
            "referredBy": self.referred_by,
            "isActive": self.is_active,
            "isVerified": self.is_verified,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }

# ===========================================================
# WALLET & TRANSACTIONS
# ===========================================================


class Wallet(db.Model, BaseMixin):
    __tablename__ = 'wallets'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, unique=True, index=True)
    available = db.Column(MONEY, nullable=False, default=Decimal("0"))
    pending = db.Column(MONEY, nullable=False, default=Decimal("0"))
    deposit_address = db.Column(db.String(64), unique=True, nullable=True)

    user = db.relationship('User', back_populates='wallet')

    __table_args__ = (
        CheckConstraint('available >= 0', name='ck_wallet_available_non_negative'),
    )

    def to_dict(self):
        return {
            "available": float(self.available or 0),
            "pending": float(self.pending or 0),
            "depositAddress": self.deposit_address,
        }


class Transaction(db.Model, BaseMixin):
    """Ledger entry. Immutable once status is terminal."""
    __tablename__ = 'transactions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    type = db.Column(db.Enum(TransactionType, values_callable=_enum_values, native_enum=False, length=32),
                     nullable=False, index=True)
    amount = db.Column(MONEY, nullable=False)  # signed: positive credit, negative debit
    status = db.Column(db.Enum(TransactionStatus, values_callable=_enum_values, native_enum=False, length=16),
                       nullable=False, default=TransactionStatus.PENDING, index=True)
    details = db.Column(db.Text, nullable=True)
    tx_hash = db.Column(db.String(128), nullable=True, index=True)
    notes = db.Column(db.Text, nullable=True)
    idempotency_key = db.Column(db.String(120), unique=True, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    user = db.relationship('User', backref=db.backref('transactions', lazy='dynamic'))

    __table_args__ = (
        Index('idx_transaction_user_type_status', 'user_id', 'type', 'status'),
        Index('idx_transaction_created', 'created_at'),
    )

    def detail_payload(self):
        from services.ledger import parse_details
        return parse_details(self.type, self.details)

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "type": self.type.value,
            "amount": float(self.amount),
            "status": self.status.value,
            "details": json.loads(self.details) if self.details else {},
            "txHash": self.tx_hash,
            "notes": self.notes,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }

# ===========================================================
# REFERRALS & MILESTONES
# ===========================================================


class ReferralEdge(db.Model, BaseMixin):
    __tablename__ = 'referral_edges'

    id = db.Column(db.Integer, primary_key=True)
    referrer_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    referred_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    level = db.Column(db.Integer, nullable=False)
    commission_earned = db.Column(MONEY, nullable=False, default=Decimal("0"))
    status = db.Column(db.String(20), nullable=False, default="active")

    referrer = db.relationship('User', foreign_keys=[referrer_id])
    referred = db.relationship('User', foreign_keys=[referred_id])

    __table_args__ = (
        UniqueConstraint('referrer_id', 'referred_id', name='uq_referral_edge_pair'),
        CheckConstraint('level BETWEEN 1 AND 3', name='ck_referral_edge_level'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "referrerId": self.referrer_id,
            "referredId": self.referred_id,
            "referredUsername": self.referred.username if self.referred else None,
            "level": self.level,
            "commissionEarned": float(self.commission_earned or 0),
            "status": self.status,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class Milestone(db.Model, BaseMixin):
    __tablename__ = 'milestones'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    level = db.Column(db.Integer, nullable=False)
    target = db.Column(db.Integer, nullable=False)
    reward = db.Column(MONEY, nullable=False)
    claimed = db.Column(db.Boolean, nullable=False, default=False)
    claimed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('user_id', 'level', name='uq_milestone_user_level'),
    )

    def to_dict(self, active_referrals=None):
        data = {
            "id": self.id,
            "level": self.level,
            "target": self.target,
            "reward": float(self.reward),
            "claimed": self.claimed,
            "claimedAt": self.claimed_at.isoformat() if self.claimed_at else None,
        }
        if active_referrals is not None:
            data["claimable"] = not self.claimed and active_referrals >= self.target
            data["progress"] = min(active_referrals / self.target, 1) * 100 if self.target else 100
        return data

# ===========================================================
# INVESTMENTS
# ===========================================================


class Investment(db.Model, BaseMixin):
    """Funds moved out of the wallet into a plan. Plan terms are copied at creation."""
    __tablename__ = 'investments'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    plan_id = db.Column(db.String(20), nullable=False)
    amount = db.Column(MONEY, nullable=False)
    daily_roi = db.Column(db.Numeric(precision=8, scale=4), nullable=False)
    total_return = db.Column(db.Numeric(precision=8, scale=4), nullable=False)
    duration_days = db.Column(db.Integer, nullable=False)
    status = db.Column(db.Enum(InvestmentStatus, values_callable=_enum_values, native_enum=False, length=16),
                       nullable=False, default=InvestmentStatus.ACTIVE, index=True)
    start_date = db.Column(db.DateTime(timezone=True), nullable=False)
    end_date = db.Column(db.DateTime(timezone=True), nullable=False)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_investment_amount_positive'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "planId": self.plan_id,
            "amount": float(self.amount),
            "dailyRoi": float(self.daily_roi),
            "totalReturn": float(self.total_return),
            "durationDays": self.duration_days,
            "status": self.status.value,
            "startDate": self.start_date.isoformat() if self.start_date else None,
            "endDate": self.end_date.isoformat() if self.end_date else None,
            "cancelledAt": self.cancelled_at.isoformat() if self.cancelled_at else None,
        }

# ===========================================================
# DEPOSIT SCANNING & NOTIFICATIONS
# ===========================================================


class ProcessedChainTransaction(db.Model, BaseMixin):
    """Durable processed-set for on-chain deposits, keyed by chain hash."""
    __tablename__ = 'processed_chain_transactions'

    id = db.Column(db.Integer, primary_key=True)
    tx_hash = db.Column(db.String(128), unique=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey('transactions.id'), nullable=True)


class Notification(db.Model, BaseMixin):
    __tablename__ = 'notifications'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    type = db.Column(db.Enum(NotificationType, values_callable=_enum_values, native_enum=False, length=16),
                     nullable=False, default=NotificationType.INFO)
    is_read = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "message": self.message,
            "type": self.type.value,
            "isRead": self.is_read,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }
