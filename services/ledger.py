"""
Ledger store: the durable record of every monetary movement.

Recording an entry never touches a wallet. Callers pair each record() or
resolve() with the matching WalletService call inside the same unit of work
and commit once.
"""
import json
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from decimal import Decimal
from typing import ClassVar, Optional

from sqlalchemy import or_, update, func

from exceptions import ValidationError, NotFoundError, ConflictError, IntegrityError
from extensions import db
from logger import ledger_logger
from models import Transaction, TransactionType, TransactionStatus, User
from utils import quantize_amount

# ==========================================================
#                  TYPED DETAIL PAYLOADS
# ==========================================================


def _camel(name):
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


@dataclass(frozen=True)
class _Details:
    kind: ClassVar[TransactionType]

    def validate(self):
        pass

    def __post_init__(self):
        self.validate()

    def to_json(self):
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            data[_camel(f.name)] = str(value) if isinstance(value, Decimal) else value
        return json.dumps(data)

    @classmethod
    def from_dict(cls, data):
        kwargs = {}
        for f in fields(cls):
            key = _camel(f.name)
            if key not in data:
                continue
            value = data[key]
            if f.type in (Decimal, Optional[Decimal]) and value is not None:
                value = Decimal(str(value))
            kwargs[f.name] = value
        return cls(**kwargs)


@dataclass(frozen=True)
class DepositDetails(_Details):
    kind: ClassVar[TransactionType] = TransactionType.DEPOSIT
    network: str = "TRC20"
    wallet_address: Optional[str] = None
    currency: str = "USDT"
    source: str = "chain"

    def validate(self):
        if self.source not in ("chain", "admin"):
            raise ValidationError(f"Unknown deposit source: {self.source}")


@dataclass(frozen=True)
class WithdrawalDetails(_Details):
    kind: ClassVar[TransactionType] = TransactionType.WITHDRAWAL
    wallet_address: str
    network: str
    fee: Decimal

    def validate(self):
        if not self.wallet_address or not self.network:
            raise ValidationError("Withdrawal details need walletAddress and network")
        if self.fee is None or self.fee < 0:
            raise ValidationError("Withdrawal fee cannot be negative")


@dataclass(frozen=True)
class CommissionDetails(_Details):
    kind: ClassVar[TransactionType] = TransactionType.REFERRAL_COMMISSION
    level: int
    referred_user: int
    deposit_amount: Decimal
    commission: Decimal
    deposit_transaction_id: int

    def validate(self):
        if self.level not in (1, 2, 3):
            raise ValidationError(f"Invalid referral level: {self.level}")
        if self.deposit_amount <= 0 or self.commission <= 0:
            raise ValidationError("Commission amounts must be positive")


@dataclass(frozen=True)
class MilestoneDetails(_Details):
    kind: ClassVar[TransactionType] = TransactionType.MILESTONE_REWARD
    milestone_id: int
    milestone_level: int
    milestone_target: int
    reward: Decimal

    def validate(self):
        if self.reward <= 0:
            raise ValidationError("Milestone reward must be positive")


@dataclass(frozen=True)
class AdjustmentDetails(_Details):
    kind: ClassVar[TransactionType] = TransactionType.ADMIN_ADJUSTMENT
    reason: str
    previous_balance: Decimal
    new_balance: Decimal
    admin_id: Optional[int] = None

    def validate(self):
        if not self.reason or not self.reason.strip():
            raise ValidationError("A reason is required for balance adjustments")
        if self.new_balance < 0:
            raise ValidationError("Balance cannot go below zero")


@dataclass(frozen=True)
class InvestmentDetails(_Details):
    kind: ClassVar[TransactionType] = TransactionType.INVESTMENT
    investment_id: int
    plan_id: str

    def validate(self):
        if not self.plan_id:
            raise ValidationError("Investment entries need a planId")


@dataclass(frozen=True)
class InvestmentRefundDetails(InvestmentDetails):
    kind: ClassVar[TransactionType] = TransactionType.INVESTMENT_REFUND
    cancelled_by: Optional[int] = None


DETAILS_BY_TYPE = {cls.kind: cls for cls in (
    DepositDetails, WithdrawalDetails, CommissionDetails, MilestoneDetails, AdjustmentDetails,
    InvestmentDetails, InvestmentRefundDetails,
)}

# Types that must carry a payload. Profit entries may be recorded bare.
PAYLOAD_REQUIRED = set(DETAILS_BY_TYPE)


def parse_details(transaction_type, raw):
    if not raw:
        return None
    cls = DETAILS_BY_TYPE.get(transaction_type)
    data = json.loads(raw)
    return cls.from_dict(data) if cls else data


def _utcnow():
    return datetime.now(timezone.utc)

# ==========================================================
#                  LEDGER STORE
# ==========================================================


class LedgerStore:

    @staticmethod
    def record(user_id: int, type: TransactionType, amount, status=TransactionStatus.PENDING,
               details=None, tx_hash=None, notes=None, idempotency_key=None) -> Transaction:
        """Add a ledger entry to the current unit of work and flush it to get an id."""
        if not isinstance(type, TransactionType):
            raise ValidationError(f"Unknown transaction type: {type}")
        if not isinstance(status, TransactionStatus):
            raise ValidationError(f"Unknown transaction status: {status}")

        amount = quantize_amount(amount)
        if amount == 0:
            raise ValidationError("Ledger entries cannot have a zero amount")

        if details is None and type in PAYLOAD_REQUIRED:
            raise ValidationError(f"{type.value} entries require details")
        if details is not None and details.kind is not type:
            raise ValidationError(f"{details.__class__.__name__} cannot be attached to a {type.value} entry")

        if db.session.get(User, user_id) is None:
            raise IntegrityError(f"User {user_id} not found for ledger entry")

        transaction = Transaction(
            user_id=user_id,
            type=type,
            amount=amount,
            status=status,
            details=details.to_json() if details is not None else None,
            tx_hash=tx_hash,
            notes=notes,
            idempotency_key=idempotency_key,
            completed_at=_utcnow() if status.is_terminal else None,
        )
        db.session.add(transaction)
        db.session.flush()

        ledger_logger.info(
            f"Recorded {type.value} #{transaction.id}: user {user_id}, amount {amount}, status {status.value}"
        )
        return transaction

    @staticmethod
    def resolve(transaction_id: int, status: TransactionStatus, notes=None, proof=None) -> Transaction:
        """Move a pending entry to a terminal status. Happens exactly once per entry."""
        if not isinstance(status, TransactionStatus) or not status.is_terminal:
            raise ValidationError("Entries can only be resolved to a terminal status")

        transaction = db.session.get(Transaction, transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")

        values = {"status": status, "completed_at": _utcnow()}
        if notes is not None:
            values["notes"] = notes
        if proof is not None:
            values["tx_hash"] = proof

        result = db.session.execute(
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status == TransactionStatus.PENDING)
            .values(**values)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount != 1:
            db.session.refresh(transaction)
            ledger_logger.warning(
                f"Refused to resolve #{transaction_id} to {status.value}: already {transaction.status.value}"
            )
            raise ConflictError(f"Transaction {transaction_id} is already {transaction.status.value}")

        db.session.refresh(transaction)
        ledger_logger.info(f"Resolved #{transaction_id} to {status.value}")
        return transaction

    @staticmethod
    def annotate(transaction_id: int, notes: str, tx_hash=None) -> Transaction:
        """Update the notes, and optionally the chain hash, of a still pending entry."""
        transaction = db.session.get(Transaction, transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        if transaction.status.is_terminal:
            raise ConflictError(f"Transaction {transaction_id} is already {transaction.status.value}")
        transaction.notes = notes
        if tx_hash is not None:
            transaction.tx_hash = tx_hash
        db.session.flush()
        return transaction

    # ===== Readers =====

    @staticmethod
    def get(transaction_id: int) -> Transaction:
        transaction = db.session.get(Transaction, transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return transaction

    @staticmethod
    def find_by_idempotency_key(key):
        return Transaction.query.filter_by(idempotency_key=key).first()

    @staticmethod
    def _paginate(query, page, per_page):
        pagination = query.order_by(Transaction.created_at.desc(), Transaction.id.desc()) \
                          .paginate(page=page, per_page=per_page, error_out=False)
        return pagination.items, pagination.total

    @staticmethod
    def list_for_user(user_id, page=1, per_page=20, type=None, status=None):
        query = Transaction.query.filter_by(user_id=user_id)
        if type is not None:
            query = query.filter(Transaction.type == type)
        if status is not None:
            query = query.filter(Transaction.status == status)
        return LedgerStore._paginate(query, page, per_page)

    @staticmethod
    def list_by_status(status, page=1, per_page=20, type=None):
        query = Transaction.query.filter(Transaction.status == status)
        if type is not None:
            query = query.filter(Transaction.type == type)
        return LedgerStore._paginate(query, page, per_page)

    @staticmethod
    def search(type=None, search=None, limit=50, offset=0):
        """Admin listing: optional type filter and a free-text match on user or hash."""
        query = Transaction.query.join(User, User.id == Transaction.user_id)
        if type is not None:
            query = query.filter(Transaction.type == type)
        if search:
            pattern = f"%{search.strip()}%"
            query = query.filter(or_(
                User.username.ilike(pattern),
                User.email.ilike(pattern),
                Transaction.tx_hash.ilike(pattern),
            ))
        total = query.count()
        items = query.order_by(Transaction.created_at.desc(), Transaction.id.desc()) \
                     .offset(offset).limit(limit).all()
        return items, total

    # ===== Aggregates =====

    @staticmethod
    def total_by_type(type, status=TransactionStatus.COMPLETED, user_id=None):
        query = db.session.query(func.coalesce(func.sum(Transaction.amount), 0)) \
                          .filter(Transaction.type == type, Transaction.status == status)
        if user_id is not None:
            query = query.filter(Transaction.user_id == user_id)
        return quantize_amount(Decimal(str(query.scalar())))

    @staticmethod
    def total_referral_earnings(user_id):
        return LedgerStore.total_by_type(TransactionType.REFERRAL_COMMISSION, user_id=user_id)
