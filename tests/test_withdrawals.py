from decimal import Decimal

import pytest
import requests

from conftest import balance_of, FakePayoutClient, TRON_ADDRESS
from exceptions import (
    ValidationError, InsufficientFundsError, ConflictError, ExternalServiceError,
    PayoutTimeoutError, PermissionDeniedError, IntegrityError,
)
from extensions import db
from models import Transaction, TransactionType, TransactionStatus
from services.ledger import LedgerStore, DepositDetails
from services.notifications import Notifier
from services.wallet import WalletService
from services.withdrawals import WithdrawalService, WithdrawalValidator
from utils import PayoutClient


def _request(user, amount="20", address=TRON_ADDRESS, network="TRC20"):
    return WithdrawalService.request(user.id, amount, address, network)


# ===== Validation =====

@pytest.mark.parametrize("amount, address, network", [
    (None, TRON_ADDRESS, "TRC20"),
    ("20", "", "TRC20"),
    ("20", TRON_ADDRESS, ""),
    ("9.99", TRON_ADDRESS, "TRC20"),
    ("-20", TRON_ADDRESS, "TRC20"),
    ("abc", TRON_ADDRESS, "TRC20"),
    ("20", "0x" + "a" * 40, "TRC20"),
    ("20", TRON_ADDRESS, "DOGE"),
])
def test_invalid_requests_are_refused(amount, address, network, app):
    with pytest.raises(ValidationError):
        WithdrawalValidator.validate_request(amount, address, network)


def test_validator_normalizes_network(app):
    amount, address, network = WithdrawalValidator.validate_request("10", f"  {TRON_ADDRESS} ", "trc20")
    assert amount == Decimal("10")
    assert address == TRON_ADDRESS
    assert network == "TRC20"


def test_refused_request_leaves_no_trace(make_user):
    user = make_user(balance=100)
    with pytest.raises(ValidationError):
        _request(user, amount="5")
    assert balance_of(user) == {"available": Decimal("100"), "pending": Decimal("0")}
    assert Transaction.query.count() == 0


def test_insufficient_funds_counts_the_fee(make_user):
    """20 + 1 fee needs 21 available."""
    user = make_user(balance=20)
    with pytest.raises(InsufficientFundsError):
        _request(user, amount="20")
    assert balance_of(user)["available"] == Decimal("20")
    assert Transaction.query.filter_by(type=TransactionType.WITHDRAWAL).count() == 0


def test_inactive_user_cannot_withdraw(make_user):
    user = make_user(balance=100)
    user.is_active = False
    db.session.commit()
    with pytest.raises(PermissionDeniedError):
        _request(user)


# ===== Request =====

def test_request_holds_amount_plus_fee(make_user):
    user = make_user(balance=100)
    tx = _request(user, amount="20")

    assert tx.status is TransactionStatus.PENDING
    assert tx.amount == Decimal("-20")
    assert tx.detail_payload().fee == Decimal("1")
    assert balance_of(user) == {"available": Decimal("79"), "pending": Decimal("21")}


def test_repeated_requests_never_overdraw(make_user):
    user = make_user(balance=50)
    accepted = 0
    for _ in range(5):
        try:
            _request(user, amount="15")
            accepted += 1
        except InsufficientFundsError:
            pass

    balance = balance_of(user)
    assert accepted == 3
    assert balance["available"] == Decimal("2")
    assert balance["available"] + balance["pending"] == Decimal("50")


# ===== Processing =====

def test_reject_refunds_amount_plus_fee(make_user):
    """balance 100, withdraw 20 (fee 1), reject: back to 100."""
    user = make_user(balance=100)
    tx = _request(user, amount="20")

    WithdrawalService.process(tx.id, "reject", notes="suspicious", admin_id=1)

    assert LedgerStore.get(tx.id).status is TransactionStatus.REJECTED
    assert LedgerStore.get(tx.id).notes == "suspicious"
    assert balance_of(user) == {"available": Decimal("100"), "pending": Decimal("0")}


def test_approve_with_manual_hash(make_user):
    user = make_user(balance=100)
    tx = _request(user, amount="20")

    WithdrawalService.process(tx.id, "approve", tx_hash="0xmanual", admin_id=1)

    resolved = LedgerStore.get(tx.id)
    assert resolved.status is TransactionStatus.COMPLETED
    assert resolved.tx_hash == "0xmanual"
    assert balance_of(user) == {"available": Decimal("79"), "pending": Decimal("0")}


def test_approve_through_payout_gateway(make_user):
    user = make_user(balance=100)
    tx = _request(user, amount="20")
    client = FakePayoutClient(outcome=(True, "0xchain", None))

    WithdrawalService.process(tx.id, "approve", admin_id=1, payout_client=client)

    assert client.calls == [{
        "to": TRON_ADDRESS, "amount": Decimal("20"), "network": "TRC20", "reference": f"withdrawal-{tx.id}",
    }]
    assert LedgerStore.get(tx.id).tx_hash == "0xchain"
    assert balance_of(user) == {"available": Decimal("79"), "pending": Decimal("0")}


def test_failed_payout_marks_failed_and_refunds(make_user):
    user = make_user(balance=100)
    tx = _request(user, amount="20")
    client = FakePayoutClient(outcome=(False, None, "insufficient hot wallet funds"))

    WithdrawalService.process(tx.id, "approve", admin_id=1, payout_client=client)

    failed = LedgerStore.get(tx.id)
    assert failed.status is TransactionStatus.FAILED
    assert failed.notes == "Admin approved, but automated transfer failed: insufficient hot wallet funds"
    assert balance_of(user) == {"available": Decimal("100"), "pending": Decimal("0")}


def test_unconfigured_gateway_fails_and_refunds(make_user):
    user = make_user(balance=100)
    tx = _request(user, amount="20")

    WithdrawalService.process(tx.id, "approve", admin_id=1)

    assert LedgerStore.get(tx.id).status is TransactionStatus.FAILED
    assert balance_of(user)["available"] == Decimal("100")


def test_payout_timeout_leaves_withdrawal_pending(make_user):
    user = make_user(balance=100)
    tx = _request(user, amount="20")
    client = FakePayoutClient(raises=PayoutTimeoutError("Payout timed out after 30s"))

    with pytest.raises(ExternalServiceError):
        WithdrawalService.process(tx.id, "approve", admin_id=1, payout_client=client)

    still = LedgerStore.get(tx.id)
    assert still.status is TransactionStatus.PENDING
    assert "outcome unknown" in still.notes
    assert balance_of(user) == {"available": Decimal("79"), "pending": Decimal("21")}

    # the operator confirms on chain and finishes it
    WithdrawalService.process(tx.id, "approve", tx_hash="0xfound", admin_id=1)
    assert LedgerStore.get(tx.id).status is TransactionStatus.COMPLETED
    assert balance_of(user) == {"available": Decimal("79"), "pending": Decimal("0")}


@pytest.fixture
def operator_alerts(monkeypatch):
    alerts = []
    monkeypatch.setattr(
        Notifier, "alert_operators",
        staticmethod(lambda subject, message, critical=False: alerts.append((subject, message, critical))),
    )
    return alerts


def test_sent_payout_survives_a_failed_completion(make_user, monkeypatch, operator_alerts):
    """the gateway paid out, the ledger write did not land: the user must not be refunded too."""
    user = make_user(balance=100)
    tx = _request(user, amount="20")

    def broken_release(user_id, amount):
        raise IntegrityError("wallet row vanished")

    monkeypatch.setattr(WalletService, "release_hold", staticmethod(broken_release))
    with pytest.raises(IntegrityError):
        WithdrawalService.process(tx.id, "approve", admin_id=1, payout_client=FakePayoutClient((True, "0xsent", None)))

    still = LedgerStore.get(tx.id)
    assert still.status is TransactionStatus.PENDING
    assert still.tx_hash == "0xsent"
    assert "0xsent" in still.notes and "completion failed" in still.notes
    assert [(subject, critical) for subject, _, critical in operator_alerts] == [
        ("Withdrawal Paid But Not Completed", True),
    ]

    with pytest.raises(ConflictError):
        WithdrawalService.process(tx.id, "reject", admin_id=1)
    assert balance_of(user) == {"available": Decimal("79"), "pending": Decimal("21")}

    # once the database is healthy again, approving finishes it without paying twice
    monkeypatch.undo()
    gateway = FakePayoutClient((True, "0xsecond", None))
    WithdrawalService.process(tx.id, "approve", admin_id=1, payout_client=gateway)

    assert gateway.calls == []
    done = LedgerStore.get(tx.id)
    assert done.status is TransactionStatus.COMPLETED
    assert done.tx_hash == "0xsent"
    assert balance_of(user) == {"available": Decimal("79"), "pending": Decimal("0")}


def test_manual_hash_failure_is_not_recorded_as_sent(make_user, monkeypatch, operator_alerts):
    user = make_user(balance=100)
    tx = _request(user, amount="20")

    def broken_release(user_id, amount):
        raise IntegrityError("wallet row vanished")

    monkeypatch.setattr(WalletService, "release_hold", staticmethod(broken_release))
    with pytest.raises(IntegrityError):
        WithdrawalService.process(tx.id, "approve", tx_hash="0xmanual", admin_id=1)

    assert LedgerStore.get(tx.id).tx_hash is None
    assert operator_alerts == []


def test_blank_hash_goes_through_the_gateway(make_user):
    user = make_user(balance=100)
    tx = _request(user, amount="20")
    client = FakePayoutClient(outcome=(True, "0xchain", None))

    WithdrawalService.process(tx.id, "approve", tx_hash="   ", admin_id=1, payout_client=client)

    assert len(client.calls) == 1
    assert LedgerStore.get(tx.id).tx_hash == "0xchain"


def test_non_string_hash_is_stored_as_text(make_user):
    user = make_user(balance=100)
    tx = _request(user, amount="20")

    WithdrawalService.process(tx.id, "approve", tx_hash=123456, admin_id=1)

    resolved = LedgerStore.get(tx.id)
    assert resolved.status is TransactionStatus.COMPLETED
    assert resolved.tx_hash == "123456"


@pytest.mark.parametrize("first, second", [
    ("reject", "reject"),
    ("reject", "approve"),
    ("approve", "reject"),
])
def test_terminal_withdrawals_cannot_be_processed_again(first, second, make_user):
    user = make_user(balance=100)
    tx = _request(user, amount="20")
    WithdrawalService.process(tx.id, first, tx_hash="0xdone", admin_id=1)
    after_first = balance_of(user)

    with pytest.raises(ConflictError):
        WithdrawalService.process(tx.id, second, tx_hash="0xagain", admin_id=1)

    assert balance_of(user) == after_first


def test_process_refuses_bad_input(make_user):
    user = make_user(balance=100)
    tx = _request(user)
    deposit = LedgerStore.record(user.id, TransactionType.DEPOSIT, Decimal("5"), details=DepositDetails())
    db.session.commit()

    with pytest.raises(ValidationError):
        WithdrawalService.process(tx.id, "maybe")
    with pytest.raises(ValidationError):
        WithdrawalService.process("not-a-number", "approve")
    with pytest.raises(ValidationError):
        WithdrawalService.process(deposit.id, "reject")


def test_pending_listing_and_details(make_user):
    user = make_user(balance=100)
    first = _request(user, amount="20")
    second = _request(user, amount="10")
    WithdrawalService.process(second.id, "reject", admin_id=1)

    items, total = WithdrawalService.pending_withdrawals()
    assert total == 1 and items[0].id == first.id

    details = WithdrawalService.details(first.id)
    assert details["hold"] == 21.0
    assert details["user"]["username"] == user.username


# ===== Payout gateway client =====

class _Response:
    def __init__(self, status_code, body):
        self.status_code = status_code
        self._body = body

    def json(self):
        return self._body


class _Session:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.sent = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.sent.append({"url": url, "json": json, "headers": headers})
        if self.error is not None:
            raise self.error
        return self.response


def _client(session):
    return PayoutClient("https://payouts.example.com/", api_key="k", session=session)


def test_payout_client_success_sends_idempotency_key(app):
    session = _Session(_Response(200, {"success": True, "txHash": "0xabc"}))
    result = _client(session).send_tokens(TRON_ADDRESS, Decimal("20"), "TRC20", reference="withdrawal-7")

    assert result == (True, "0xabc", None)
    sent = session.sent[0]
    assert sent["url"] == "https://payouts.example.com/transfers"
    assert sent["headers"]["Idempotency-Key"] == "withdrawal-7"
    assert sent["json"]["amount"] == "20"


def test_payout_client_rejection_is_definite_failure(app):
    session = _Session(_Response(400, {"error": "bad address"}))
    assert _client(session).send_tokens(TRON_ADDRESS, Decimal("20"), "TRC20") == (False, None, "bad address")


def test_payout_client_unreachable_is_definite_failure(app):
    session = _Session(error=requests.exceptions.ConnectionError("refused"))
    success, tx_hash, error = _client(session).send_tokens(TRON_ADDRESS, Decimal("20"), "TRC20")
    assert success is False and tx_hash is None
    assert "unreachable" in error


@pytest.mark.parametrize("session", [
    _Session(error=requests.exceptions.ReadTimeout("slow")),
    _Session(_Response(503, {})),
])
def test_payout_client_unknown_outcome_raises(session, app):
    with pytest.raises(PayoutTimeoutError):
        _client(session).send_tokens(TRON_ADDRESS, Decimal("20"), "TRC20")


def test_payout_client_checks_destination_before_sending(app):
    session = _Session(_Response(200, {"txHash": "0xabc"}))
    assert _client(session).send_tokens("nope", Decimal("20"), "TRC20")[0] is False
    assert session.sent == []
