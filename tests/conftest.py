import itertools
from decimal import Decimal

import pytest

from app import create_app
from config import TestConfig
from extensions import db
from services.accounts import AccountService
from services.deposits import DepositProcessor
from services.wallet import WalletService

PASSWORD = "password123"

TRON_ADDRESS = "T" + "A" * 33
OTHER_TRON_ADDRESS = "T" + "B" * 33


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    """
    factory: make_user(referrer=..., balance=...) registers and verifies a user.
    balance is credited straight to the wallet, without a ledger entry.
    """
    counter = itertools.count(1)

    def _make(username=None, referrer=None, balance=None, verified=True, role="user"):
        username = username or f"user{next(counter)}"
        user = AccountService.register(
            username,
            f"{username}@example.com",
            PASSWORD,
            referral_code=referrer.referral_code if referrer else None,
        )
        if verified:
            AccountService.verify_email(user.id)
        if role != "user":
            user.role = role
            db.session.commit()
        if balance is not None:
            WalletService.credit(user.id, Decimal(str(balance)))
            db.session.commit()
        return user

    return _make


@pytest.fixture
def chain(make_user):
    """
    D -> C -> B -> A, A deposits.
    returns dict with the four users, A being the depositor.
    """
    d = make_user("dave")
    c = make_user("carol", referrer=d)
    b = make_user("bob", referrer=c)
    a = make_user("alice", referrer=b)
    return {"A": a, "B": b, "C": c, "D": d}


@pytest.fixture
def deposit():
    """deposit(user, amount) completes an admin-confirmed deposit."""
    def _deposit(user, amount, tx_hash=None):
        return DepositProcessor.complete_deposit(user.id, Decimal(str(amount)), tx_hash=tx_hash)
    return _deposit


def balance_of(user):
    return WalletService.get_balance(user.id)


def login(client, user):
    res = client.post("/auth/login", json={"login": user.username, "password": PASSWORD})
    assert res.status_code == 200
    return res


class FakePayoutClient:
    """stand-in for the payout gateway: returns a fixed outcome or raises."""

    def __init__(self, outcome=(True, "0xpaid", None), raises=None):
        self.outcome = outcome
        self.raises = raises
        self.calls = []

    def send_tokens(self, to_address, amount, network, reference=None):
        self.calls.append({"to": to_address, "amount": amount, "network": network, "reference": reference})
        if self.raises is not None:
            raise self.raises
        return self.outcome


class FakeTronGrid:
    """stand-in for TronGridClient returning canned transfers per address."""

    def __init__(self, transfers=None, error=None):
        self.transfers = transfers or {}
        self.error = error
        self.calls = 0

    def fetch_trc20_transfers(self, address, limit=50):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.transfers.get(address, []))


def trc20_transfer(tx_id, to, value, contract=None, decimals=6, type="Transfer"):
    return {
        "transaction_id": tx_id,
        "type": type,
        "to": to,
        "value": str(value),
        "token_info": {
            "address": contract or TestConfig.USDT_CONTRACT_ADDRESS,
            "decimals": decimals,
            "symbol": "USDT",
        },
    }
