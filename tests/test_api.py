from decimal import Decimal

import pytest

from conftest import balance_of, login, FakeTronGrid, trc20_transfer, PASSWORD, TRON_ADDRESS
from extensions import db
from models import User
from services.wallet import WalletService
from utils import TronGridClient


@pytest.fixture
def admin(make_user):
    return make_user("admin", role="admin")


def test_healthz(client):
    assert client.get("/healthz").get_json() == {"status": "ok"}


# ===== Auth =====

def test_register_with_referral_code_and_login(client, make_user):
    parent = make_user("parent")

    res = client.post("/auth/register", json={
        "username": "newbie", "email": "newbie@example.com", "password": PASSWORD,
        "referralCode": parent.referral_code,
    })
    assert res.status_code == 201
    assert res.get_json()["user"]["referredBy"] == parent.id
    assert res.get_json()["user"]["referralCode"] is None

    res = client.post("/auth/login", json={"login": "newbie@example.com", "password": PASSWORD})
    assert res.status_code == 200

    res = client.get("/api/wallet/balance")
    assert res.get_json()["balance"] == {"available": 0.0, "pending": 0.0}


def test_register_errors(client, make_user):
    make_user("taken")

    res = client.post("/auth/register", json={"username": "taken", "email": "x@example.com", "password": PASSWORD})
    assert res.status_code == 409

    res = client.post("/auth/register", json={"username": "fresh", "email": "f@example.com", "password": "short"})
    assert res.status_code == 400
    assert res.get_json()["success"] is False

    res = client.post("/auth/register?ref=NOPE-0000", json={
        "username": "fresh", "email": "f@example.com", "password": PASSWORD,
    })
    assert res.status_code == 400
    assert res.get_json()["error"] == "Invalid referral code"


def test_bad_credentials(client, make_user):
    user = make_user()
    res = client.post("/auth/login", json={"login": user.username, "password": "wrong-password"})
    assert res.status_code == 401


def test_wallet_routes_require_login(client):
    for path in ("/api/wallet/balance", "/api/wallet/transactions", "/api/referrals/stats"):
        res = client.get(path)
        assert res.status_code == 401
        assert res.get_json()["success"] is False


def test_logout(client, make_user):
    user = make_user()
    login(client, user)
    client.post("/auth/logout")
    assert client.get("/api/wallet/balance").status_code == 401


# ===== Wallet =====

def test_withdraw_flow(client, make_user):
    user = make_user(balance=100)
    login(client, user)

    res = client.post("/api/wallet/withdraw", json={"amount": 20, "walletAddress": TRON_ADDRESS, "network": "TRC20"})
    assert res.status_code == 201
    body = res.get_json()
    assert body["transactionId"] == body["transaction"]["id"]
    assert body["balance"] == {"available": 79.0, "pending": 21.0}

    res = client.get("/api/wallet/transactions?type=withdrawal&status=pending")
    assert res.get_json()["pagination"]["total"] == 1

    res = client.get("/api/wallet/transactions?type=lottery")
    assert res.status_code == 400


def test_withdraw_errors(client, make_user):
    user = make_user(balance=15)
    login(client, user)

    res = client.post("/api/wallet/withdraw", json={"amount": 5, "walletAddress": TRON_ADDRESS, "network": "TRC20"})
    assert res.status_code == 400
    assert "Minimum withdrawal" in res.get_json()["error"]

    res = client.post("/api/wallet/withdraw", json={"amount": 15, "walletAddress": TRON_ADDRESS, "network": "TRC20"})
    assert res.status_code == 400
    assert "Insufficient balance" in res.get_json()["error"]

    assert balance_of(user)["available"] == Decimal("15")


def test_summary_and_deposit_address(client, make_user, deposit):
    user = make_user()
    deposit(user, 40)
    login(client, user)

    res = client.get("/api/wallet/deposit-address")
    assert res.status_code == 404

    summary = client.get("/api/wallet/summary").get_json()
    assert summary["totals"]["deposits"] == 40.0
    assert summary["withdrawalRules"] == {"minimum": 10.0, "fee": 1.0}
    assert len(summary["recentTransactions"]) == 1


def test_deposit_notification_scans_own_address(client, make_user, monkeypatch):
    user = make_user()
    WalletService.assign_deposit_address(user.id, TRON_ADDRESS)
    db.session.commit()
    fake = FakeTronGrid({TRON_ADDRESS: [trc20_transfer("chain-1", TRON_ADDRESS, 30_000_000)]})
    monkeypatch.setattr(TronGridClient, "from_config", classmethod(lambda cls, config: fake))
    login(client, user)

    res = client.post("/api/wallet/deposit-notification")
    assert res.get_json()["credited"] == 1
    assert res.get_json()["balance"]["available"] == 30.0

    assert client.post("/api/wallet/deposit-notification").get_json()["credited"] == 0
    assert client.get("/api/wallet/deposit-address").get_json()["address"] == TRON_ADDRESS


def test_notifications(client, make_user, deposit):
    user = make_user()
    deposit(user, 40)
    login(client, user)

    items = client.get("/api/wallet/notifications?unread=true").get_json()["notifications"]
    assert [n["title"] for n in items] == ["Deposit Received"]

    assert client.post(f"/api/wallet/notifications/{items[0]['id']}/read").status_code == 200
    assert client.get("/api/wallet/notifications?unread=true").get_json()["notifications"] == []
    assert client.post("/api/wallet/notifications/9999/read").status_code == 404


# ===== Referrals =====

def test_referral_routes(client, chain, deposit):
    deposit(chain["A"], 1000)
    login(client, chain["B"])

    link = client.get("/api/referrals/link").get_json()
    assert link["referralLink"].endswith(f"/?ref={chain['B'].referral_code}")

    stats = client.get("/api/referrals/stats").get_json()
    assert stats["stats"]["totalEarnings"] == 50.0
    assert stats["milestone"]["nextTarget"] == 25

    listing = client.get("/api/referrals/list").get_json()
    assert [r["referredUsername"] for r in listing["referrals"]] == ["alice"]

    commissions = client.get("/api/referrals/commissions").get_json()
    assert commissions["commissions"][0]["amount"] == 50.0

    progress = client.get("/api/referrals/milestone").get_json()
    res = client.post("/api/referrals/claim-milestone", json={"milestoneId": progress["nextMilestoneId"]})
    assert res.status_code == 400


def test_unverified_user_has_no_referral_link(client, make_user):
    user = make_user(verified=False)
    login(client, user)
    assert client.get("/api/referrals/link").status_code == 400


# ===== Admin =====

def test_admin_routes_are_protected(client, make_user):
    assert client.get("/api/admin/stats").status_code == 401

    login(client, make_user())
    assert client.get("/api/admin/stats").status_code == 403


def test_admin_processes_withdrawal(client, admin, make_user):
    user = make_user(balance=100)
    login(client, user)
    tx_id = client.post(
        "/api/wallet/withdraw", json={"amount": 20, "walletAddress": TRON_ADDRESS, "network": "TRC20"}
    ).get_json()["transactionId"]

    login(client, admin)
    pending = client.get("/api/admin/withdrawals").get_json()
    assert [w["id"] for w in pending["withdrawals"]] == [tx_id]
    assert client.get(f"/api/admin/withdrawals/{tx_id}").get_json()["withdrawal"]["hold"] == 21.0

    res = client.post(f"/api/admin/withdrawals/{tx_id}/process", json={"action": "reject", "notes": "nope"})
    assert res.status_code == 200
    assert res.get_json()["transaction"]["status"] == "rejected"
    assert balance_of(user) == {"available": Decimal("100"), "pending": Decimal("0")}

    res = client.post(f"/api/admin/withdrawals/{tx_id}/process", json={"action": "approve", "txHash": "0x1"})
    assert res.status_code == 409

    res = client.post(f"/api/admin/withdrawals/{tx_id}/process", json={"action": "hold"})
    assert res.status_code == 400


def test_admin_confirms_deposit(client, admin, make_user):
    parent = make_user("parent")
    child = make_user("child", referrer=parent)
    login(client, admin)

    payload = {"userId": child.id, "amount": "200", "txHash": "0xdeposit"}
    res = client.post("/api/admin/deposits", json=payload)
    assert res.status_code == 201
    assert res.get_json()["transaction"]["details"]["source"] == "admin"
    assert balance_of(parent)["available"] == Decimal("10")

    assert client.post("/api/admin/deposits", json=payload).status_code == 409
    assert client.post("/api/admin/deposits", json={"userId": 9999, "amount": 1}).status_code == 404
    assert client.post("/api/admin/deposits", json={"amount": 1}).status_code == 400


def test_admin_balance_adjustments(client, admin, make_user):
    user = make_user(balance=10)
    login(client, admin)
    url = f"/api/admin/users/{user.id}/balance"

    res = client.post(url, json={"adjustment": "-2.5", "reason": "chargeback"})
    assert res.status_code == 200
    assert res.get_json()["balance"]["available"] == 7.5
    assert res.get_json()["transaction"]["amount"] == -2.5

    res = client.post(url, json={"newBalance": 50, "reason": "migration"})
    assert res.get_json()["transaction"]["details"]["previousBalance"] == "7.500000"

    assert client.post(url, json={"adjustment": -100, "reason": "oops"}).status_code == 400
    assert client.post(url, json={"adjustment": 5}).status_code == 400
    assert client.post(url, json={"adjustment": 5, "newBalance": 5, "reason": "both"}).status_code == 400
    assert client.post("/api/admin/users/9999/balance", json={"adjustment": 5, "reason": "x"}).status_code == 404
    assert balance_of(user)["available"] == Decimal("50")


def test_admin_user_management(client, admin, make_user):
    user = make_user("pending_user", verified=False)
    login(client, admin)

    res = client.post(f"/api/admin/users/{user.id}/verify")
    assert res.status_code == 200
    assert res.get_json()["user"]["referralCode"].startswith("PENDI-")

    res = client.post(f"/api/admin/users/{user.id}/deposit-address", json={"address": TRON_ADDRESS})
    assert res.get_json()["wallet"]["depositAddress"] == TRON_ADDRESS

    users = client.get("/api/admin/users?search=pending").get_json()
    assert users["pagination"]["total"] == 1
    assert users["users"][0]["wallet"]["depositAddress"] == TRON_ADDRESS


def test_admin_ledger_and_referral_views(client, admin, chain, deposit):
    deposit(chain["A"], 1000, tx_hash="0xfeed")
    login(client, admin)

    res = client.get("/api/admin/transactions?type=referral_commission")
    assert res.get_json()["pagination"]["total"] == 3
    res = client.get("/api/admin/transactions?search=0xfeed")
    assert res.get_json()["transactions"][0]["type"] == "deposit"
    assert client.get("/api/admin/transactions?limit=ten").status_code == 400

    edges = client.get("/api/admin/referrals").get_json()["referrals"]
    assert len(edges) == 3
    edge_id = next(e["id"] for e in edges if e["level"] == 1)
    res = client.post(f"/api/admin/referrals/{edge_id}/commission", json={"amount": 5, "action": "subtract"})
    assert res.get_json()["referral"]["commissionEarned"] == 45.0

    stats = client.get("/api/admin/stats").get_json()["stats"]
    assert stats["totalDeposits"] == 1000.0
    assert stats["totalReferralCommissions"] == 80.0
    assert stats["totalUsers"] == 5


def test_make_admin_promotes_user(app, make_user):
    from make_admin import make_admin

    user = make_user("future_admin")
    make_admin("future_admin@example.com", app=app)

    db.session.expire_all()
    assert db.session.get(User, user.id).is_admin
    with pytest.raises(LookupError):
        make_admin("ghost", app=app)


def test_admin_locks_and_unlocks_user(app, client, admin, make_user):
    user = make_user("suspect", balance=100)
    admin_client = app.test_client()
    login(client, user)
    login(admin_client, admin)

    res = admin_client.post(f"/api/admin/users/{user.id}/lock")
    assert res.status_code == 200
    assert res.get_json()["message"] == "User locked successfully"
    assert res.get_json()["user"]["isActive"] is False

    # a fresh context reloads the user from the session cookie: the open session is gone
    with app.app_context():
        assert client.get("/api/wallet/balance").status_code == 401
    res = client.post("/auth/login", json={"login": user.username, "password": PASSWORD})
    assert res.status_code == 401

    login(admin_client, admin)
    res = admin_client.put(f"/api/admin/users/{user.id}/unlock")
    assert res.get_json()["user"]["isActive"] is True

    login(client, user)
    res = client.post("/api/wallet/withdraw", json={"amount": 20, "walletAddress": TRON_ADDRESS, "network": "TRC20"})
    assert res.status_code == 201

    login(admin_client, admin)
    assert admin_client.post("/api/admin/users/9999/lock").status_code == 404
    assert admin_client.post(f"/api/admin/users/{admin.id}/lock").status_code == 400


def test_admin_process_accepts_numeric_hash(client, admin, make_user):
    user = make_user(balance=100)
    login(client, user)
    tx_id = client.post(
        "/api/wallet/withdraw", json={"amount": 20, "walletAddress": TRON_ADDRESS, "network": "TRC20"}
    ).get_json()["transactionId"]

    login(client, admin)
    res = client.post(f"/api/admin/withdrawals/{tx_id}/process", json={"action": "approve", "txHash": 987654})
    assert res.status_code == 200
    assert res.get_json()["transaction"]["txHash"] == "987654"
    assert balance_of(user) == {"available": Decimal("79"), "pending": Decimal("0")}
