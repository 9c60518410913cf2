from decimal import Decimal

import pytest

from conftest import balance_of, TRON_ADDRESS
from exceptions import InsufficientFundsError, IntegrityError, ValidationError, ConflictError
from extensions import db
from services.wallet import WalletService, UserLockManager


def test_new_user_has_empty_wallet(make_user):
    user = make_user()
    assert balance_of(user) == {"available": Decimal("0"), "pending": Decimal("0")}


def test_credit_then_debit(make_user):
    user = make_user()
    WalletService.credit(user.id, Decimal("100"))
    balance = WalletService.debit(user.id, Decimal("30.5"))
    db.session.commit()

    assert balance["available"] == Decimal("69.5")
    assert balance_of(user)["available"] == Decimal("69.5")


def test_debit_more_than_available_changes_nothing(make_user):
    user = make_user(balance=10)
    with pytest.raises(InsufficientFundsError):
        WalletService.debit(user.id, Decimal("10.000001"))
    assert balance_of(user)["available"] == Decimal("10")


def test_non_positive_amounts_are_refused(make_user):
    user = make_user()
    with pytest.raises(ValidationError):
        WalletService.credit(user.id, 0)
    with pytest.raises(ValidationError):
        WalletService.debit(user.id, Decimal("-1"))


def test_missing_wallet_is_integrity_error(app):
    with pytest.raises(IntegrityError):
        WalletService.get_balance(4242)
    with pytest.raises(IntegrityError):
        WalletService.credit(4242, Decimal("1"))


def test_hold_release_and_refund_conserve_funds(make_user):
    """available + pending only changes when a hold is released (money left the platform)."""
    user = make_user(balance=100)

    WalletService.place_hold(user.id, Decimal("21"))
    assert balance_of(user) == {"available": Decimal("79"), "pending": Decimal("21")}

    WalletService.refund_hold(user.id, Decimal("21"))
    assert balance_of(user) == {"available": Decimal("100"), "pending": Decimal("0")}

    WalletService.place_hold(user.id, Decimal("11"))
    WalletService.release_hold(user.id, Decimal("11"))
    db.session.commit()
    assert balance_of(user) == {"available": Decimal("89"), "pending": Decimal("0")}


def test_hold_larger_than_available_is_refused(make_user):
    user = make_user(balance=5)
    with pytest.raises(InsufficientFundsError):
        WalletService.place_hold(user.id, Decimal("6"))
    assert balance_of(user) == {"available": Decimal("5"), "pending": Decimal("0")}


def test_releasing_more_than_pending_is_integrity_error(make_user):
    user = make_user(balance=5)
    with pytest.raises(IntegrityError):
        WalletService.release_hold(user.id, Decimal("1"))


def test_set_balance_applies_only_to_the_balance_it_read(make_user):
    user = make_user(balance=10)

    assert WalletService.set_balance(user.id, Decimal("25"), expected_available=Decimal("10"))["available"] == Decimal("25")
    db.session.commit()

    with pytest.raises(ConflictError):
        WalletService.set_balance(user.id, Decimal("40"), expected_available=Decimal("10"))
    with pytest.raises(ValidationError):
        WalletService.set_balance(user.id, Decimal("-1"), expected_available=Decimal("25"))
    assert balance_of(user)["available"] == Decimal("25")


def test_amounts_are_truncated_to_six_places(make_user):
    user = make_user()
    WalletService.credit(user.id, Decimal("1.1234567"))
    assert balance_of(user)["available"] == Decimal("1.123456")


def test_assign_deposit_address(make_user):
    alice = make_user("alice")
    bob = make_user("bob")

    wallet = WalletService.assign_deposit_address(alice.id, TRON_ADDRESS)
    db.session.commit()
    assert wallet.deposit_address == TRON_ADDRESS

    with pytest.raises(ConflictError):
        WalletService.assign_deposit_address(bob.id, TRON_ADDRESS)
    with pytest.raises(ValidationError):
        WalletService.assign_deposit_address(bob.id, "0x1234")


def test_user_lock_is_reentrant_and_per_user():
    assert UserLockManager.get_lock(1) is UserLockManager.get_lock(1)
    assert UserLockManager.get_lock(1) is not UserLockManager.get_lock(2)

    with UserLockManager.lock(1):
        with UserLockManager.lock(1):
            pass
