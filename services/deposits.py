"""
Deposit completion and the on-chain deposit scanner.

complete_deposit is the only code path that completes a deposit. It writes
the processed-set marker, the ledger entry and the wallet credit in one unit
of work, then hands a DepositCompleted event to the commission cascade.
"""
from decimal import Decimal, InvalidOperation

from flask import current_app
from sqlalchemy.exc import IntegrityError as DBIntegrityError, SQLAlchemyError

from exceptions import ConflictError, ValidationError, LedgerError
from extensions import db
from logger import deposit_logger
from models import ProcessedChainTransaction, TransactionType, TransactionStatus, Wallet
from services.ledger import LedgerStore, DepositDetails
from services.notifications import Notifier
from services.referrals import CommissionEngine, DepositCompleted
from services.wallet import WalletService, UserLockManager
from utils import TronGridClient, parse_amount, quantize_amount


class DepositProcessor:

    @staticmethod
    def is_processed(tx_hash) -> bool:
        return ProcessedChainTransaction.query.filter_by(tx_hash=tx_hash).first() is not None

    @staticmethod
    def is_usdt_deposit(tx: dict, address: str, contract_address: str) -> bool:
        """A TRC20 Transfer of USDT to `address` with a positive value."""
        if not tx or not address:
            return False
        if tx.get("type") != "Transfer":
            return False

        token_info = tx.get("token_info") or {}
        tx_contract = token_info.get("address") or token_info.get("id")
        to_address = tx.get("to")
        value = tx.get("value")
        if not to_address or not tx_contract or value is None:
            return False

        try:
            numeric_value = int(value)
        except (TypeError, ValueError):
            return False

        return (
            to_address.lower() == address.lower()
            and tx_contract.lower() == (contract_address or "").lower()
            and numeric_value > 0
        )

    @staticmethod
    def chain_amount(tx: dict) -> Decimal:
        token_info = tx.get("token_info") or {}
        try:
            decimals = int(token_info.get("decimals", 6))
            raw = Decimal(int(tx["value"]))
        except (KeyError, TypeError, ValueError, InvalidOperation):
            raise ValidationError(f"Unreadable transfer value in {tx.get('transaction_id')}")
        return quantize_amount(raw / (Decimal(10) ** decimals))

    @staticmethod
    def complete_deposit(user_id: int, amount, tx_hash=None, details=None):
        """Record, credit and fan out commissions for a settled deposit."""
        amount = parse_amount(amount)
        details = details or DepositDetails()

        with UserLockManager.lock(user_id):
            if tx_hash and DepositProcessor.is_processed(tx_hash):
                deposit_logger.info(f"Deposit {tx_hash} already processed, skipping")
                raise ConflictError(f"Deposit {tx_hash} has already been processed")
            try:
                marker = None
                if tx_hash:
                    marker = ProcessedChainTransaction(tx_hash=tx_hash, user_id=user_id)
                    db.session.add(marker)
                    db.session.flush()

                transaction = LedgerStore.record(
                    user_id,
                    TransactionType.DEPOSIT,
                    amount,
                    status=TransactionStatus.COMPLETED,
                    details=details,
                    tx_hash=tx_hash,
                )
                WalletService.credit(user_id, amount)
                if marker is not None:
                    marker.transaction_id = transaction.id
                db.session.commit()
            except DBIntegrityError:
                db.session.rollback()
                deposit_logger.info(f"Deposit {tx_hash} recorded concurrently, skipping")
                raise ConflictError(f"Deposit {tx_hash} has already been processed")
            except Exception:
                db.session.rollback()
                raise

        deposit_logger.info(f"Deposit #{transaction.id} of {amount} completed for user {user_id} ({tx_hash or 'no hash'})")
        CommissionEngine.handle_deposit_completed(
            DepositCompleted(user_id=user_id, amount=amount, transaction_id=transaction.id)
        )
        Notifier.notify(user_id, "Deposit Received", f"Your deposit of {amount} {details.currency} has been credited.", "success")
        return transaction


class DepositMonitor:

    @staticmethod
    def check_for_deposits(address: str, user_id: int, client=None) -> int:
        """Process unseen USDT transfers to `address`. Returns how many were credited."""
        if not address or user_id is None:
            raise ValidationError("Address and user are required to check deposits")

        client = client or TronGridClient.from_config(current_app.config)
        contract = current_app.config.get("USDT_CONTRACT_ADDRESS")
        credited = 0

        for tx in client.fetch_trc20_transfers(address):
            tx_id = tx.get("transaction_id") or tx.get("txID")
            if not tx_id or DepositProcessor.is_processed(tx_id):
                continue
            if not DepositProcessor.is_usdt_deposit(tx, address, contract):
                continue

            symbol = (tx.get("token_info") or {}).get("symbol") or "USDT"
            try:
                DepositProcessor.complete_deposit(
                    user_id,
                    DepositProcessor.chain_amount(tx),
                    tx_hash=tx_id,
                    details=DepositDetails(network="TRC20", wallet_address=tx.get("to"), currency=symbol),
                )
            except ConflictError:
                continue
            except ValidationError as e:
                deposit_logger.warning(f"Skipping transfer {tx_id} for user {user_id}: {e}")
                continue
            credited += 1

        if credited:
            deposit_logger.info(f"Processed {credited} new deposits for user {user_id}")
        return credited

    @staticmethod
    def scan_all(client=None) -> dict:
        """One polling pass over every wallet with a deposit address."""
        client = client or TronGridClient.from_config(current_app.config)
        wallets = Wallet.query.filter(Wallet.deposit_address.isnot(None)).all()
        summary = {"scanned": 0, "credited": 0, "errors": 0}

        for wallet in wallets:
            summary["scanned"] += 1
            try:
                summary["credited"] += DepositMonitor.check_for_deposits(wallet.deposit_address, wallet.user_id, client)
            except (LedgerError, SQLAlchemyError) as e:
                db.session.rollback()
                summary["errors"] += 1
                deposit_logger.error(f"Deposit scan failed for user {wallet.user_id}: {e}")

        deposit_logger.info(
            f"Deposit scan finished: {summary['scanned']} wallets, {summary['credited']} credited, {summary['errors']} errors"
        )
        return summary
