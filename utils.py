import re
from decimal import Decimal, InvalidOperation, ROUND_DOWN

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from exceptions import ValidationError, ExternalServiceError, PayoutTimeoutError
from logger import deposit_logger, payout_logger

AMOUNT_QUANTUM = Decimal("0.000001")

ADDRESS_PATTERNS = {
    "TRC20": re.compile(r"^T[0-9A-Za-z]{33}$"),
    "TRON": re.compile(r"^T[0-9A-Za-z]{33}$"),
    "TRX": re.compile(r"^T[0-9A-Za-z]{33}$"),
    "BTC": re.compile(r"^(bc1|[13])[a-zA-HJ-NP-Z0-9]{25,39}$"),
    "BITCOIN": re.compile(r"^(bc1|[13])[a-zA-HJ-NP-Z0-9]{25,39}$"),
    "ETH": re.compile(r"^0x[a-fA-F0-9]{40}$"),
    "ETHEREUM": re.compile(r"^0x[a-fA-F0-9]{40}$"),
    "BSC": re.compile(r"^0x[a-fA-F0-9]{40}$"),
    "BINANCE": re.compile(r"^0x[a-fA-F0-9]{40}$"),
}


def validate_email(email):
    return bool(email) and re.match(r'^[\w\.\+-]+@[\w\.-]+\.\w+$', email) is not None


def validate_wallet_address(address, network):
    """Address format check for the declared network. Unknown networks never validate."""
    if not address or not network:
        return False
    pattern = ADDRESS_PATTERNS.get(network.strip().upper())
    if pattern is None:
        return False
    return pattern.match(address.strip()) is not None


def quantize_amount(value):
    return Decimal(value).quantize(AMOUNT_QUANTUM, rounding=ROUND_DOWN)


def parse_decimal(value, field="amount"):
    """Parse a user supplied number into a finite Decimal of ledger precision."""
    if value is None or value == "":
        raise ValidationError(f"{field} is required")
    if isinstance(value, bool):
        raise ValidationError(f"Invalid {field}")
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid {field}")
    if not number.is_finite():
        raise ValidationError(f"Invalid {field}")
    return quantize_amount(number)


def parse_amount(value, field="amount"):
    """Parse a user supplied amount into a positive Decimal."""
    amount = parse_decimal(value, field)
    if amount <= 0:
        raise ValidationError(f"{field} must be greater than zero")
    return amount


def pagination_args(args, default_limit=20, max_limit=100):
    """(page, per_page) from request args, clamped to sane bounds."""
    try:
        page = max(int(args.get("page", 1)), 1)
        per_page = int(args.get("limit", default_limit))
    except (TypeError, ValueError):
        raise ValidationError("page and limit must be integers")
    return page, min(max(per_page, 1), max_limit)


def _retrying_session(retry_strategy):
    session = requests.Session()
    adapter = HTTPAdapter(max_retries=retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session

# ==========================================================
#                  TRONGRID DEPOSIT SCANNER
# ==========================================================


class TronGridClient:
    """Reads TRC20 transfers to a deposit address from TronGrid."""

    def __init__(self, base_url, api_key=None, contract_address=None, timeout=10, session=None):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.contract_address = contract_address
        self.timeout = timeout
        self.session = session or _retrying_session(Retry(
            total=3,
            backoff_factor=2,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["GET"],
        ))

    @classmethod
    def from_config(cls, config):
        return cls(
            config["TRONGRID_BASE_URL"],
            api_key=config.get("TRONGRID_API_KEY"),
            contract_address=config.get("USDT_CONTRACT_ADDRESS"),
            timeout=config.get("TRONGRID_TIMEOUT", 10),
        )

    def fetch_trc20_transfers(self, address, limit=50):
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["TRON-PRO-API-KEY"] = self.api_key

        params = {"only_to": "true", "limit": limit}
        if self.contract_address:
            params["contract_address"] = self.contract_address

        url = f"{self.base_url}/v1/accounts/{address}/transactions/trc20"
        try:
            response = self.session.get(url, params=params, headers=headers, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            deposit_logger.error(f"TronGrid request failed for {address}: {e}")
            raise ExternalServiceError(f"TronGrid unavailable: {e}")

        if response.status_code != 200:
            deposit_logger.error(f"TronGrid API error {response.status_code} for {address}")
            raise ExternalServiceError(f"TronGrid API error: {response.status_code}")

        return response.json().get("data", []) or []

# ==========================================================
#                  PAYOUT GATEWAY
# ==========================================================


class PayoutClient:
    """
    Sends tokens through the payout gateway.

    send_tokens returns (success, tx_hash, error) when the outcome is known.
    A read timeout or a 5xx answer means the transfer may or may not have
    happened, so PayoutTimeoutError is raised instead of guessing.
    """

    def __init__(self, api_url, api_key=None, timeout=30, session=None):
        self.api_url = api_url.rstrip("/") if api_url else None
        self.api_key = api_key
        self.timeout = timeout
        # Only connection setup is retried, a POST that reached the gateway is never replayed.
        self.session = session or _retrying_session(Retry(
            total=3,
            connect=3,
            read=0,
            status=0,
            backoff_factor=1,
            allowed_methods=None,
        ))

    @classmethod
    def from_config(cls, config):
        return cls(
            config.get("PAYOUT_API_URL"),
            api_key=config.get("PAYOUT_API_KEY"),
            timeout=config.get("PAYOUT_TIMEOUT", 30),
        )

    @property
    def configured(self):
        return bool(self.api_url)

    def send_tokens(self, to_address, amount, network, reference=None):
        if not self.configured:
            return False, None, "Automated payout is not configured"
        if not validate_wallet_address(to_address, network):
            return False, None, "Invalid destination address"

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if reference:
            headers["Idempotency-Key"] = reference

        payload = {
            "to_address": to_address,
            "amount": str(amount),
            "network": network,
            "reference": reference,
        }

        try:
            response = self.session.post(
                f"{self.api_url}/transfers",
                json=payload,
                headers=headers,
                timeout=self.timeout,
            )
        except requests.exceptions.ConnectionError as e:
            # ConnectTimeout lands here too: the request never reached the gateway.
            payout_logger.error(f"Payout gateway unreachable for {reference}: {e}")
            return False, None, f"Payout gateway unreachable: {e}"
        except requests.exceptions.Timeout as e:
            payout_logger.critical(f"Payout timed out for {reference}, outcome unknown: {e}")
            raise PayoutTimeoutError(f"Payout timed out after {self.timeout}s")

        if response.status_code >= 500:
            payout_logger.critical(f"Payout gateway error {response.status_code} for {reference}, outcome unknown")
            raise PayoutTimeoutError(f"Payout gateway error {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code in (200, 201) and body.get("success", True) and body.get("txHash"):
            payout_logger.info(f"Payout {reference} sent {amount} to {to_address}: {body['txHash']}")
            return True, body["txHash"], None

        error = body.get("error") or body.get("message") or f"HTTP {response.status_code}"
        payout_logger.warning(f"Payout {reference} rejected by gateway: {error}")
        return False, None, error
