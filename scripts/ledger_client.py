import logging
from typing import Any, Dict, Optional

import requests

from app.config import settings

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Raised when the billing ledger rejects or fails a request."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LedgerInsufficientFunds(LedgerError):
    """The account cannot cover the requested charge."""


class LedgerClient:
    """A client for the points ledger (balance, charge, refund, overage flag)."""

    def __init__(self, base_url: str = None, api_key: str = None, timeout: int = 15):
        self.base_url = base_url or settings.ledger_base_url
        if not self.base_url:
            raise ValueError("No ledger URL provided and LEDGER_BASE_URL not set")

        self.session = requests.Session()
        api_key = api_key or settings.ledger_api_key
        if api_key:
            self.session.headers.update({"Authorization": f"Bearer {api_key}"})
        self.timeout = timeout

    def _make_request(self, method: str, endpoint: str, **kwargs) -> dict:
        """Make an HTTP request to the ledger service."""
        url = f"{self.base_url.rstrip('/')}/{endpoint.lstrip('/')}"
        kwargs.setdefault("timeout", self.timeout)

        try:
            response = self.session.request(method, url, **kwargs)
            response.raise_for_status()
            return response.json() if response.content else {}
        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            body = e.response.text[:500] if e.response is not None else ""
            if status_code == 402:
                raise LedgerInsufficientFunds(body or "Insufficient balance", status_code) from e
            raise LedgerError(
                f"{method} {endpoint} failed with {status_code}: {body}", status_code
            ) from e
        except requests.exceptions.RequestException as e:
            raise LedgerError(f"{method} {endpoint} failed: {e}") from e

    def check_balance(self, user_id: str, amount: int) -> bool:
        """True if the user can currently afford ``amount`` points."""
        resp = self._make_request("GET", f"/accounts/{user_id}/balance")
        balance = int(resp.get("points", 0))
        return balance >= amount

    def charge(self, user_id: str, amount: int, metadata: Optional[Dict[str, Any]] = None) -> str:
        """Deduct points. Returns the ledger transaction id."""
        resp = self._make_request(
            "POST",
            f"/accounts/{user_id}/charges",
            json={"points": amount, "metadata": metadata or {}},
        )
        return str(resp["transaction_id"])

    def refund(self, transaction_id: str, amount: int, reason: str) -> str:
        """Return ``amount`` points against an earlier charge."""
        resp = self._make_request(
            "POST",
            f"/transactions/{transaction_id}/refunds",
            json={"points": amount, "reason": reason},
        )
        return str(resp.get("transaction_id", ""))

    def flag_overage(self, transaction_id: str, amount: int, details: Optional[Dict[str, Any]] = None) -> None:
        """Record that actual cost exceeded the prepaid charge. Never charges."""
        self._make_request(
            "POST",
            f"/transactions/{transaction_id}/flags",
            json={"type": "overage", "points": amount, "details": details or {}},
        )
