"""
Payment Capability Contract
The escrow core moves money only through this interface; the processor
integration behind it is an external collaborator.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from config import Config
from utils.exceptions import PaymentCapabilityError

logger = logging.getLogger(__name__)


@dataclass
class ReleaseStatus:
    """External view of a release request, looked up by idempotency key"""
    state: str  # unknown | processing | completed | failed
    external_ref: Optional[str] = None
    failure_kind: Optional[str] = None
    message: Optional[str] = None

    UNKNOWN = "unknown"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentCapability(ABC):
    """Fund movement capability consumed by the escrow core"""

    @abstractmethod
    def hold(self, amount: int, currency: str) -> str:
        """Place ``amount`` on hold for a deal; returns the funding token"""

    @abstractmethod
    def release(self, funding_token: str, amount: int, fee_amount: int,
                destination_account: Optional[str], idempotency_key: str) -> str:
        """Move ``amount`` (net of ``fee_amount``) to the creator; returns the external reference"""

    @abstractmethod
    def refund(self, funding_token: str, amount: int, idempotency_key: str) -> Optional[str]:
        """
        Return ``amount`` of held funds to the brand; returns a refund reference when available.
        A repeated ``idempotency_key`` must not move funds a second time.
        """

    @abstractmethod
    def get_release_status(self, idempotency_key: str) -> ReleaseStatus:
        """Look up a release previously requested with ``idempotency_key``"""


class HttpPaymentCapability(PaymentCapability):
    """
    JSON-over-HTTP adapter for the payment processor gateway.

    Every call carries a bounded timeout. Network errors, timeouts, 429 and 5xx
    responses are reported as transient; 402 as insufficient funds; a 409/422
    with code ``destination_not_onboarded`` as such; anything else as permanent.
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None,
                 timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self.base_url = (base_url or Config.PAYMENT_API_BASE_URL).rstrip("/")
        self.api_key = api_key or Config.PAYMENT_API_KEY
        self.timeout = timeout or Config.PAYOUT_TIMEOUT_SECONDS
        self.http = session or requests.Session()
        if not self.base_url:
            logger.warning("⚠️ PAYMENT_API_BASE_URL not configured - payment calls will fail")

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def _request(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None,
                 idempotency_key: Optional[str] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.http.request(
                method, url, json=payload, headers=self._headers(idempotency_key), timeout=self.timeout
            )
        except requests.exceptions.Timeout as e:
            raise PaymentCapabilityError(f"Payment API timeout on {path}: {e}", PaymentCapabilityError.TRANSIENT) from e
        except requests.exceptions.RequestException as e:
            raise PaymentCapabilityError(f"Payment API unreachable on {path}: {e}", PaymentCapabilityError.TRANSIENT) from e

        if response.status_code < 400:
            return response.json() if response.content else {}

        raise self._classify_failure(path, response)

    @staticmethod
    def _classify_failure(path: str, response: requests.Response) -> PaymentCapabilityError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        code = body.get("code") if isinstance(body, dict) else None
        message = (body.get("message") if isinstance(body, dict) else None) or response.text[:200]
        status = response.status_code

        if status == 429 or status >= 500:
            kind = PaymentCapabilityError.TRANSIENT
        elif status == 402 or code == PaymentCapabilityError.INSUFFICIENT_FUNDS:
            kind = PaymentCapabilityError.INSUFFICIENT_FUNDS
        elif code == PaymentCapabilityError.DESTINATION_NOT_ONBOARDED:
            kind = PaymentCapabilityError.DESTINATION_NOT_ONBOARDED
        else:
            kind = PaymentCapabilityError.PERMANENT

        logger.error(f"❌ PAYMENT_API_ERROR: {path} -> HTTP {status} ({kind}): {message}")
        return PaymentCapabilityError(
            f"Payment API error on {path}: HTTP {status} {message}", kind, status_code=status
        )

    def hold(self, amount: int, currency: str) -> str:
        data = self._request("POST", "/holds", {"amount": amount, "currency": currency})
        return data["funding_token"]

    def release(self, funding_token: str, amount: int, fee_amount: int,
                destination_account: Optional[str], idempotency_key: str) -> str:
        data = self._request(
            "POST",
            f"/holds/{funding_token}/releases",
            {"amount": amount, "fee_amount": fee_amount, "destination_account": destination_account},
            idempotency_key=idempotency_key,
        )
        return data["external_ref"]

    def refund(self, funding_token: str, amount: int, idempotency_key: str) -> Optional[str]:
        data = self._request(
            "POST", f"/holds/{funding_token}/refunds", {"amount": amount}, idempotency_key=idempotency_key
        )
        return data.get("refund_ref")

    def get_release_status(self, idempotency_key: str) -> ReleaseStatus:
        try:
            data = self._request("GET", f"/releases/{idempotency_key}")
        except PaymentCapabilityError as e:
            if e.status_code == 404:
                return ReleaseStatus(state=ReleaseStatus.UNKNOWN)
            raise
        return ReleaseStatus(
            state=data.get("state", ReleaseStatus.UNKNOWN),
            external_ref=data.get("external_ref"),
            failure_kind=data.get("failure_kind"),
            message=data.get("message"),
        )
