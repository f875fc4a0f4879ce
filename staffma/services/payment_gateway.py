"""
Staffma Payroll - Payment Gateway Client

HTTP client for the salary disbursement gateway (bank transfer or mobile
wallet push).

Endpoint:
    POST {payment_gateway_url}/transfers   (Idempotency-Key: <reference>)
    -> {"status": "success" | "failed", "reference", "message"}

A declined transfer is a result, not an error. Transport failures, timeouts,
authentication failures and 5xx responses raise PaymentGatewayException.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from staffma.config import settings
from staffma.models.employee import PaymentChannelKind
from staffma.utils.error_handling import PaymentGatewayException

logger = logging.getLogger(__name__)


@dataclass
class TransferDestination:
    """Where a salary is sent, resolved from the employee's payment channel."""
    channel: PaymentChannelKind
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    wallet_id: Optional[str] = None
    phone_number: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if self.channel == PaymentChannelKind.WALLET:
            return {
                "type": "mobile_wallet",
                "walletId": self.wallet_id,
                "phoneNumber": self.phone_number,
            }
        return {
            "type": "bank_account",
            "bankName": self.bank_name,
            "accountNumber": self.account_number,
            "accountName": self.account_name,
        }


@dataclass
class TransferResult:
    """Outcome of a transfer request."""
    success: bool
    reference: Optional[str] = None
    message: str = ""


class PaymentGatewayClient:
    """Client for the disbursement gateway."""

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else settings.payment_gateway_secret_key
        self.base_url = (base_url or settings.payment_gateway_url).rstrip("/")
        self.timeout = timeout or settings.payment_gateway_timeout_seconds

        if not self.secret_key:
            logger.warning("PaymentGatewayClient initialized without secret key")

    def _get_headers(self, idempotency_key: str) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Idempotency-Key": idempotency_key,
        }
        if self.secret_key:
            headers["Authorization"] = f"Bearer {self.secret_key}"
        return headers

    async def transfer(
        self,
        reference: str,
        amount: Decimal,
        currency: str,
        destination: TransferDestination,
        narration: str = "",
    ) -> TransferResult:
        """
        Send one salary payment.

        Args:
            reference: Unique transfer reference, also sent as the idempotency key
            amount: Net salary to transfer
            currency: ISO currency code
            destination: Resolved bank account or wallet
            narration: Text shown on the recipient's statement
        """
        payload = {
            "reference": reference,
            "amount": str(amount),
            "currency": currency,
            "destination": destination.to_dict(),
            "narration": narration,
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    f"{self.base_url}/transfers",
                    headers=self._get_headers(reference),
                    json=payload,
                )
        except httpx.TimeoutException as e:
            logger.error(f"Payment gateway timeout for transfer {reference}")
            raise PaymentGatewayException("Payment gateway request timed out", original_error=e)
        except httpx.HTTPError as e:
            logger.error(f"Payment gateway unreachable for transfer {reference}: {e}")
            raise PaymentGatewayException(f"Payment gateway unreachable: {e}", original_error=e)

        try:
            result = response.json()
        except ValueError:
            result = {}
        if not isinstance(result, dict):
            result = {}

        message = result.get("message") or f"HTTP {response.status_code}"

        if response.status_code >= 500 or response.status_code in (401, 403):
            logger.error(f"Payment gateway error for transfer {reference}: {message}")
            raise PaymentGatewayException(message, details={"status_code": response.status_code})

        if response.status_code >= 400 or result.get("status") != "success":
            logger.warning(f"Transfer {reference} declined: {message}")
            return TransferResult(success=False, reference=result.get("reference"), message=message)

        logger.info(f"Transfer {reference} succeeded")
        return TransferResult(
            success=True,
            reference=result.get("reference") or reference,
            message=message,
        )
