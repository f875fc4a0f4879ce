"""
Staffma Payroll - Tax Engine Client

HTTP client for the external statutory computation service. The engine owns
the tax tables and rates (PAYE bands, NHIF/SHIF, NSSF tiers, Housing Levy);
this client only sends the salary figures of one employee and parses the
statutory amounts it returns.

Endpoint:
    POST {tax_engine_url}/statutory
    -> {"taxableIncome", "paye", "nhif", "nssf", "housingLevy"}
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, List, Optional

import httpx

from staffma.config import settings
from staffma.models.payroll import StatutoryKind
from staffma.utils.error_handling import TaxEngineException

logger = logging.getLogger(__name__)


# Response field carrying each statutory kind
STATUTORY_FIELDS = {
    StatutoryKind.PAYE: "paye",
    StatutoryKind.NHIF: "nhif",
    StatutoryKind.NSSF: "nssf",
    StatutoryKind.HOUSING_LEVY: "housingLevy",
}


@dataclass
class StatutoryComputation:
    """Statutory amounts for one employee and period."""
    taxable_income: Decimal
    amounts: Dict[StatutoryKind, Decimal]


class TaxEngineClient:
    """Client for the statutory computation service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.tax_engine_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.tax_engine_api_key
        self.timeout = timeout or settings.tax_engine_timeout_seconds

    def _get_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _make_request(self, method: str, endpoint: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """
        Make an HTTP request to the tax engine.

        Raises:
            TaxEngineException: On transport errors, timeouts and non-2xx responses
        """
        url = f"{self.base_url}{endpoint}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.request(
                    method=method,
                    url=url,
                    headers=self._get_headers(),
                    json=data,
                )
        except httpx.TimeoutException as e:
            logger.error(f"Tax engine timeout: {method} {endpoint}")
            raise TaxEngineException("Tax engine request timed out", original_error=e)
        except httpx.HTTPError as e:
            logger.error(f"Tax engine unreachable: {method} {endpoint} - {e}")
            raise TaxEngineException(f"Tax engine unreachable: {e}", original_error=e)

        logger.debug(f"Tax engine {method} {endpoint}: status={response.status_code}")

        try:
            result = response.json()
        except ValueError:
            result = {}

        if response.status_code >= 400:
            message = result.get("message") if isinstance(result, dict) else None
            message = message or f"HTTP {response.status_code}"
            logger.error(f"Tax engine error: {message}")
            raise TaxEngineException(message, details={"status_code": response.status_code})

        if not isinstance(result, dict):
            raise TaxEngineException("Malformed tax engine response")
        return result

    async def compute(
        self,
        employee_id: uuid.UUID,
        month: int,
        year: int,
        basic_salary: Decimal,
        gross_salary: Decimal,
        allowances: List[Dict[str, Any]],
    ) -> StatutoryComputation:
        """Compute the statutory deductions of one employee for a period."""
        payload = {
            "employeeId": str(employee_id),
            "month": month,
            "year": year,
            "basicSalary": str(basic_salary),
            "grossSalary": str(gross_salary),
            "allowances": [
                {"name": item["name"], "amount": str(item["amount"])} for item in allowances
            ],
        }
        result = await self._make_request("POST", "/statutory", payload)

        try:
            amounts = {
                kind: _to_money(result.get(field, 0))
                for kind, field in STATUTORY_FIELDS.items()
            }
            taxable_income = _to_money(result.get("taxableIncome", gross_salary))
        except (InvalidOperation, TypeError, ValueError) as e:
            raise TaxEngineException("Malformed tax engine response", original_error=e)

        if any(amount < 0 for amount in amounts.values()):
            raise TaxEngineException("Tax engine returned a negative statutory amount")

        return StatutoryComputation(taxable_income=taxable_income, amounts=amounts)


def _to_money(value: Any) -> Decimal:
    return Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
