"""
Staffma Payroll - Payroll Settings Service

Per-business allowance and deduction definitions. Payroll cannot be
processed until settings have been saved.
"""

import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from staffma.config import settings as app_settings
from staffma.models.payroll import (
    AllowanceDefinition,
    CalculationType,
    DeductionDefinition,
    PayrollSettings,
)
from staffma.utils.error_handling import InvalidAmountException, ValidationException, validate_amount

logger = logging.getLogger(__name__)

SUPPORTED_CURRENCIES = ("KES", "UGX", "TZS", "RWF", "USD")


def _validate_definitions(kind: str, definitions: List[Dict[str, Any]]) -> None:
    names = set()
    for index, definition in enumerate(definitions):
        name = (definition.get("name") or "").strip()
        if not name:
            raise ValidationException(f"{kind} name is required", field=f"{kind}.{index}.name")
        if name.lower() in names:
            raise ValidationException(f"Duplicate {kind} name: {name}", field=f"{kind}.{index}.name")
        names.add(name.lower())

        value = validate_amount(definition.get("value"), f"{kind}.{index}.value", allow_zero=True)
        if definition.get("calculation") == CalculationType.PERCENTAGE and value > Decimal("100"):
            raise InvalidAmountException(
                value,
                field=f"{kind}.{index}.value",
                message=f"Percentage for {name} cannot exceed 100",
            )


class PayrollSettingsService:
    """Read and replace a business's payroll settings."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_settings(self, business_id: uuid.UUID) -> Optional[PayrollSettings]:
        result = await self.db.execute(
            select(PayrollSettings)
            .where(PayrollSettings.business_id == business_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def save_settings(
        self,
        business_id: uuid.UUID,
        allowances: List[Dict[str, Any]],
        deductions: List[Dict[str, Any]],
        currency: Optional[str] = None,
    ) -> PayrollSettings:
        """
        Replace the business's allowance and deduction definitions.

        Each definition is a dict of name, calculation, value and enabled.
        """
        currency = (currency or app_settings.default_currency).upper()
        if currency not in SUPPORTED_CURRENCIES:
            raise ValidationException(f"Unsupported currency: {currency}", field="currency")
        _validate_definitions("allowances", allowances)
        _validate_definitions("deductions", deductions)

        payroll_settings = await self.get_settings(business_id)
        if payroll_settings is None:
            payroll_settings = PayrollSettings(business_id=business_id)
            self.db.add(payroll_settings)

        payroll_settings.currency = currency
        payroll_settings.allowances = [
            AllowanceDefinition(
                name=d["name"].strip(),
                calculation=CalculationType(d.get("calculation", CalculationType.FIXED)),
                value=Decimal(str(d["value"])),
                enabled=d.get("enabled", True),
                position=index,
            )
            for index, d in enumerate(allowances)
        ]
        payroll_settings.deductions = [
            DeductionDefinition(
                name=d["name"].strip(),
                calculation=CalculationType(d.get("calculation", CalculationType.FIXED)),
                value=Decimal(str(d["value"])),
                enabled=d.get("enabled", True),
                position=index,
            )
            for index, d in enumerate(deductions)
        ]
        await self.db.commit()

        logger.info(
            f"Payroll settings saved for business {business_id}: "
            f"{len(allowances)} allowance(s), {len(deductions)} deduction(s)"
        )
        return await self.get_settings(business_id)
