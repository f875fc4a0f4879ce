"""
Staffma Payroll - FastAPI Dependencies

Request-scoped business resolution and service factories.
"""

import uuid
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from staffma.database import get_async_session
from staffma.models.business import Business
from staffma.services.deduction_reconciler import DeductionReconciler
from staffma.services.employee_service import EmployeeService
from staffma.services.payment_channel_binder import PaymentChannelBinder
from staffma.services.payment_gateway import PaymentGatewayClient
from staffma.services.payroll_settings_service import PayrollSettingsService
from staffma.services.period_state_machine import PeriodStateMachine
from staffma.services.tax_engine import TaxEngineClient


async def get_current_business_id(
    x_business_id: Optional[str] = Header(None, alias="X-Business-ID"),
    db: AsyncSession = Depends(get_async_session),
) -> uuid.UUID:
    """
    Resolve the business a request acts on from the X-Business-ID header.
    
    Raises:
        HTTPException: 400 if the header is missing or malformed, 404 if no such business
    """
    if not x_business_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Business-ID header is required",
        )
    try:
        business_id = uuid.UUID(x_business_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid X-Business-ID header",
        )
    
    business = await db.get(Business, business_id)
    if business is None or not business.is_active:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Business not found",
        )
    return business_id


def get_tax_engine() -> TaxEngineClient:
    return TaxEngineClient()


def get_payment_gateway() -> PaymentGatewayClient:
    return PaymentGatewayClient()


def get_period_state_machine(
    db: AsyncSession = Depends(get_async_session),
    tax_engine: TaxEngineClient = Depends(get_tax_engine),
    gateway: PaymentGatewayClient = Depends(get_payment_gateway),
) -> PeriodStateMachine:
    return PeriodStateMachine(db, tax_engine=tax_engine, gateway=gateway)


def get_deduction_reconciler(
    db: AsyncSession = Depends(get_async_session),
    tax_engine: TaxEngineClient = Depends(get_tax_engine),
) -> DeductionReconciler:
    return DeductionReconciler(db, tax_engine)


def get_payment_channel_binder(db: AsyncSession = Depends(get_async_session)) -> PaymentChannelBinder:
    return PaymentChannelBinder(db)


def get_employee_service(db: AsyncSession = Depends(get_async_session)) -> EmployeeService:
    return EmployeeService(db)


def get_payroll_settings_service(db: AsyncSession = Depends(get_async_session)) -> PayrollSettingsService:
    return PayrollSettingsService(db)
