"""
Staffma Payroll - Employees Router

Employee records, payment channels and custom deductions.
"""

import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from staffma.dependencies import (
    get_current_business_id,
    get_deduction_reconciler,
    get_employee_service,
    get_payment_channel_binder,
)
from staffma.models.employee import EmployeeStatus, PaymentChannelKind
from staffma.models.payroll import CustomDeductionStatus
from staffma.schemas.employee import (
    BankAccountCreate,
    BankChannelRequest,
    EmployeeCreate,
    EmployeeListResponse,
    EmployeeResponse,
    EmployeeStatusUpdate,
    PaymentDestinationResponse,
    WalletChannelRequest,
)
from staffma.schemas.payroll import (
    CustomDeductionCreate,
    CustomDeductionResponse,
    CustomDeductionStatusUpdate,
)
from staffma.services.cancellation import CancellationToken
from staffma.services.deduction_reconciler import DeductionReconciler
from staffma.services.employee_service import EmployeeService
from staffma.services.payment_channel_binder import BankAccountInput, PaymentChannelBinder


router = APIRouter()


def _account_input(account) -> BankAccountInput:
    return BankAccountInput(
        bank_name=account.bank_name,
        account_number=account.account_number,
        account_type=account.account_type,
        is_primary=account.is_primary,
        account_name=account.account_name,
    )


# ===========================================
# EMPLOYEE ENDPOINTS
# ===========================================

@router.post(
    "",
    response_model=EmployeeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a new employee",
)
async def create_employee(
    data: EmployeeCreate,
    business_id: uuid.UUID = Depends(get_current_business_id),
    service: EmployeeService = Depends(get_employee_service),
):
    return await service.create_employee(business_id, data.model_dump())


@router.get(
    "",
    response_model=EmployeeListResponse,
    summary="List employees",
)
async def list_employees(
    status_filter: Optional[EmployeeStatus] = Query(None, alias="status"),
    search: Optional[str] = Query(None, description="Search by name, email, or number"),
    page: int = Query(1, ge=1),
    per_page: int = Query(50, ge=1, le=100),
    business_id: uuid.UUID = Depends(get_current_business_id),
    service: EmployeeService = Depends(get_employee_service),
):
    employees, total = await service.list_employees(
        business_id, status=status_filter, search=search, page=page, per_page=per_page,
    )
    return EmployeeListResponse(
        items=[EmployeeResponse.model_validate(e) for e in employees],
        total=total,
        page=page,
        per_page=per_page,
    )


@router.get(
    "/{employee_id}",
    response_model=EmployeeResponse,
    summary="Get employee",
)
async def get_employee(
    employee_id: uuid.UUID,
    business_id: uuid.UUID = Depends(get_current_business_id),
    service: EmployeeService = Depends(get_employee_service),
):
    return await service.get_employee(business_id, employee_id)


@router.patch(
    "/{employee_id}/status",
    response_model=EmployeeResponse,
    summary="Activate or deactivate an employee",
)
async def set_employee_status(
    employee_id: uuid.UUID,
    data: EmployeeStatusUpdate,
    business_id: uuid.UUID = Depends(get_current_business_id),
    service: EmployeeService = Depends(get_employee_service),
):
    return await service.set_status(business_id, employee_id, data.status)


# ===========================================
# PAYMENT CHANNEL ENDPOINTS
# ===========================================

@router.put(
    "/{employee_id}/payment-channel/bank",
    response_model=EmployeeResponse,
    summary="Switch to bank transfer",
    description="Atomically removes any wallet and replaces the bank accounts.",
)
async def set_bank_channel(
    employee_id: uuid.UUID,
    data: BankChannelRequest,
    business_id: uuid.UUID = Depends(get_current_business_id),
    binder: PaymentChannelBinder = Depends(get_payment_channel_binder),
):
    return await binder.set_bank_channel(
        business_id, employee_id, [_account_input(a) for a in data.accounts], CancellationToken(),
    )


@router.put(
    "/{employee_id}/payment-channel/wallet",
    response_model=EmployeeResponse,
    summary="Switch to mobile wallet",
    description="Atomically removes any bank accounts and writes the wallet.",
)
async def set_wallet_channel(
    employee_id: uuid.UUID,
    data: WalletChannelRequest,
    business_id: uuid.UUID = Depends(get_current_business_id),
    binder: PaymentChannelBinder = Depends(get_payment_channel_binder),
):
    return await binder.set_wallet_channel(
        business_id, employee_id, data.wallet_id, data.phone_number, data.is_active, CancellationToken(),
    )


@router.delete(
    "/{employee_id}/payment-channel",
    response_model=EmployeeResponse,
    summary="Clear payment channel",
)
async def clear_channel(
    employee_id: uuid.UUID,
    kind: Optional[PaymentChannelKind] = Query(None, description="Only clear this variant"),
    business_id: uuid.UUID = Depends(get_current_business_id),
    binder: PaymentChannelBinder = Depends(get_payment_channel_binder),
):
    return await binder.clear_channel(business_id, employee_id, kind, CancellationToken())


@router.get(
    "/{employee_id}/payment-channel/primary",
    response_model=Optional[PaymentDestinationResponse],
    summary="Resolve the transfer destination",
)
async def resolve_primary(
    employee_id: uuid.UUID,
    business_id: uuid.UUID = Depends(get_current_business_id),
    binder: PaymentChannelBinder = Depends(get_payment_channel_binder),
):
    return await binder.resolve_primary(business_id, employee_id)


@router.post(
    "/{employee_id}/bank-accounts",
    response_model=EmployeeResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add a bank account",
    description="Refused with 409 while the employee is paid by wallet.",
)
async def add_bank_account(
    employee_id: uuid.UUID,
    data: BankAccountCreate,
    business_id: uuid.UUID = Depends(get_current_business_id),
    binder: PaymentChannelBinder = Depends(get_payment_channel_binder),
):
    return await binder.add_bank_account(business_id, employee_id, _account_input(data))


@router.put(
    "/{employee_id}/wallet",
    response_model=EmployeeResponse,
    summary="Create or edit the wallet",
    description="Refused with 409 while the employee has bank accounts.",
)
async def save_wallet(
    employee_id: uuid.UUID,
    data: WalletChannelRequest,
    business_id: uuid.UUID = Depends(get_current_business_id),
    binder: PaymentChannelBinder = Depends(get_payment_channel_binder),
):
    return await binder.save_wallet(business_id, employee_id, data.wallet_id, data.phone_number, data.is_active)


# ===========================================
# CUSTOM DEDUCTION ENDPOINTS
# ===========================================

@router.post(
    "/{employee_id}/custom-deductions",
    response_model=CustomDeductionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a salary advance, loan or other deduction",
)
async def create_custom_deduction(
    employee_id: uuid.UUID,
    data: CustomDeductionCreate,
    business_id: uuid.UUID = Depends(get_current_business_id),
    reconciler: DeductionReconciler = Depends(get_deduction_reconciler),
):
    return await reconciler.create_custom_deduction(
        business_id,
        employee_id,
        description=data.description,
        deduction_type=data.deduction_type,
        amount=data.amount,
        monthly_amount=data.monthly_amount,
        start_date=data.start_date,
        end_date=data.end_date,
    )


@router.get(
    "/{employee_id}/custom-deductions",
    response_model=List[CustomDeductionResponse],
    summary="List an employee's custom deductions",
)
async def list_custom_deductions(
    employee_id: uuid.UUID,
    status_filter: Optional[CustomDeductionStatus] = Query(None, alias="status"),
    business_id: uuid.UUID = Depends(get_current_business_id),
    reconciler: DeductionReconciler = Depends(get_deduction_reconciler),
):
    return await reconciler.list_custom_deductions(business_id, employee_id, status_filter)


@router.patch(
    "/custom-deductions/{deduction_id}/status",
    response_model=CustomDeductionResponse,
    summary="Cancel or reactivate a custom deduction",
)
async def update_custom_deduction_status(
    deduction_id: uuid.UUID,
    data: CustomDeductionStatusUpdate,
    business_id: uuid.UUID = Depends(get_current_business_id),
    reconciler: DeductionReconciler = Depends(get_deduction_reconciler),
):
    return await reconciler.update_deduction_status(business_id, deduction_id, data.status)
