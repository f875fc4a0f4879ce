"""
Staffma Payroll - Payroll Router

API endpoints for the payroll period workflow: process, approve, pay.
"""

import uuid
from typing import List

from fastapi import APIRouter, Depends, Query

from staffma.dependencies import (
    get_current_business_id,
    get_payroll_settings_service,
    get_period_state_machine,
)
from staffma.models.payroll import PeriodStatus
from staffma.schemas.payroll import (
    ApprovePeriodRequest,
    BatchActionRequest,
    PaymentMethodStatsResponse,
    PaymentReportResponse,
    PayrollRecordResponse,
    PayrollSettingsRequest,
    PayrollSettingsResponse,
    PeriodSummaryResponse,
    ProcessPaymentsRequest,
    ProcessPeriodRequest,
    RetryPaymentsRequest,
)
from staffma.services.batch_selection import BatchSelectionCoordinator
from staffma.services.cancellation import CancellationToken
from staffma.services.payroll_settings_service import PayrollSettingsService
from staffma.services.period_state_machine import PaymentReport, PeriodStateMachine
from staffma.services.workflow_context import PayrollWorkflowContext, WorkflowStage
from staffma.utils.error_handling import NotFoundException


router = APIRouter()


def _report_response(report: PaymentReport) -> PaymentReportResponse:
    return PaymentReportResponse(
        processed_count=report.processed_count,
        payment_status={rid: outcome.status for rid, outcome in report.per_record_status.items()},
        failures={
            rid: outcome.reason
            for rid, outcome in report.per_record_status.items()
            if outcome.reason
        },
    )


# ===========================================
# SETTINGS
# ===========================================

@router.get(
    "/settings",
    response_model=PayrollSettingsResponse,
    summary="Get payroll settings",
)
async def get_payroll_settings(
    business_id: uuid.UUID = Depends(get_current_business_id),
    service: PayrollSettingsService = Depends(get_payroll_settings_service),
):
    payroll_settings = await service.get_settings(business_id)
    if payroll_settings is None:
        raise NotFoundException("PayrollSettings", business_id)
    return payroll_settings


@router.put(
    "/settings",
    response_model=PayrollSettingsResponse,
    summary="Save payroll settings",
    description="Replace the business's allowance and deduction definitions.",
)
async def save_payroll_settings(
    data: PayrollSettingsRequest,
    business_id: uuid.UUID = Depends(get_current_business_id),
    service: PayrollSettingsService = Depends(get_payroll_settings_service),
):
    return await service.save_settings(
        business_id,
        allowances=[d.model_dump() for d in data.allowances],
        deductions=[d.model_dump() for d in data.deductions],
        currency=data.currency,
    )


# ===========================================
# PERIOD WORKFLOW
# ===========================================

@router.post(
    "/process",
    response_model=List[PayrollRecordResponse],
    summary="Process payroll for a period",
    description="Create or overwrite one processed record per active employee. Refused once any record is paid.",
)
async def process_period(
    data: ProcessPeriodRequest,
    business_id: uuid.UUID = Depends(get_current_business_id),
    state_machine: PeriodStateMachine = Depends(get_period_state_machine),
):
    return await state_machine.process_period(business_id, data.month, data.year, token=CancellationToken())


@router.post(
    "/approve",
    response_model=List[PayrollRecordResponse],
    summary="Approve selected records",
)
async def approve_period(
    data: ApprovePeriodRequest,
    business_id: uuid.UUID = Depends(get_current_business_id),
    state_machine: PeriodStateMachine = Depends(get_period_state_machine),
):
    return await state_machine.approve_period(
        business_id, data.month, data.year, data.record_ids, token=CancellationToken(),
    )


@router.post(
    "/process-payments",
    response_model=PaymentReportResponse,
    summary="Pay selected approved records",
    description="Each record is paid independently; partial failure is reported in the response body.",
)
async def process_payments(
    data: ProcessPaymentsRequest,
    business_id: uuid.UUID = Depends(get_current_business_id),
    state_machine: PeriodStateMachine = Depends(get_period_state_machine),
):
    report = await state_machine.process_payments(
        business_id, data.month, data.year, data.record_ids, token=CancellationToken(),
    )
    return _report_response(report)


@router.post(
    "/retry-payments",
    response_model=List[PayrollRecordResponse],
    summary="Return failed records to approved",
)
async def retry_payments(
    data: RetryPaymentsRequest,
    business_id: uuid.UUID = Depends(get_current_business_id),
    state_machine: PeriodStateMachine = Depends(get_period_state_machine),
):
    return await state_machine.retry_failed_payments(business_id, data.month, data.year, data.record_ids)


@router.post(
    "/batch",
    summary="Run a stage's batch action",
    description="Approve (review stage) or pay (payments stage) a selection. Any ineligible record rejects the batch.",
)
async def batch_action(
    data: BatchActionRequest,
    business_id: uuid.UUID = Depends(get_current_business_id),
    state_machine: PeriodStateMachine = Depends(get_period_state_machine),
):
    context = PayrollWorkflowContext(state_machine, business_id, data.month, data.year)
    await context.refresh()
    coordinator = BatchSelectionCoordinator(context, data.stage)
    coordinator.select(data.record_ids)
    result = await coordinator.dispatch(CancellationToken())
    if data.stage == WorkflowStage.PAYMENTS:
        return _report_response(result).model_dump(by_alias=True, mode="json")
    return [PayrollRecordResponse.model_validate(r).model_dump(mode="json") for r in result]


# ===========================================
# READS
# ===========================================

@router.get(
    "/history",
    response_model=List[PayrollRecordResponse],
    summary="Current records of a period",
)
async def get_history(
    month: int = Query(..., ge=1, le=12),
    year: int = Query(..., ge=2000),
    business_id: uuid.UUID = Depends(get_current_business_id),
    state_machine: PeriodStateMachine = Depends(get_period_state_machine),
):
    return await state_machine.get_history(business_id, month, year)


@router.get(
    "/status",
    response_model=dict,
    summary="Aggregate status of a period",
)
async def get_period_status(
    month: int = Query(..., ge=1, le=12),
    year: int = Query(..., ge=2000),
    business_id: uuid.UUID = Depends(get_current_business_id),
    state_machine: PeriodStateMachine = Depends(get_period_state_machine),
):
    period_status: PeriodStatus = await state_machine.get_period_status(business_id, month, year)
    return {"month": month, "year": year, "status": period_status.value}


@router.get(
    "/summary",
    response_model=PeriodSummaryResponse,
    summary="Period totals",
)
async def get_period_summary(
    month: int = Query(..., ge=1, le=12),
    year: int = Query(..., ge=2000),
    business_id: uuid.UUID = Depends(get_current_business_id),
    state_machine: PeriodStateMachine = Depends(get_period_state_machine),
):
    return await state_machine.get_period_summary(business_id, month, year)


@router.get(
    "/payment-methods",
    response_model=PaymentMethodStatsResponse,
    summary="Payment channels of a period's employees",
)
async def get_payment_method_stats(
    month: int = Query(..., ge=1, le=12),
    year: int = Query(..., ge=2000),
    business_id: uuid.UUID = Depends(get_current_business_id),
    state_machine: PeriodStateMachine = Depends(get_period_state_machine),
):
    return await state_machine.get_payment_method_stats(business_id, month, year)


@router.get(
    "/employee/{employee_id}",
    response_model=List[PayrollRecordResponse],
    summary="Payroll history of one employee",
)
async def get_employee_history(
    employee_id: uuid.UUID,
    limit: int = Query(24, ge=1, le=120),
    business_id: uuid.UUID = Depends(get_current_business_id),
    state_machine: PeriodStateMachine = Depends(get_period_state_machine),
):
    return await state_machine.get_employee_history(business_id, employee_id, limit)
