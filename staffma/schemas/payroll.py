"""
Staffma Payroll - Payroll Schemas

Pydantic schemas for payroll requests and responses.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import AliasChoices, BaseModel, Field

from staffma.models.payroll import (
    CalculationType,
    CustomDeductionStatus,
    CustomDeductionType,
    DeductionClass,
    LineType,
    PeriodStatus,
    RecordStatus,
    StatutoryKind,
)
from staffma.services.workflow_context import WorkflowStage


# ===========================================
# PERIOD ACTION REQUESTS
# ===========================================

class PeriodRequest(BaseModel):
    """Identifies a payroll period. Range checks happen in the service."""
    month: int
    year: int


class ProcessPeriodRequest(PeriodRequest):
    """Process (or reprocess) a period using the business's saved settings."""
    pass


class ApprovePeriodRequest(PeriodRequest):
    """Approve selected records."""
    record_ids: List[UUID] = Field(
        default_factory=list,
        validation_alias=AliasChoices("record_ids", "recordIds", "employeeIds"),
    )


class ProcessPaymentsRequest(PeriodRequest):
    """Pay selected records."""
    record_ids: List[UUID] = Field(
        default_factory=list,
        validation_alias=AliasChoices("record_ids", "recordIds", "paymentIds"),
    )


class RetryPaymentsRequest(PeriodRequest):
    """Return failed records to approved."""
    record_ids: List[UUID] = Field(
        default_factory=list,
        validation_alias=AliasChoices("record_ids", "recordIds", "paymentIds"),
    )


class BatchActionRequest(PeriodRequest):
    """Strict batch action: every id must be eligible for the stage."""
    stage: WorkflowStage
    record_ids: List[UUID] = Field(
        default_factory=list,
        validation_alias=AliasChoices("record_ids", "recordIds"),
    )


# ===========================================
# RECORD RESPONSES
# ===========================================

class LineItemResponse(BaseModel):
    """Allowance or deduction line."""
    name: str
    amount: Decimal
    line_type: LineType
    deduction_class: Optional[DeductionClass] = None
    statutory_kind: Optional[StatutoryKind] = None
    custom_type: Optional[CustomDeductionType] = None
    ref_id: Optional[UUID] = None
    
    class Config:
        from_attributes = True


class PayrollRecordResponse(BaseModel):
    """One employee's payroll for a period."""
    id: UUID
    employee_id: UUID
    month: int
    year: int
    basic_salary: Decimal
    total_allowances: Decimal
    gross_salary: Decimal
    taxable_income: Decimal
    total_deductions: Decimal
    net_salary: Decimal
    currency: str
    status: RecordStatus
    failure_reason: Optional[str] = None
    payment_channel: Optional[str] = None
    payment_reference: Optional[str] = None
    processed_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    allowances: List[LineItemResponse] = []
    deductions: List[LineItemResponse] = []
    
    class Config:
        from_attributes = True


class PaymentReportResponse(BaseModel):
    """Outcome of a payment batch; partial failure is reported, not raised."""
    processed_count: int = Field(serialization_alias="processedCount")
    payment_status: Dict[UUID, str] = Field(serialization_alias="paymentStatus")
    failures: Dict[UUID, str] = {}


class PeriodSummaryResponse(BaseModel):
    """Totals of a period's current records."""
    month: int
    year: int
    status: PeriodStatus
    total_employees: int
    total_basic_salary: Decimal
    total_allowances: Decimal
    total_gross_salary: Decimal
    total_deductions: Decimal
    total_net_salary: Decimal
    total_paye: Decimal
    total_nhif: Decimal
    total_nssf: Decimal
    total_housing_levy: Decimal
    status_counts: Dict[str, int]


class PaymentMethodStatsResponse(BaseModel):
    """Payment channels of the employees in a period."""
    total: int
    wallet: int
    bank: int
    none: int
    active_wallet: int
    active_bank: int


# ===========================================
# SETTINGS
# ===========================================

class DefinitionSchema(BaseModel):
    """Allowance or deduction definition."""
    name: str = Field(..., min_length=1, max_length=100)
    calculation: CalculationType = CalculationType.FIXED
    value: Decimal
    enabled: bool = True
    
    class Config:
        from_attributes = True


class PayrollSettingsRequest(BaseModel):
    """Replace payroll settings."""
    currency: Optional[str] = None
    allowances: List[DefinitionSchema] = []
    deductions: List[DefinitionSchema] = []


class PayrollSettingsResponse(BaseModel):
    """Payroll settings."""
    id: UUID
    business_id: UUID
    currency: str
    allowances: List[DefinitionSchema]
    deductions: List[DefinitionSchema]
    
    class Config:
        from_attributes = True


# ===========================================
# CUSTOM DEDUCTIONS
# ===========================================

class CustomDeductionCreate(BaseModel):
    """Create a salary advance, loan or other amortized deduction."""
    description: str
    deduction_type: CustomDeductionType = Field(
        CustomDeductionType.OTHER,
        validation_alias=AliasChoices("deduction_type", "type"),
    )
    amount: Decimal
    monthly_amount: Decimal = Field(validation_alias=AliasChoices("monthly_amount", "monthlyAmount"))
    start_date: date = Field(validation_alias=AliasChoices("start_date", "startDate"))
    end_date: Optional[date] = Field(None, validation_alias=AliasChoices("end_date", "endDate"))


class CustomDeductionStatusUpdate(BaseModel):
    status: CustomDeductionStatus


class CustomDeductionResponse(BaseModel):
    """Custom deduction response."""
    id: UUID
    employee_id: UUID
    description: str
    deduction_type: CustomDeductionType
    amount: Decimal
    monthly_amount: Decimal
    remaining_amount: Decimal
    start_date: date
    end_date: Optional[date] = None
    status: CustomDeductionStatus
    created_at: datetime
    
    class Config:
        from_attributes = True
