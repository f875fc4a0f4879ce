"""
Staffma Payroll - Payroll Models

Payroll settings, periods, records and the custom deduction ledger.

Lifecycle of a record inside a period:
    (none) -> processed -> approved -> paid
                                    -> failed -> approved (re-drive)

A period's status is derived from its current records. Once any record is
paid the period is locked (paid_locked) and can never be reprocessed.
"""

import uuid
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import (
    Boolean, Date, DateTime, ForeignKey, Integer, String, Text, Uuid,
    Enum as SQLEnum, UniqueConstraint, CheckConstraint, Index,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from staffma.models.base import BaseModel, money_column

if TYPE_CHECKING:
    from staffma.models.employee import Employee


# ===========================================
# ENUMS
# ===========================================

class CalculationType(str, Enum):
    """How an allowance or settings-level deduction is computed."""
    PERCENTAGE = "percentage"  # Percentage of basic salary
    FIXED = "fixed"


class RecordStatus(str, Enum):
    """Status of a single payroll record."""
    PROCESSED = "processed"
    APPROVED = "approved"
    PAID = "paid"
    FAILED = "failed"


class PeriodStatus(str, Enum):
    """Derived status of a payroll period."""
    UNPROCESSED = "unprocessed"
    PROCESSED = "processed"
    PARTIALLY_APPROVED = "partially_approved"
    APPROVED = "approved"
    PAID = "paid"


class LineType(str, Enum):
    """Payroll line item type."""
    ALLOWANCE = "allowance"
    DEDUCTION = "deduction"


class DeductionClass(str, Enum):
    """Tag of a deduction line. Set at creation, never inferred from the name."""
    STATUTORY = "statutory"
    CUSTOM = "custom"


class StatutoryKind(str, Enum):
    """Statutory deductions computed by the tax engine."""
    PAYE = "paye"
    NHIF = "nhif"  # NHIF / SHIF
    NSSF = "nssf"
    HOUSING_LEVY = "housing_levy"


class CustomDeductionType(str, Enum):
    """Employer-initiated deduction types."""
    SALARY_ADVANCE = "salary_advance"
    LOAN = "loan"
    OTHER = "other"


class CustomDeductionStatus(str, Enum):
    """Custom deduction status."""
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class FailureReason(str, Enum):
    """Well-known per-record payment failure reasons."""
    NO_PAYMENT_CHANNEL = "NoPaymentChannel"
    NOT_APPROVED = "NotApproved"


# ===========================================
# PAYROLL SETTINGS
# ===========================================

class PayrollSettings(BaseModel):
    """
    Per-business payroll configuration.

    Processing a period is refused until a business has saved its settings.
    """

    __tablename__ = "payroll_settings"

    business_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    currency: Mapped[str] = mapped_column(String(3), default="KES", nullable=False)

    allowances: Mapped[List["AllowanceDefinition"]] = relationship(
        "AllowanceDefinition",
        back_populates="settings",
        cascade="all, delete-orphan",
        order_by="AllowanceDefinition.position",
        lazy="selectin",
    )
    deductions: Mapped[List["DeductionDefinition"]] = relationship(
        "DeductionDefinition",
        back_populates="settings",
        cascade="all, delete-orphan",
        order_by="DeductionDefinition.position",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<PayrollSettings(business_id={self.business_id}, currency={self.currency})>"


class AllowanceDefinition(BaseModel):
    """Allowance applied to every employee (housing, transport, medical...)."""

    __tablename__ = "allowance_definitions"

    settings_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("payroll_settings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    calculation: Mapped[CalculationType] = mapped_column(
        SQLEnum(CalculationType), default=CalculationType.FIXED, nullable=False,
    )
    value: Mapped[Decimal] = money_column()
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    settings: Mapped["PayrollSettings"] = relationship(
        "PayrollSettings", back_populates="allowances",
    )


class DeductionDefinition(BaseModel):
    """Business-wide deduction (welfare, SACCO...) applied to every employee."""

    __tablename__ = "deduction_definitions"

    settings_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("payroll_settings.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    calculation: Mapped[CalculationType] = mapped_column(
        SQLEnum(CalculationType), default=CalculationType.FIXED, nullable=False,
    )
    value: Mapped[Decimal] = money_column()
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    settings: Mapped["PayrollSettings"] = relationship(
        "PayrollSettings", back_populates="deductions",
    )


# ===========================================
# PAYROLL PERIOD
# ===========================================

class PayrollPeriod(BaseModel):
    """
    One (month, year) payroll cycle of a business.

    version is bumped by every reprocessing and every payment claim so that
    a reprocessing commit can detect any concurrent change (compare-and-swap).
    """

    __tablename__ = "payroll_periods"

    business_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    paid_locked: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False,
        comment="Set in the same transaction that commits the first Paid record",
    )
    last_processed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    records: Mapped[List["PayrollRecord"]] = relationship(
        "PayrollRecord", back_populates="period", cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint('business_id', 'month', 'year', name='uq_payroll_period_business_month_year'),
        CheckConstraint('month >= 1 AND month <= 12', name='month_range'),
    )

    def __repr__(self) -> str:
        return f"<PayrollPeriod(business_id={self.business_id}, period={self.month:02d}/{self.year})>"


# ===========================================
# PAYROLL RECORD
# ===========================================

class PayrollRecord(BaseModel):
    """
    One employee's payroll for one period.

    gross_salary = basic_salary + total_allowances
    net_salary = gross_salary - total_deductions

    Records are never deleted. Reprocessing marks the previous set as
    superseded (is_current = False) and inserts a new set.
    """

    __tablename__ = "payroll_records"

    period_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("payroll_periods.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    business_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)

    # Amounts
    basic_salary: Mapped[Decimal] = money_column()
    total_allowances: Mapped[Decimal] = money_column(default=Decimal("0"))
    gross_salary: Mapped[Decimal] = money_column()
    taxable_income: Mapped[Decimal] = money_column(default=Decimal("0"))
    total_deductions: Mapped[Decimal] = money_column(default=Decimal("0"))
    net_salary: Mapped[Decimal] = money_column()
    currency: Mapped[str] = mapped_column(String(3), default="KES", nullable=False)

    # Lifecycle
    status: Mapped[RecordStatus] = mapped_column(
        SQLEnum(RecordStatus), default=RecordStatus.PROCESSED, nullable=False,
    )
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_current: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    superseded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Payment
    payment_claim: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True,
        comment="Claim token held while a transfer is in flight",
    )
    transfer_key: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True,
        comment="Idempotency key sent to the gateway; kept until the gateway gives a definitive answer",
    )
    payment_channel: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    payment_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    period: Mapped["PayrollPeriod"] = relationship("PayrollPeriod", back_populates="records")
    employee: Mapped["Employee"] = relationship("Employee", lazy="selectin")
    line_items: Mapped[List["PayrollLineItem"]] = relationship(
        "PayrollLineItem",
        back_populates="record",
        cascade="all, delete-orphan",
        order_by="PayrollLineItem.position",
        lazy="selectin",
    )

    __table_args__ = (
        Index('ix_payroll_records_period_current', 'period_id', 'is_current'),
    )

    @property
    def allowances(self) -> List["PayrollLineItem"]:
        return [item for item in self.line_items if item.line_type == LineType.ALLOWANCE]

    @property
    def deductions(self) -> List["PayrollLineItem"]:
        return [item for item in self.line_items if item.line_type == LineType.DEDUCTION]

    def statutory_amount(self, kind: StatutoryKind) -> Decimal:
        """Sum of the statutory lines of the given kind."""
        return sum(
            (item.amount for item in self.deductions if item.statutory_kind == kind),
            Decimal("0"),
        )

    def __repr__(self) -> str:
        return f"<PayrollRecord(id={self.id}, employee_id={self.employee_id}, status={self.status})>"


class PayrollLineItem(BaseModel):
    """
    Allowance or deduction line of a payroll record.

    Deduction lines are a tagged variant: statutory lines carry a
    statutory_kind, custom lines carry a custom_type and the ref_id of the
    deduction they came from.
    """

    __tablename__ = "payroll_line_items"

    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("payroll_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    position: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    line_type: Mapped[LineType] = mapped_column(SQLEnum(LineType), nullable=False)
    name: Mapped[str] = mapped_column(String(150), nullable=False)
    amount: Mapped[Decimal] = money_column()

    deduction_class: Mapped[Optional[DeductionClass]] = mapped_column(
        SQLEnum(DeductionClass), nullable=True,
    )
    statutory_kind: Mapped[Optional[StatutoryKind]] = mapped_column(
        SQLEnum(StatutoryKind), nullable=True,
    )
    custom_type: Mapped[Optional[CustomDeductionType]] = mapped_column(
        SQLEnum(CustomDeductionType), nullable=True,
    )
    ref_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid(as_uuid=True), nullable=True)

    record: Mapped["PayrollRecord"] = relationship("PayrollRecord", back_populates="line_items")

    __table_args__ = (
        CheckConstraint(
            "line_type != 'DEDUCTION' OR ("
            "(deduction_class = 'STATUTORY' AND statutory_kind IS NOT NULL) OR "
            "(deduction_class = 'CUSTOM' AND custom_type IS NOT NULL AND ref_id IS NOT NULL))",
            name='deduction_is_tagged',
        ),
    )

    def __repr__(self) -> str:
        return f"<PayrollLineItem(name={self.name}, amount={self.amount}, type={self.line_type})>"


# ===========================================
# CUSTOM DEDUCTIONS (salary advances, loans)
# ===========================================

class CustomDeduction(BaseModel):
    """
    Employer-initiated deduction amortized over several periods.

    Invariants:
    - 0 < monthly_amount <= amount
    - 0 <= remaining_amount <= amount
    - remaining_amount only decreases while active
    """

    __tablename__ = "custom_deductions"

    business_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
    )
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    description: Mapped[str] = mapped_column(String(255), nullable=False)
    deduction_type: Mapped[CustomDeductionType] = mapped_column(
        SQLEnum(CustomDeductionType), nullable=False,
    )
    amount: Mapped[Decimal] = money_column()
    monthly_amount: Mapped[Decimal] = money_column()
    remaining_amount: Mapped[Decimal] = money_column()
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    status: Mapped[CustomDeductionStatus] = mapped_column(
        SQLEnum(CustomDeductionStatus), default=CustomDeductionStatus.ACTIVE, nullable=False,
    )

    employee: Mapped["Employee"] = relationship("Employee", back_populates="custom_deductions")
    installments: Mapped[List["DeductionInstallment"]] = relationship(
        "DeductionInstallment", back_populates="deduction", cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint('monthly_amount > 0 AND monthly_amount <= amount', name='monthly_within_amount'),
        CheckConstraint('remaining_amount >= 0 AND remaining_amount <= amount', name='remaining_within_amount'),
    )

    def covers_period(self, month: int, year: int) -> bool:
        """start_date <= period <= end_date (open ended when end_date is None)."""
        period = (year, month)
        if period < (self.start_date.year, self.start_date.month):
            return False
        if self.end_date is not None and period > (self.end_date.year, self.end_date.month):
            return False
        return True

    def __repr__(self) -> str:
        return f"<CustomDeduction(id={self.id}, remaining={self.remaining_amount}, status={self.status})>"


class DeductionInstallment(BaseModel):
    """
    Ledger of amounts taken from a custom deduction.

    sum(installments not reversed) == amount - remaining_amount
    """

    __tablename__ = "deduction_installments"

    deduction_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("custom_deductions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    record_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("payroll_records.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    month: Mapped[int] = mapped_column(Integer, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    amount: Mapped[Decimal] = money_column()
    reversed: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False,
        comment="Set when the record it was applied to is superseded",
    )

    deduction: Mapped["CustomDeduction"] = relationship("CustomDeduction", back_populates="installments")
    record: Mapped["PayrollRecord"] = relationship("PayrollRecord")
