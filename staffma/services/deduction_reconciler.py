"""
Staffma Payroll - Deduction Reconciler

Builds the allowance and deduction lines of a payroll record and owns the
amortization of custom deductions (salary advances, loans).

Record arithmetic:
    gross_salary     = basic_salary + sum(allowances)
    total_deductions = sum(statutory) + sum(custom)
    net_salary       = gross_salary - total_deductions

Every deduction line is a tagged variant. Its kind comes from the tag it was
created with (StatutoryDeduction or CustomDeductionLine), never from its
display name.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, ROUND_HALF_UP
from typing import Dict, List, Optional, Sequence, Union

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from staffma.models.employee import Employee
from staffma.models.payroll import (
    CalculationType,
    CustomDeduction,
    CustomDeductionStatus,
    CustomDeductionType,
    DeductionClass,
    DeductionInstallment,
    LineType,
    PayrollLineItem,
    PayrollRecord,
    PayrollSettings,
    StatutoryKind,
)
from staffma.services.cancellation import CancellationToken
from staffma.services.tax_engine import TaxEngineClient
from staffma.utils.error_handling import (
    ConcurrencyException,
    EmployeeNotFoundException,
    InvalidAmountException,
    NotFoundException,
    ValidationException,
    validate_amount,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

STATUTORY_LABELS = {
    StatutoryKind.PAYE: "PAYE",
    StatutoryKind.NHIF: "NHIF/SHIF",
    StatutoryKind.NSSF: "NSSF",
    StatutoryKind.HOUSING_LEVY: "Housing Levy",
}


def money(value: Decimal) -> Decimal:
    """Round to cents."""
    return Decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


# ===========================================
# LINE ITEM VARIANTS
# ===========================================

@dataclass(frozen=True)
class Allowance:
    name: str
    amount: Decimal


@dataclass(frozen=True)
class StatutoryDeduction:
    kind: StatutoryKind
    amount: Decimal

    @property
    def name(self) -> str:
        return STATUTORY_LABELS[self.kind]


@dataclass(frozen=True)
class CustomDeductionLine:
    ref_id: uuid.UUID
    deduction_type: CustomDeductionType
    name: str
    amount: Decimal


DeductionLine = Union[StatutoryDeduction, CustomDeductionLine]


@dataclass
class RecordComputation:
    """
    Everything needed to write one payroll record.

    Produced before the commit transaction (remote statutory call, allowance
    resolution); custom installments are appended inside it.
    """
    employee_id: uuid.UUID
    basic_salary: Decimal
    allowances: List[Allowance]
    statutory: List[StatutoryDeduction]
    taxable_income: Decimal
    settings_deductions: List[CustomDeductionLine] = field(default_factory=list)
    installments: List[CustomDeductionLine] = field(default_factory=list)

    @property
    def total_allowances(self) -> Decimal:
        return money(sum((a.amount for a in self.allowances), ZERO))

    @property
    def gross_salary(self) -> Decimal:
        return money(self.basic_salary + self.total_allowances)

    @property
    def deductions(self) -> List[DeductionLine]:
        return [*self.statutory, *self.settings_deductions, *self.installments]

    @property
    def total_deductions(self) -> Decimal:
        return money(sum((d.amount for d in self.deductions), ZERO))

    @property
    def net_salary(self) -> Decimal:
        return money(self.gross_salary - self.total_deductions)

    def build_line_items(self) -> List[PayrollLineItem]:
        """Persistable line items, allowances first, in record order."""
        items: List[PayrollLineItem] = []
        for allowance in self.allowances:
            items.append(PayrollLineItem(
                position=len(items),
                line_type=LineType.ALLOWANCE,
                name=allowance.name,
                amount=allowance.amount,
            ))
        for line in self.deductions:
            item = PayrollLineItem(
                position=len(items),
                line_type=LineType.DEDUCTION,
                name=line.name,
                amount=line.amount,
            )
            if isinstance(line, StatutoryDeduction):
                item.deduction_class = DeductionClass.STATUTORY
                item.statutory_kind = line.kind
            else:
                item.deduction_class = DeductionClass.CUSTOM
                item.custom_type = line.deduction_type
                item.ref_id = line.ref_id
            items.append(item)
        return items


def record_is_balanced(record: PayrollRecord) -> bool:
    """Check the gross/net identities of a stored record."""
    allowances = sum((item.amount for item in record.allowances), ZERO)
    deductions = sum((item.amount for item in record.deductions), ZERO)
    return (
        money(record.basic_salary + allowances) == money(record.gross_salary)
        and money(record.gross_salary - deductions) == money(record.net_salary)
    )


class DeductionReconciler:
    """
    Produces allowance/deduction lines and amortizes custom deductions.
    """

    def __init__(self, db: AsyncSession, tax_engine: Optional[TaxEngineClient] = None):
        self.db = db
        self.tax_engine = tax_engine or TaxEngineClient()

    # ===========================================
    # CUSTOM DEDUCTION MANAGEMENT
    # ===========================================

    @staticmethod
    def validate_custom_deduction(
        amount: Decimal,
        monthly_amount: Decimal,
        start_date: date,
        end_date: Optional[date] = None,
    ) -> None:
        """Reject a deduction whose installment plan is impossible."""
        amount = validate_amount(amount, "amount")
        monthly_amount = validate_amount(monthly_amount, "monthly_amount")
        if monthly_amount > amount:
            raise InvalidAmountException(
                monthly_amount,
                field="monthly_amount",
                message=f"Monthly amount {monthly_amount} cannot exceed the total amount {amount}",
            )
        if end_date is not None and end_date < start_date:
            raise ValidationException(
                "End date cannot be before start date",
                field="end_date",
                details={"start_date": start_date.isoformat(), "end_date": end_date.isoformat()},
            )

    async def create_custom_deduction(
        self,
        business_id: uuid.UUID,
        employee_id: uuid.UUID,
        description: str,
        deduction_type: CustomDeductionType,
        amount: Decimal,
        monthly_amount: Decimal,
        start_date: date,
        end_date: Optional[date] = None,
    ) -> CustomDeduction:
        """Create an active custom deduction with the full amount outstanding."""
        self.validate_custom_deduction(amount, monthly_amount, start_date, end_date)
        if not description or not description.strip():
            raise ValidationException("Description is required", field="description")

        employee = await self.db.scalar(
            select(Employee.id).where(
                and_(Employee.id == employee_id, Employee.business_id == business_id)
            )
        )
        if employee is None:
            raise EmployeeNotFoundException(employee_id)

        deduction = CustomDeduction(
            business_id=business_id,
            employee_id=employee_id,
            description=description.strip(),
            deduction_type=deduction_type,
            amount=money(amount),
            monthly_amount=money(monthly_amount),
            remaining_amount=money(amount),
            start_date=start_date,
            end_date=end_date,
            status=CustomDeductionStatus.ACTIVE,
        )
        self.db.add(deduction)
        await self.db.commit()
        await self.db.refresh(deduction)

        logger.info(
            f"Custom deduction {deduction.id} created for employee {employee_id}: "
            f"{deduction.amount} at {deduction.monthly_amount}/month"
        )
        return deduction

    async def get_custom_deduction(
        self,
        business_id: uuid.UUID,
        deduction_id: uuid.UUID,
    ) -> CustomDeduction:
        result = await self.db.execute(
            select(CustomDeduction)
            .where(
                and_(
                    CustomDeduction.id == deduction_id,
                    CustomDeduction.business_id == business_id,
                )
            )
            .execution_options(populate_existing=True)
        )
        deduction = result.scalar_one_or_none()
        if deduction is None:
            raise NotFoundException("CustomDeduction", deduction_id)
        return deduction

    async def list_custom_deductions(
        self,
        business_id: uuid.UUID,
        employee_id: uuid.UUID,
        status: Optional[CustomDeductionStatus] = None,
    ) -> List[CustomDeduction]:
        query = select(CustomDeduction).where(
            and_(
                CustomDeduction.business_id == business_id,
                CustomDeduction.employee_id == employee_id,
            )
        )
        if status:
            query = query.where(CustomDeduction.status == status)
        query = query.order_by(CustomDeduction.start_date, CustomDeduction.created_at)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def update_deduction_status(
        self,
        business_id: uuid.UUID,
        deduction_id: uuid.UUID,
        status: CustomDeductionStatus,
    ) -> CustomDeduction:
        """
        Cancel or reactivate a deduction.

        completed is reached only by amortization; a deduction with nothing
        outstanding cannot be reactivated.
        """
        deduction = await self.get_custom_deduction(business_id, deduction_id)
        if status == deduction.status:
            return deduction

        if status == CustomDeductionStatus.COMPLETED:
            raise ValidationException(
                "A deduction is completed automatically once fully repaid",
                field="status",
            )
        if deduction.status == CustomDeductionStatus.COMPLETED:
            raise ValidationException(
                "A completed deduction cannot change status",
                field="status",
                details={"current_status": deduction.status.value},
            )

        result = await self.db.execute(
            update(CustomDeduction)
            .where(
                and_(
                    CustomDeduction.id == deduction.id,
                    CustomDeduction.status == deduction.status,
                )
            )
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.rollback()
            raise ConcurrencyException(
                "Deduction was modified concurrently, reload and retry",
                resource_type="CustomDeduction",
            )
        await self.db.commit()

        logger.info(f"Custom deduction {deduction.id}: {deduction.status.value} -> {status.value}")
        return await self.get_custom_deduction(business_id, deduction_id)

    # ===========================================
    # RECORD PREPARATION
    # ===========================================

    @staticmethod
    def resolve_allowances(settings: PayrollSettings, employee: Employee) -> List[Allowance]:
        """
        Enabled allowance definitions resolved for one employee.

        Percentage allowances are a share of basic salary; an employee
        override (keyed by allowance name) replaces the computed amount.
        """
        overrides: Dict[str, str] = employee.allowance_overrides or {}
        allowances = []
        for definition in settings.allowances:
            if not definition.enabled:
                continue
            if definition.name in overrides:
                amount = validate_amount(overrides[definition.name], definition.name, allow_zero=True)
            elif definition.calculation == CalculationType.PERCENTAGE:
                amount = employee.basic_salary * definition.value / Decimal("100")
            else:
                amount = definition.value
            allowances.append(Allowance(name=definition.name, amount=money(amount)))
        return allowances

    @staticmethod
    def resolve_settings_deductions(settings: PayrollSettings, employee: Employee) -> List[CustomDeductionLine]:
        """Business-wide deductions as Custom(Other) lines referencing their definition."""
        lines = []
        for definition in settings.deductions:
            if not definition.enabled:
                continue
            if definition.calculation == CalculationType.PERCENTAGE:
                amount = employee.basic_salary * definition.value / Decimal("100")
            else:
                amount = definition.value
            amount = money(amount)
            if amount <= ZERO:
                continue
            lines.append(CustomDeductionLine(
                ref_id=definition.id,
                deduction_type=CustomDeductionType.OTHER,
                name=definition.name,
                amount=amount,
            ))
        return lines

    async def prepare(
        self,
        employee: Employee,
        settings: PayrollSettings,
        month: int,
        year: int,
        token: Optional[CancellationToken] = None,
    ) -> RecordComputation:
        """
        Allowances and statutory lines for one employee.

        Makes the remote tax engine call; does not touch custom deductions.
        """
        token = token or CancellationToken()
        basic_salary = money(employee.basic_salary)
        allowances = self.resolve_allowances(settings, employee)
        gross_salary = money(basic_salary + sum((a.amount for a in allowances), ZERO))

        computation = await token.run(
            self.tax_engine.compute(
                employee_id=employee.id,
                month=month,
                year=year,
                basic_salary=basic_salary,
                gross_salary=gross_salary,
                allowances=[{"name": a.name, "amount": a.amount} for a in allowances],
            ),
            "ProcessPeriod",
        )

        statutory = [
            StatutoryDeduction(kind=kind, amount=computation.amounts[kind])
            for kind in StatutoryKind
        ]
        return RecordComputation(
            employee_id=employee.id,
            basic_salary=basic_salary,
            allowances=allowances,
            statutory=statutory,
            taxable_income=computation.taxable_income,
            settings_deductions=self.resolve_settings_deductions(settings, employee),
        )

    # ===========================================
    # AMORTIZATION
    # ===========================================

    async def apply_amortization(
        self,
        computation: RecordComputation,
        record: PayrollRecord,
        month: int,
        year: int,
    ) -> List[DeductionInstallment]:
        """
        Take this period's installment from every active custom deduction.

        Must run inside the transaction that writes `record`. Each decrement
        is a conditional update on the remaining amount it read, so two
        writers can never both take the same installment.
        """
        result = await self.db.execute(
            select(CustomDeduction)
            .where(
                and_(
                    CustomDeduction.employee_id == computation.employee_id,
                    CustomDeduction.status == CustomDeductionStatus.ACTIVE,
                )
            )
            .order_by(CustomDeduction.start_date, CustomDeduction.created_at)
            .execution_options(populate_existing=True)
        )
        installments = []
        for deduction in result.scalars().all():
            if not deduction.covers_period(month, year):
                continue
            remaining = money(deduction.remaining_amount)
            installment = min(money(deduction.monthly_amount), remaining)
            if installment <= ZERO:
                continue

            new_remaining = money(remaining - installment)
            new_status = (
                CustomDeductionStatus.COMPLETED if new_remaining == ZERO
                else CustomDeductionStatus.ACTIVE
            )
            updated = await self.db.execute(
                update(CustomDeduction)
                .where(
                    and_(
                        CustomDeduction.id == deduction.id,
                        CustomDeduction.status == CustomDeductionStatus.ACTIVE,
                        CustomDeduction.remaining_amount == remaining,
                    )
                )
                .values(remaining_amount=new_remaining, status=new_status)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                raise ConcurrencyException(
                    f"Custom deduction {deduction.id} changed during amortization",
                    resource_type="CustomDeduction",
                )

            computation.installments.append(CustomDeductionLine(
                ref_id=deduction.id,
                deduction_type=deduction.deduction_type,
                name=deduction.description,
                amount=installment,
            ))
            entry = DeductionInstallment(
                deduction_id=deduction.id,
                record=record,
                month=month,
                year=year,
                amount=installment,
            )
            self.db.add(entry)
            installments.append(entry)

            logger.info(
                f"Deduction {deduction.id}: installment {installment} for {month:02d}/{year}, "
                f"remaining {new_remaining}" + (" (completed)" if new_status == CustomDeductionStatus.COMPLETED else "")
            )
        return installments

    async def reverse_installments(self, record_ids: Sequence[uuid.UUID]) -> int:
        """
        Give back the installments taken by records that are being superseded.

        A completed deduction returns to active when an installment is
        restored. Returns the number of installments reversed.
        """
        if not record_ids:
            return 0

        result = await self.db.execute(
            select(DeductionInstallment)
            .where(
                and_(
                    DeductionInstallment.record_id.in_(record_ids),
                    DeductionInstallment.reversed.is_(False),
                )
            )
            .execution_options(populate_existing=True)
        )
        entries = list(result.scalars().all())
        for entry in entries:
            deduction = await self.db.get(CustomDeduction, entry.deduction_id, populate_existing=True)
            remaining = money(deduction.remaining_amount)
            restored = money(remaining + entry.amount)
            new_status = deduction.status
            if new_status == CustomDeductionStatus.COMPLETED:
                new_status = CustomDeductionStatus.ACTIVE

            updated = await self.db.execute(
                update(CustomDeduction)
                .where(
                    and_(
                        CustomDeduction.id == deduction.id,
                        CustomDeduction.remaining_amount == remaining,
                    )
                )
                .values(remaining_amount=restored, status=new_status)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                raise ConcurrencyException(
                    f"Custom deduction {deduction.id} changed while reversing an installment",
                    resource_type="CustomDeduction",
                )
            entry.reversed = True

        if entries:
            logger.info(f"Reversed {len(entries)} installment(s) from superseded records")
        return len(entries)

    async def installment_total(self, deduction_id: uuid.UUID) -> Decimal:
        """Sum of the installments currently applied to a deduction."""
        result = await self.db.execute(
            select(DeductionInstallment.amount).where(
                and_(
                    DeductionInstallment.deduction_id == deduction_id,
                    DeductionInstallment.reversed.is_(False),
                )
            )
        )
        return money(sum(result.scalars().all(), ZERO))
