"""
Staffma Payroll - Period State Machine

Owns the lifecycle of a payroll period's records:

    Unprocessed -> Processed -> Approved -> Paid
                                         -> Failed (per record, during payment)

Every transition is a conditional UPDATE guarded by the expected prior
state and its row count is checked. Guards that protect money (a paid
period can never be reprocessed) are enforced in the committing
transaction, not only by the pre-checks that run before remote calls.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select, update, func, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from staffma.models.business import Business
from staffma.models.employee import Employee, EmployeeStatus, PaymentChannelKind
from staffma.models.payroll import (
    FailureReason,
    PayrollPeriod,
    PayrollRecord,
    PayrollSettings,
    PeriodStatus,
    RecordStatus,
    StatutoryKind,
)
from staffma.services.cancellation import CancellationToken
from staffma.services.deduction_reconciler import DeductionReconciler, RecordComputation, money
from staffma.services.payment_channel_binder import resolve_primary
from staffma.services.payment_gateway import PaymentGatewayClient, TransferResult
from staffma.services.tax_engine import TaxEngineClient
from staffma.utils.error_handling import (
    ConcurrencyException,
    EmptySelectionException,
    ErrorCode,
    GuardViolationException,
    InvalidPayrollPeriodException,
    NotFoundException,
    OperationCancelledException,
    PaymentGatewayException,
    PeriodAlreadyPaidException,
    ValidationException,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

SETTINGS_MISSING_MESSAGE = "Please configure your payroll settings before processing payroll"
NO_ACTIVE_EMPLOYEES_MESSAGE = "No active employees found"


# ===========================================
# PAYMENT REPORT
# ===========================================

class PaymentOutcomeStatus:
    PAID = "paid"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class PaymentOutcome:
    """Result of one record in a ProcessPayments batch."""
    record_id: uuid.UUID
    status: str
    reason: Optional[str] = None
    reference: Optional[str] = None


@dataclass
class PaymentReport:
    """
    Structured result of a payment batch.

    Partial failure is normal: callers inspect per_record_status and may
    re-drive the failed subset.
    """
    per_record_status: Dict[uuid.UUID, PaymentOutcome] = field(default_factory=dict)

    def add(self, outcome: PaymentOutcome) -> None:
        self.per_record_status[outcome.record_id] = outcome

    def _ids(self, status: str) -> List[uuid.UUID]:
        return [rid for rid, o in self.per_record_status.items() if o.status == status]

    @property
    def processed_count(self) -> int:
        return len(self._ids(PaymentOutcomeStatus.PAID))

    @property
    def paid_ids(self) -> List[uuid.UUID]:
        return self._ids(PaymentOutcomeStatus.PAID)

    @property
    def failed_ids(self) -> List[uuid.UUID]:
        return self._ids(PaymentOutcomeStatus.FAILED)

    @property
    def skipped_ids(self) -> List[uuid.UUID]:
        return self._ids(PaymentOutcomeStatus.SKIPPED)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed_ids or self.skipped_ids)


def derive_period_status(records: Iterable[PayrollRecord], paid_locked: bool = False) -> PeriodStatus:
    """Aggregate status of a period from its current records."""
    statuses = [record.status for record in records]
    if paid_locked or RecordStatus.PAID in statuses:
        return PeriodStatus.PAID
    if not statuses:
        return PeriodStatus.UNPROCESSED
    if all(s == RecordStatus.PROCESSED for s in statuses):
        return PeriodStatus.PROCESSED
    if all(s in (RecordStatus.APPROVED, RecordStatus.FAILED) for s in statuses):
        return PeriodStatus.APPROVED
    return PeriodStatus.PARTIALLY_APPROVED


def validate_period(business: Business, month: int, year: int, today: Optional[date] = None) -> None:
    """A period must be a real month, not in the future, not before registration."""
    if not 1 <= month <= 12:
        raise InvalidPayrollPeriodException(month, year, "month must be between 1 and 12")
    today = today or date.today()
    if (year, month) > (today.year, today.month):
        raise InvalidPayrollPeriodException(month, year, "cannot process payroll for a future period")
    registered = business.registration_date
    if registered and (year, month) < (registered.year, registered.month):
        raise InvalidPayrollPeriodException(
            month, year,
            f"period is before the business registration date ({registered.isoformat()})",
        )


class PeriodStateMachine:
    """
    Payroll period workflow: process, approve, pay.
    """

    def __init__(
        self,
        db: AsyncSession,
        tax_engine: Optional[TaxEngineClient] = None,
        gateway: Optional[PaymentGatewayClient] = None,
        today: Optional[date] = None,
    ):
        self.db = db
        self.reconciler = DeductionReconciler(db, tax_engine)
        self.gateway = gateway or PaymentGatewayClient()
        self.today = today

    # ===========================================
    # LOOKUPS
    # ===========================================

    async def get_business(self, business_id: uuid.UUID) -> Business:
        business = await self.db.get(Business, business_id)
        if business is None:
            raise NotFoundException("Business", business_id)
        return business

    async def get_settings(self, business_id: uuid.UUID) -> Optional[PayrollSettings]:
        result = await self.db.execute(
            select(PayrollSettings)
            .where(PayrollSettings.business_id == business_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_period(self, business_id: uuid.UUID, month: int, year: int) -> Optional[PayrollPeriod]:
        result = await self.db.execute(
            select(PayrollPeriod)
            .where(
                and_(
                    PayrollPeriod.business_id == business_id,
                    PayrollPeriod.month == month,
                    PayrollPeriod.year == year,
                )
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _require_period(self, business_id: uuid.UUID, month: int, year: int) -> PayrollPeriod:
        period = await self.get_period(business_id, month, year)
        if period is None:
            raise ValidationException(
                f"Payroll for {month:02d}/{year} has not been processed",
                field="month",
                details={"month": month, "year": year},
            )
        return period

    async def _get_or_create_period(self, business_id: uuid.UUID, month: int, year: int) -> PayrollPeriod:
        period = await self.get_period(business_id, month, year)
        if period is not None:
            return period
        try:
            self.db.add(PayrollPeriod(business_id=business_id, month=month, year=year))
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ConcurrencyException(
                f"Payroll for {month:02d}/{year} was started by another user, retry",
                resource_type="PayrollPeriod",
            )
        return await self.get_period(business_id, month, year)

    async def _current_records(
        self,
        period_id: uuid.UUID,
        record_ids: Optional[Iterable[uuid.UUID]] = None,
    ) -> List[PayrollRecord]:
        query = (
            select(PayrollRecord)
            .join(Employee, Employee.id == PayrollRecord.employee_id)
            .where(
                and_(
                    PayrollRecord.period_id == period_id,
                    PayrollRecord.is_current.is_(True),
                )
            )
        )
        if record_ids is not None:
            query = query.where(PayrollRecord.id.in_(list(record_ids)))
        query = query.order_by(Employee.last_name, Employee.first_name, PayrollRecord.id)
        result = await self.db.execute(query.execution_options(populate_existing=True))
        return list(result.scalars().all())

    async def _records_for_ids(self, period: PayrollPeriod, record_ids: Sequence[uuid.UUID]) -> List[PayrollRecord]:
        """Current records of the period for the given ids; unknown ids are rejected."""
        records = await self._current_records(period.id, record_ids)
        unknown = set(record_ids) - {record.id for record in records}
        if unknown:
            raise ValidationException(
                f"{len(unknown)} record(s) do not belong to the current payroll for "
                f"{period.month:02d}/{period.year}",
                field="record_ids",
                code=ErrorCode.INELIGIBLE_SELECTION,
                details={"record_ids": sorted(str(rid) for rid in unknown)},
            )
        return records

    # ===========================================
    # PROCESS
    # ===========================================

    async def process_period(
        self,
        business_id: uuid.UUID,
        month: int,
        year: int,
        settings: Optional[PayrollSettings] = None,
        token: Optional[CancellationToken] = None,
    ) -> List[PayrollRecord]:
        """
        Create (or overwrite) one Processed record per active employee.

        Raises:
            ValidationException: invalid period, settings missing, no active employees
            PeriodAlreadyPaidException: the period holds a Paid record
            GuardViolationException: a payment is in flight for the period
            ConcurrencyException: another actor changed the period meanwhile
            RemoteServiceException: the tax engine failed (nothing is written)
        """
        token = token or CancellationToken()
        token.raise_if_cancelled("ProcessPeriod")

        business = await self.get_business(business_id)
        validate_period(business, month, year, self.today)

        if settings is None:
            settings = await self.get_settings(business_id)
        if settings is None:
            raise ValidationException(SETTINGS_MISSING_MESSAGE, code=ErrorCode.SETTINGS_MISSING)

        employees = list((await self.db.execute(
            select(Employee)
            .where(
                and_(
                    Employee.business_id == business_id,
                    Employee.status == EmployeeStatus.ACTIVE,
                )
            )
            .order_by(Employee.last_name, Employee.first_name)
        )).scalars().all())
        if not employees:
            raise ValidationException(NO_ACTIVE_EMPLOYEES_MESSAGE, code=ErrorCode.NO_ACTIVE_EMPLOYEES)

        period = await self._get_or_create_period(business_id, month, year)
        await self._check_reprocessable(period)
        seen_version = period.version

        # End the read transaction before the remote calls
        await self.db.commit()

        computations: List[RecordComputation] = []
        for employee in employees:
            computations.append(
                await self.reconciler.prepare(employee, settings, month, year, token)
            )
        token.raise_if_cancelled("ProcessPeriod")

        try:
            await self._commit_processing(period, seen_version, computations, settings.currency)
        except BaseException:
            await self.db.rollback()
            raise

        logger.info(
            f"Payroll {month:02d}/{year} processed for business {business_id}: "
            f"{len(computations)} record(s)"
        )
        return await self._current_records(period.id)

    async def _check_reprocessable(self, period: PayrollPeriod) -> None:
        paid = await self.db.scalar(
            select(func.count(PayrollRecord.id)).where(
                and_(
                    PayrollRecord.period_id == period.id,
                    PayrollRecord.status == RecordStatus.PAID,
                )
            )
        )
        if period.paid_locked or paid:
            logger.warning(f"Reprocessing refused for paid period {period.month:02d}/{period.year}")
            raise PeriodAlreadyPaidException(period.month, period.year)

        in_flight = await self.db.scalar(
            select(func.count(PayrollRecord.id)).where(
                and_(
                    PayrollRecord.period_id == period.id,
                    PayrollRecord.is_current.is_(True),
                    PayrollRecord.payment_claim.is_not(None),
                )
            )
        )
        if in_flight:
            raise GuardViolationException(
                f"Payments for {period.month:02d}/{period.year} are in progress",
                rule="NO_REPROCESS_DURING_PAYMENT",
                details={"in_flight": in_flight},
            )

        # Superseding a record whose last transfer may have gone through would
        # issue a fresh key for the same salary.
        unsettled = await self.db.scalar(
            select(func.count(PayrollRecord.id)).where(
                and_(
                    PayrollRecord.period_id == period.id,
                    PayrollRecord.is_current.is_(True),
                    PayrollRecord.status != RecordStatus.PAID,
                    PayrollRecord.transfer_key.is_not(None),
                )
            )
        )
        if unsettled:
            raise GuardViolationException(
                f"Payments for {period.month:02d}/{period.year} have unconfirmed transfers; "
                f"retry them before reprocessing",
                rule="NO_REPROCESS_WITH_UNSETTLED_TRANSFER",
                details={"unsettled": unsettled},
            )

    async def _commit_processing(
        self,
        period: PayrollPeriod,
        seen_version: int,
        computations: List[RecordComputation],
        currency: str,
    ) -> None:
        now = datetime.utcnow()
        business_id, month, year = period.business_id, period.month, period.year

        # Compare-and-swap on the period: re-checks the paid guard at commit
        claimed = await self.db.execute(
            update(PayrollPeriod)
            .where(
                and_(
                    PayrollPeriod.id == period.id,
                    PayrollPeriod.version == seen_version,
                    PayrollPeriod.paid_locked.is_(False),
                )
            )
            .values(version=seen_version + 1, last_processed_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount != 1:
            await self.db.rollback()
            current = await self.get_period(business_id, month, year)
            if current is not None and current.paid_locked:
                logger.warning(f"Reprocessing of {month:02d}/{year} lost to a payment commit")
                raise PeriodAlreadyPaidException(month, year)
            raise ConcurrencyException(
                f"Payroll for {month:02d}/{year} was changed by another user, retry",
                resource_type="PayrollPeriod",
            )

        previous_ids = list((await self.db.execute(
            select(PayrollRecord.id).where(
                and_(
                    PayrollRecord.period_id == period.id,
                    PayrollRecord.is_current.is_(True),
                )
            )
        )).scalars().all())
        if previous_ids:
            await self.reconciler.reverse_installments(previous_ids)
            await self.db.execute(
                update(PayrollRecord)
                .where(PayrollRecord.id.in_(previous_ids))
                .values(is_current=False, superseded_at=now)
                .execution_options(synchronize_session=False)
            )
            logger.info(f"Superseded {len(previous_ids)} record(s) of {period.month:02d}/{period.year}")

        for computation in computations:
            record = PayrollRecord(
                id=uuid.uuid4(),
                period_id=period.id,
                business_id=period.business_id,
                employee_id=computation.employee_id,
                month=period.month,
                year=period.year,
                currency=currency,
                status=RecordStatus.PROCESSED,
                is_current=True,
                processed_at=now,
            )
            await self.reconciler.apply_amortization(computation, record, period.month, period.year)
            record.basic_salary = computation.basic_salary
            record.total_allowances = computation.total_allowances
            record.gross_salary = computation.gross_salary
            record.taxable_income = computation.taxable_income
            record.total_deductions = computation.total_deductions
            record.net_salary = computation.net_salary
            record.line_items = computation.build_line_items()
            self.db.add(record)

        await self.db.commit()

    # ===========================================
    # APPROVE
    # ===========================================

    async def approve_period(
        self,
        business_id: uuid.UUID,
        month: int,
        year: int,
        record_ids: Sequence[uuid.UUID],
        token: Optional[CancellationToken] = None,
    ) -> List[PayrollRecord]:
        """
        Move the selected Processed records to Approved.

        Records in any other state are left untouched, so re-approving is a
        no-op rather than an error.
        """
        token = token or CancellationToken()
        record_ids = list(dict.fromkeys(record_ids or []))
        if not record_ids:
            raise EmptySelectionException("approval")
        token.raise_if_cancelled("ApprovePeriod")

        period = await self._require_period(business_id, month, year)
        await self._records_for_ids(period, record_ids)

        try:
            token.raise_if_cancelled("ApprovePeriod")
            result = await self.db.execute(
                update(PayrollRecord)
                .where(
                    and_(
                        PayrollRecord.id.in_(record_ids),
                        PayrollRecord.period_id == period.id,
                        PayrollRecord.is_current.is_(True),
                        PayrollRecord.status == RecordStatus.PROCESSED,
                    )
                )
                .values(status=RecordStatus.APPROVED, approved_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except BaseException:
            await self.db.rollback()
            raise

        logger.info(
            f"Payroll {month:02d}/{year}: approved {result.rowcount} of {len(record_ids)} selected record(s)"
        )
        return await self._current_records(period.id, record_ids)

    # ===========================================
    # PAY
    # ===========================================

    async def process_payments(
        self,
        business_id: uuid.UUID,
        month: int,
        year: int,
        record_ids: Sequence[uuid.UUID],
        token: Optional[CancellationToken] = None,
    ) -> PaymentReport:
        """
        Pay the selected Approved records, each independently.

        Records that are not Approved are skipped (reason NotApproved).
        Employees without a resolvable channel fail with NoPaymentChannel.
        Gateway declines and errors fail the record with the gateway's
        message. The batch itself only raises for input errors or
        cancellation; per-record failures are reported, never thrown.
        """
        token = token or CancellationToken()
        record_ids = list(dict.fromkeys(record_ids or []))
        if not record_ids:
            raise EmptySelectionException("payment")
        token.raise_if_cancelled("ProcessPayments")

        period = await self._require_period(business_id, month, year)
        records = await self._records_for_ids(period, record_ids)
        await self.db.commit()

        report = PaymentReport()
        for record in records:
            token.raise_if_cancelled("ProcessPayments", partial_result=report)
            report.add(await self._pay_record(period, record, token, report))

        logger.info(
            f"Payroll {month:02d}/{year} payments: {report.processed_count} paid, "
            f"{len(report.failed_ids)} failed, {len(report.skipped_ids)} skipped"
        )
        return report

    async def _pay_record(
        self,
        period: PayrollPeriod,
        record: PayrollRecord,
        token: CancellationToken,
        report: PaymentReport,
    ) -> PaymentOutcome:
        if record.status != RecordStatus.APPROVED:
            logger.info(f"Record {record.id} skipped: status {record.status.value}")
            return PaymentOutcome(record.id, PaymentOutcomeStatus.SKIPPED, FailureReason.NOT_APPROVED.value)

        destination = resolve_primary(record.employee)
        if destination is None:
            if await self._fail_unclaimed(record.id, FailureReason.NO_PAYMENT_CHANNEL.value):
                logger.warning(f"Record {record.id} failed: employee {record.employee_id} has no payment channel")
                return PaymentOutcome(record.id, PaymentOutcomeStatus.FAILED, FailureReason.NO_PAYMENT_CHANNEL.value)
            return PaymentOutcome(record.id, PaymentOutcomeStatus.SKIPPED, "ConcurrentModification")

        claim = uuid.uuid4().hex
        transfer_key = await self._claim(period, record.id, claim)
        if transfer_key is None:
            logger.info(f"Record {record.id} skipped: already claimed or no longer approved")
            return PaymentOutcome(record.id, PaymentOutcomeStatus.SKIPPED, "ConcurrentModification")

        # A gateway error or a cancellation leaves the transfer's fate unknown,
        # so the key stays on the record and the next attempt replays it.
        settled = True
        try:
            result = await token.run(
                self.gateway.transfer(
                    reference=transfer_key,
                    amount=money(record.net_salary),
                    currency=record.currency,
                    destination=destination,
                    narration=f"Salary {period.month:02d}/{period.year}",
                ),
                "ProcessPayments",
            )
        except PaymentGatewayException as e:
            result = TransferResult(success=False, message=e.message)
            settled = False
        except OperationCancelledException:
            await asyncio.shield(self._release_claim(record.id, claim))
            raise OperationCancelledException("ProcessPayments", token.reason, report)
        except asyncio.CancelledError:
            await asyncio.shield(self._release_claim(record.id, claim))
            raise

        return await asyncio.shield(
            self._finalize(period, record.id, claim, result, destination.channel, settled=settled)
        )

    async def _fail_unclaimed(self, record_id: uuid.UUID, reason: str) -> bool:
        try:
            result = await self.db.execute(
                update(PayrollRecord)
                .where(
                    and_(
                        PayrollRecord.id == record_id,
                        PayrollRecord.status == RecordStatus.APPROVED,
                        PayrollRecord.payment_claim.is_(None),
                    )
                )
                .values(status=RecordStatus.FAILED, failure_reason=reason)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except BaseException:
            await self.db.rollback()
            raise
        return result.rowcount == 1

    async def _claim(self, period: PayrollPeriod, record_id: uuid.UUID, claim: str) -> Optional[str]:
        """
        Mark a record as in flight; bumps the period version in the same commit.

        Returns the transfer key to send to the gateway, or None when the
        claim was lost. An unsettled key from an earlier attempt is reused.
        """
        try:
            result = await self.db.execute(
                update(PayrollRecord)
                .where(
                    and_(
                        PayrollRecord.id == record_id,
                        PayrollRecord.status == RecordStatus.APPROVED,
                        PayrollRecord.is_current.is_(True),
                        PayrollRecord.payment_claim.is_(None),
                    )
                )
                .values(
                    payment_claim=claim,
                    transfer_key=func.coalesce(PayrollRecord.transfer_key, uuid.uuid4().hex),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.commit()
                return None
            transfer_key = await self.db.scalar(
                select(PayrollRecord.transfer_key).where(PayrollRecord.id == record_id)
            )
            await self.db.execute(
                update(PayrollPeriod)
                .where(PayrollPeriod.id == period.id)
                .values(version=PayrollPeriod.version + 1)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except BaseException:
            await self.db.rollback()
            raise
        return transfer_key

    async def _release_claim(self, record_id: uuid.UUID, claim: str) -> None:
        try:
            await self.db.execute(
                update(PayrollRecord)
                .where(
                    and_(
                        PayrollRecord.id == record_id,
                        PayrollRecord.payment_claim == claim,
                    )
                )
                .values(payment_claim=None)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except BaseException:
            await self.db.rollback()
            raise
        logger.info(f"Record {record_id}: payment cancelled, claim released")

    async def _finalize(
        self,
        period: PayrollPeriod,
        record_id: uuid.UUID,
        claim: str,
        result: TransferResult,
        channel: PaymentChannelKind,
        settled: bool = True,
    ) -> PaymentOutcome:
        now = datetime.utcnow()
        if result.success:
            values: Dict[str, Any] = dict(
                status=RecordStatus.PAID,
                paid_at=now,
                payment_reference=result.reference,
                payment_channel=channel.value,
                failure_reason=None,
                payment_claim=None,
            )
        else:
            values = dict(
                status=RecordStatus.FAILED,
                failure_reason=result.message or "Payment declined",
                payment_channel=channel.value,
                payment_claim=None,
            )
            if settled:
                values["transfer_key"] = None

        try:
            updated = await self.db.execute(
                update(PayrollRecord)
                .where(
                    and_(
                        PayrollRecord.id == record_id,
                        PayrollRecord.status == RecordStatus.APPROVED,
                        PayrollRecord.payment_claim == claim,
                    )
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if updated.rowcount != 1:
                await self.db.rollback()
                raise ConcurrencyException(
                    f"Payroll record {record_id} lost its payment claim",
                    resource_type="PayrollRecord",
                    details={"transfer_reference": result.reference, "transfer_success": result.success},
                )
            if result.success:
                await self.db.execute(
                    update(PayrollPeriod)
                    .where(PayrollPeriod.id == period.id)
                    .values(paid_locked=True, version=PayrollPeriod.version + 1)
                    .execution_options(synchronize_session=False)
                )
            await self.db.commit()
        except BaseException:
            await self.db.rollback()
            raise

        if result.success:
            logger.info(f"Record {record_id} paid via {channel.value} (ref {result.reference})")
            return PaymentOutcome(record_id, PaymentOutcomeStatus.PAID, reference=result.reference)
        logger.warning(f"Record {record_id} payment failed: {values['failure_reason']}")
        return PaymentOutcome(record_id, PaymentOutcomeStatus.FAILED, values["failure_reason"])

    async def retry_failed_payments(
        self,
        business_id: uuid.UUID,
        month: int,
        year: int,
        record_ids: Sequence[uuid.UUID],
        token: Optional[CancellationToken] = None,
    ) -> List[PayrollRecord]:
        """Return Failed records to Approved so the failed subset can be paid again."""
        token = token or CancellationToken()
        record_ids = list(dict.fromkeys(record_ids or []))
        if not record_ids:
            raise EmptySelectionException("payment retry")
        token.raise_if_cancelled("RetryFailedPayments")

        period = await self._require_period(business_id, month, year)
        await self._records_for_ids(period, record_ids)

        try:
            result = await self.db.execute(
                update(PayrollRecord)
                .where(
                    and_(
                        PayrollRecord.id.in_(record_ids),
                        PayrollRecord.period_id == period.id,
                        PayrollRecord.is_current.is_(True),
                        PayrollRecord.status == RecordStatus.FAILED,
                    )
                )
                .values(status=RecordStatus.APPROVED, failure_reason=None)
                .execution_options(synchronize_session=False)
            )
            await self.db.commit()
        except BaseException:
            await self.db.rollback()
            raise

        logger.info(f"Payroll {month:02d}/{year}: {result.rowcount} failed record(s) returned to approved")
        return await self._current_records(period.id, record_ids)

    # ===========================================
    # READS
    # ===========================================

    async def get_history(self, business_id: uuid.UUID, month: int, year: int) -> List[PayrollRecord]:
        """Current records of a period (empty when unprocessed)."""
        period = await self.get_period(business_id, month, year)
        if period is None:
            return []
        return await self._current_records(period.id)

    async def get_period_status(self, business_id: uuid.UUID, month: int, year: int) -> PeriodStatus:
        period = await self.get_period(business_id, month, year)
        if period is None:
            return PeriodStatus.UNPROCESSED
        return derive_period_status(await self._current_records(period.id), period.paid_locked)

    async def get_employee_history(
        self,
        business_id: uuid.UUID,
        employee_id: uuid.UUID,
        limit: int = 24,
    ) -> List[PayrollRecord]:
        """An employee's current records across periods, newest first."""
        result = await self.db.execute(
            select(PayrollRecord)
            .where(
                and_(
                    PayrollRecord.business_id == business_id,
                    PayrollRecord.employee_id == employee_id,
                    PayrollRecord.is_current.is_(True),
                )
            )
            .order_by(PayrollRecord.year.desc(), PayrollRecord.month.desc())
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def get_period_summary(self, business_id: uuid.UUID, month: int, year: int) -> Dict[str, Any]:
        """Totals of a period's current records."""
        period = await self.get_period(business_id, month, year)
        records = await self._current_records(period.id) if period else []

        def total(values: Iterable[Decimal]) -> Decimal:
            return money(sum(values, ZERO))

        status_counts = {status.value: 0 for status in RecordStatus}
        for record in records:
            status_counts[record.status.value] += 1

        return {
            "month": month,
            "year": year,
            "status": derive_period_status(records, period.paid_locked if period else False),
            "total_employees": len(records),
            "total_basic_salary": total(r.basic_salary for r in records),
            "total_allowances": total(r.total_allowances for r in records),
            "total_gross_salary": total(r.gross_salary for r in records),
            "total_deductions": total(r.total_deductions for r in records),
            "total_net_salary": total(r.net_salary for r in records),
            "total_paye": total(r.statutory_amount(StatutoryKind.PAYE) for r in records),
            "total_nhif": total(r.statutory_amount(StatutoryKind.NHIF) for r in records),
            "total_nssf": total(r.statutory_amount(StatutoryKind.NSSF) for r in records),
            "total_housing_levy": total(r.statutory_amount(StatutoryKind.HOUSING_LEVY) for r in records),
            "status_counts": status_counts,
        }

    async def get_payment_method_stats(self, business_id: uuid.UUID, month: int, year: int) -> Dict[str, int]:
        """
        How the employees of a period's records would be paid.

        wallet/bank/none count the configured channel. The active_* counts
        are the employees ProcessPayments could actually pay today.
        """
        records = await self.get_history(business_id, month, year)
        stats = {"total": len(records), "wallet": 0, "bank": 0, "none": 0, "active_wallet": 0, "active_bank": 0}
        for record in records:
            employee = record.employee
            channel = employee.payment_channel
            if channel == PaymentChannelKind.WALLET:
                stats["wallet"] += 1
            elif channel == PaymentChannelKind.BANK:
                stats["bank"] += 1
            else:
                stats["none"] += 1

            destination = resolve_primary(employee)
            if destination is None:
                continue
            if destination.channel == PaymentChannelKind.WALLET:
                stats["active_wallet"] += 1
            else:
                stats["active_bank"] += 1
        return stats
