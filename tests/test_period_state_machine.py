"""
Staffma Payroll - Period State Machine Tests

Process, approve and pay a payroll period, including the guards that keep a
paid period immutable.
"""

import pytest
from decimal import Decimal
from uuid import uuid4

from sqlalchemy import select, update

from staffma.models.employee import EmployeeStatus
from staffma.models.payroll import (
    DeductionClass,
    LineType,
    PayrollPeriod,
    PayrollRecord,
    PeriodStatus,
    RecordStatus,
    StatutoryKind,
)
from staffma.services.deduction_reconciler import record_is_balanced
from staffma.services.period_state_machine import (
    NO_ACTIVE_EMPLOYEES_MESSAGE,
    SETTINGS_MISSING_MESSAGE,
    PaymentOutcomeStatus,
)
from staffma.utils.error_handling import (
    ConcurrencyException,
    EmptySelectionException,
    ErrorCode,
    GuardViolationException,
    InvalidPayrollPeriodException,
    PeriodAlreadyPaidException,
    TaxEngineException,
    ValidationException,
)
from tests.fixtures.factories import make_employee


def by_employee(records):
    return {record.employee_id: record for record in records}


class TestProcessPeriod:
    """ProcessPeriod creates one processed record per active employee."""
    
    @pytest.mark.asyncio
    async def test_creates_processed_records(
        self, db_session, state_machine, business, payroll_settings, employees, tax_engine,
    ):
        await make_employee(
            db_session, business, "EMP009", "Dan", "Mwangi", "30000", status=EmployeeStatus.INACTIVE,
        )
        
        records = await state_machine.process_period(business.id, 6, 2024)
        
        assert len(records) == 3
        assert len(tax_engine.calls) == 3
        assert {r.employee_id for r in records} == {e.id for e in employees}
        assert all(r.status == RecordStatus.PROCESSED for r in records)
        assert await state_machine.get_period_status(business.id, 6, 2024) == PeriodStatus.PROCESSED
    
    @pytest.mark.asyncio
    async def test_record_arithmetic(self, state_machine, business, payroll_settings, employees):
        records = by_employee(await state_machine.process_period(business.id, 6, 2024))
        record = records[employees[0].id]
        
        # 80,000 basic + 5,000 house + 10% transport; hardship is disabled
        assert [(a.name, a.amount) for a in record.allowances] == [
            ("House", Decimal("5000.00")),
            ("Transport", Decimal("8000.00")),
        ]
        assert record.gross_salary == Decimal("93000.00")
        assert record.total_deductions == Decimal("12275.00")
        assert record.net_salary == Decimal("80725.00")
        assert all(record_is_balanced(r) for r in records.values())
    
    @pytest.mark.asyncio
    async def test_deductions_carry_statutory_tags(self, state_machine, business, payroll_settings, employees):
        records = await state_machine.process_period(business.id, 6, 2024)
        
        for record in records:
            assert all(item.line_type == LineType.DEDUCTION for item in record.deductions)
            assert [item.deduction_class for item in record.deductions] == [DeductionClass.STATUTORY] * 4
            assert [item.statutory_kind for item in record.deductions] == list(StatutoryKind)
    
    @pytest.mark.asyncio
    async def test_missing_settings(self, state_machine, business, employees, tax_engine):
        with pytest.raises(ValidationException) as exc_info:
            await state_machine.process_period(business.id, 6, 2024)
        
        assert exc_info.value.message == SETTINGS_MISSING_MESSAGE
        assert exc_info.value.code == ErrorCode.SETTINGS_MISSING
        assert tax_engine.calls == []
    
    @pytest.mark.asyncio
    async def test_no_active_employees(self, db_session, state_machine, business, payroll_settings, tax_engine):
        await make_employee(
            db_session, business, "EMP009", "Dan", "Mwangi", "30000", status=EmployeeStatus.INACTIVE,
        )
        
        with pytest.raises(ValidationException) as exc_info:
            await state_machine.process_period(business.id, 6, 2024)
        
        assert exc_info.value.message == NO_ACTIVE_EMPLOYEES_MESSAGE
        assert tax_engine.calls == []
    
    @pytest.mark.asyncio
    @pytest.mark.parametrize("month,year", [(13, 2024), (0, 2024), (1, 2025), (12, 2022)])
    async def test_invalid_period(self, state_machine, business, payroll_settings, employees, month, year):
        with pytest.raises(InvalidPayrollPeriodException):
            await state_machine.process_period(business.id, month, year)
    
    @pytest.mark.asyncio
    async def test_tax_engine_failure_writes_nothing(
        self, state_machine, business, payroll_settings, employees, tax_engine,
    ):
        tax_engine.fail_for = {employees[1].id}
        
        with pytest.raises(TaxEngineException):
            await state_machine.process_period(business.id, 6, 2024)
        
        assert await state_machine.get_history(business.id, 6, 2024) == []
        assert await state_machine.get_period_status(business.id, 6, 2024) == PeriodStatus.UNPROCESSED
    
    @pytest.mark.asyncio
    async def test_reprocessing_supersedes_records(
        self, db_session, state_machine, business, payroll_settings, employees,
    ):
        first = await state_machine.process_period(business.id, 6, 2024)
        await state_machine.approve_period(business.id, 6, 2024, [first[0].id])
        
        second = await state_machine.process_period(business.id, 6, 2024)
        
        assert {r.id for r in first}.isdisjoint({r.id for r in second})
        assert all(r.status == RecordStatus.PROCESSED for r in second)
        history = await state_machine.get_history(business.id, 6, 2024)
        assert {r.id for r in history} == {r.id for r in second}
        
        superseded = (await db_session.execute(
            select(PayrollRecord)
            .where(PayrollRecord.id.in_([r.id for r in first]))
            .execution_options(populate_existing=True)
        )).scalars().all()
        assert all(not r.is_current and r.superseded_at is not None for r in superseded)


class TestApprovePeriod:
    """ApprovePeriod moves processed records to approved."""
    
    @pytest.mark.asyncio
    async def test_empty_selection(self, state_machine, business, payroll_settings, employees):
        await state_machine.process_period(business.id, 6, 2024)
        
        with pytest.raises(EmptySelectionException):
            await state_machine.approve_period(business.id, 6, 2024, [])
    
    @pytest.mark.asyncio
    async def test_approve_is_idempotent(self, state_machine, business, payroll_settings, employees):
        records = await state_machine.process_period(business.id, 6, 2024)
        ids = [records[0].id, records[1].id]
        
        approved = await state_machine.approve_period(business.id, 6, 2024, ids)
        first_approval = {r.id: r.approved_at for r in approved}
        again = await state_machine.approve_period(business.id, 6, 2024, ids)
        
        assert all(r.status == RecordStatus.APPROVED for r in again)
        assert {r.id: r.approved_at for r in again} == first_approval
        assert await state_machine.get_period_status(business.id, 6, 2024) == PeriodStatus.PARTIALLY_APPROVED
    
    @pytest.mark.asyncio
    async def test_unknown_record_rejected(self, state_machine, business, payroll_settings, employees):
        records = await state_machine.process_period(business.id, 6, 2024)
        
        with pytest.raises(ValidationException) as exc_info:
            await state_machine.approve_period(business.id, 6, 2024, [records[0].id, uuid4()])
        
        assert exc_info.value.code == ErrorCode.INELIGIBLE_SELECTION
        history = await state_machine.get_history(business.id, 6, 2024)
        assert all(r.status == RecordStatus.PROCESSED for r in history)
    
    @pytest.mark.asyncio
    async def test_unprocessed_period(self, state_machine, business, payroll_settings, employees):
        with pytest.raises(ValidationException):
            await state_machine.approve_period(business.id, 6, 2024, [uuid4()])


class TestProcessPayments:
    """ProcessPayments pays approved records independently."""
    
    @pytest.mark.asyncio
    async def test_three_employee_scenario(self, state_machine, business, payroll_settings, employees, gateway):
        records = await state_machine.process_period(business.id, 6, 2024)
        assert all(r.status == RecordStatus.PROCESSED for r in records)
        
        approved_ids = [records[0].id, records[1].id]
        pending_id = records[2].id
        approved = await state_machine.approve_period(business.id, 6, 2024, approved_ids)
        assert all(r.status == RecordStatus.APPROVED for r in approved)
        
        report = await state_machine.process_payments(
            business.id, 6, 2024, [r.id for r in records],
        )
        
        assert report.processed_count == 2
        assert set(report.paid_ids) == set(approved_ids)
        assert report.per_record_status[pending_id].status == PaymentOutcomeStatus.SKIPPED
        assert report.per_record_status[pending_id].reason == "NotApproved"
        assert len(gateway.transfers) == 2
        
        history = {r.id: r for r in await state_machine.get_history(business.id, 6, 2024)}
        assert history[pending_id].status == RecordStatus.PROCESSED
        assert all(history[rid].status == RecordStatus.PAID for rid in approved_ids)
        assert all(history[rid].payment_reference for rid in approved_ids)
        assert all(history[rid].payment_claim is None for rid in approved_ids)
        assert await state_machine.get_period_status(business.id, 6, 2024) == PeriodStatus.PAID
    
    @pytest.mark.asyncio
    async def test_transfer_amount_and_channel(
        self, state_machine, business, payroll_settings, employees, gateway,
    ):
        records = by_employee(await state_machine.process_period(business.id, 6, 2024))
        wallet_record = records[employees[1].id]
        await state_machine.approve_period(business.id, 6, 2024, [wallet_record.id])
        
        await state_machine.process_payments(business.id, 6, 2024, [wallet_record.id])
        
        assert gateway.transfers[0]["amount"] == wallet_record.net_salary
        assert gateway.transfers[0]["target"] == "MP-EMP002"
        paid = (await state_machine.get_history(business.id, 6, 2024))
        assert by_employee(paid)[employees[1].id].payment_channel == "wallet"
    
    @pytest.mark.asyncio
    async def test_empty_selection(self, state_machine, business, payroll_settings, employees):
        await state_machine.process_period(business.id, 6, 2024)
        
        with pytest.raises(EmptySelectionException):
            await state_machine.process_payments(business.id, 6, 2024, [])
    
    @pytest.mark.asyncio
    async def test_no_payment_channel(
        self, db_session, state_machine, business, payroll_settings, employees, gateway,
    ):
        unpaid = await make_employee(db_session, business, "EMP004", "Esther", "Njeri", "50000", channel="none")
        records = await state_machine.process_period(business.id, 6, 2024)
        ids = [r.id for r in records]
        await state_machine.approve_period(business.id, 6, 2024, ids)
        
        report = await state_machine.process_payments(business.id, 6, 2024, ids)
        
        record = by_employee(await state_machine.get_history(business.id, 6, 2024))[unpaid.id]
        assert record.status == RecordStatus.FAILED
        assert record.failure_reason == "NoPaymentChannel"
        assert report.per_record_status[record.id].reason == "NoPaymentChannel"
        assert report.processed_count == 3
        assert report.has_failures
        assert len(gateway.transfers) == 3
    
    @pytest.mark.asyncio
    async def test_inactive_wallet_blocks_payment(
        self, db_session, state_machine, business, payroll_settings, employees, gateway,
    ):
        employees[1].wallet.is_active = False
        await db_session.commit()
        records = by_employee(await state_machine.process_period(business.id, 6, 2024))
        record = records[employees[1].id]
        await state_machine.approve_period(business.id, 6, 2024, [record.id])
        
        report = await state_machine.process_payments(business.id, 6, 2024, [record.id])
        
        assert report.failed_ids == [record.id]
        assert report.per_record_status[record.id].reason == "NoPaymentChannel"
        assert gateway.transfers == []
    
    @pytest.mark.asyncio
    async def test_gateway_decline_then_retry(
        self, state_machine, business, payroll_settings, employees, gateway,
    ):
        records = by_employee(await state_machine.process_period(business.id, 6, 2024))
        record = records[employees[0].id]
        target = employees[0].bank_accounts[0].account_number
        gateway.decline[target] = "Account dormant"
        await state_machine.approve_period(business.id, 6, 2024, [record.id])
        
        report = await state_machine.process_payments(business.id, 6, 2024, [record.id])
        
        assert report.processed_count == 0
        assert report.per_record_status[record.id].reason == "Account dormant"
        failed = by_employee(await state_machine.get_history(business.id, 6, 2024))[employees[0].id]
        assert failed.status == RecordStatus.FAILED
        assert failed.failure_reason == "Account dormant"
        
        retried = await state_machine.retry_failed_payments(business.id, 6, 2024, [record.id])
        assert retried[0].status == RecordStatus.APPROVED
        assert retried[0].failure_reason is None
        
        del gateway.decline[target]
        report = await state_machine.process_payments(business.id, 6, 2024, [record.id])
        assert report.paid_ids == [record.id]
    
    @pytest.mark.asyncio
    async def test_gateway_error_fails_record_not_batch(
        self, state_machine, business, payroll_settings, employees, gateway,
    ):
        records = await state_machine.process_period(business.id, 6, 2024)
        ids = [r.id for r in records]
        await state_machine.approve_period(business.id, 6, 2024, ids)
        gateway.errors.add("MP-EMP002")
        
        report = await state_machine.process_payments(business.id, 6, 2024, ids)
        
        assert report.processed_count == 2
        assert len(report.failed_ids) == 1
        failed_id = report.failed_ids[0]
        assert report.per_record_status[failed_id].reason == "Gateway connection reset"
    
    @pytest.mark.asyncio
    async def test_paid_record_is_not_paid_twice(
        self, state_machine, business, payroll_settings, employees, gateway,
    ):
        records = await state_machine.process_period(business.id, 6, 2024)
        await state_machine.approve_period(business.id, 6, 2024, [records[0].id])
        await state_machine.process_payments(business.id, 6, 2024, [records[0].id])
        
        report = await state_machine.process_payments(business.id, 6, 2024, [records[0].id])
        
        assert report.per_record_status[records[0].id].status == PaymentOutcomeStatus.SKIPPED
        assert len(gateway.transfers) == 1
    
    @pytest.mark.asyncio
    async def test_timed_out_transfer_is_replayed_not_repeated(
        self, state_machine, business, payroll_settings, employees, gateway,
    ):
        records = by_employee(await state_machine.process_period(business.id, 6, 2024))
        record = records[employees[1].id]
        await state_machine.approve_period(business.id, 6, 2024, [record.id])
        gateway.ambiguous.add("MP-EMP002")
    
        report = await state_machine.process_payments(business.id, 6, 2024, [record.id])
    
        assert report.per_record_status[record.id].reason == "Payment gateway request timed out"
        failed = by_employee(await state_machine.get_history(business.id, 6, 2024))[employees[1].id]
        assert failed.status == RecordStatus.FAILED
        key = failed.transfer_key
        assert key is not None
    
        retried = await state_machine.retry_failed_payments(business.id, 6, 2024, [record.id])
        assert retried[0].transfer_key == key
        report = await state_machine.process_payments(business.id, 6, 2024, [record.id])
    
        assert report.paid_ids == [record.id]
        assert gateway.references == [key, key]
        assert len(gateway.transfers) == 1
        paid = by_employee(await state_machine.get_history(business.id, 6, 2024))[employees[1].id]
        assert paid.payment_reference == f"TRF-{key[:12].upper()}"
    
    @pytest.mark.asyncio
    async def test_unreachable_gateway_keeps_key_until_answered(
        self, state_machine, business, payroll_settings, employees, gateway,
    ):
        records = by_employee(await state_machine.process_period(business.id, 6, 2024))
        record = records[employees[1].id]
        await state_machine.approve_period(business.id, 6, 2024, [record.id])
        gateway.errors.add("MP-EMP002")
    
        for _ in range(2):
            await state_machine.process_payments(business.id, 6, 2024, [record.id])
            await state_machine.retry_failed_payments(business.id, 6, 2024, [record.id])
        gateway.errors.clear()
        report = await state_machine.process_payments(business.id, 6, 2024, [record.id])
    
        assert report.paid_ids == [record.id]
        assert len(set(gateway.references)) == 1
        assert len(gateway.references) == 3
    
    @pytest.mark.asyncio
    async def test_declined_transfer_gets_fresh_key(
        self, state_machine, business, payroll_settings, employees, gateway,
    ):
        records = by_employee(await state_machine.process_period(business.id, 6, 2024))
        record = records[employees[1].id]
        await state_machine.approve_period(business.id, 6, 2024, [record.id])
        gateway.decline["MP-EMP002"] = "Wallet limit exceeded"
    
        await state_machine.process_payments(business.id, 6, 2024, [record.id])
    
        failed = by_employee(await state_machine.get_history(business.id, 6, 2024))[employees[1].id]
        assert failed.transfer_key is None
    
        del gateway.decline["MP-EMP002"]
        await state_machine.retry_failed_payments(business.id, 6, 2024, [record.id])
        report = await state_machine.process_payments(business.id, 6, 2024, [record.id])
    
        assert report.paid_ids == [record.id]
        first, second = gateway.references
        assert first != second
        assert len(gateway.transfers) == 2


class TestPaidPeriodGuard:
    """A period with a paid record can never be reprocessed."""
    
    @pytest.mark.asyncio
    async def test_reprocess_paid_period(
        self, state_machine, business, payroll_settings, employees, tax_engine,
    ):
        records = await state_machine.process_period(business.id, 6, 2024)
        await state_machine.approve_period(business.id, 6, 2024, [records[0].id])
        await state_machine.process_payments(business.id, 6, 2024, [records[0].id])
        calls = len(tax_engine.calls)
        before = {r.id: r.status for r in await state_machine.get_history(business.id, 6, 2024)}
        
        with pytest.raises(PeriodAlreadyPaidException) as exc_info:
            await state_machine.process_period(business.id, 6, 2024)
        
        assert isinstance(exc_info.value, GuardViolationException)
        assert exc_info.value.rule == "PAID_PERIOD_IMMUTABLE"
        assert len(tax_engine.calls) == calls
        after = {r.id: r.status for r in await state_machine.get_history(business.id, 6, 2024)}
        assert after == before
    
    @pytest.mark.asyncio
    async def test_guard_rechecked_at_commit(
        self, session_factory, state_machine, business, payroll_settings, employees, tax_engine,
    ):
        records = await state_machine.process_period(business.id, 6, 2024)
        period = await state_machine.get_period(business.id, 6, 2024)
        
        async def pay_from_another_actor():
            async with session_factory() as other:
                await other.execute(
                    update(PayrollPeriod)
                    .where(PayrollPeriod.id == period.id)
                    .values(paid_locked=True, version=PayrollPeriod.version + 1)
                )
                await other.commit()
        
        tax_engine.before_return = pay_from_another_actor
        
        with pytest.raises(PeriodAlreadyPaidException):
            await state_machine.process_period(business.id, 6, 2024)
        
        history = await state_machine.get_history(business.id, 6, 2024)
        assert {r.id for r in history} == {r.id for r in records}
    
    @pytest.mark.asyncio
    async def test_concurrent_reprocess_conflicts(
        self, session_factory, state_machine, business, payroll_settings, employees, tax_engine,
    ):
        records = await state_machine.process_period(business.id, 6, 2024)
        period = await state_machine.get_period(business.id, 6, 2024)
        
        async def bump_version():
            async with session_factory() as other:
                await other.execute(
                    update(PayrollPeriod)
                    .where(PayrollPeriod.id == period.id)
                    .values(version=PayrollPeriod.version + 1)
                )
                await other.commit()
        
        tax_engine.before_return = bump_version
        
        with pytest.raises(ConcurrencyException):
            await state_machine.process_period(business.id, 6, 2024)
        
        history = await state_machine.get_history(business.id, 6, 2024)
        assert {r.id for r in history} == {r.id for r in records}
    
    @pytest.mark.asyncio
    async def test_reprocess_refused_during_payment(
        self, db_session, state_machine, business, payroll_settings, employees,
    ):
        records = await state_machine.process_period(business.id, 6, 2024)
        await db_session.execute(
            update(PayrollRecord).where(PayrollRecord.id == records[0].id).values(payment_claim="in-flight")
        )
        await db_session.commit()
        
        with pytest.raises(GuardViolationException) as exc_info:
            await state_machine.process_period(business.id, 6, 2024)
        
        assert exc_info.value.rule == "NO_REPROCESS_DURING_PAYMENT"
    
    @pytest.mark.asyncio
    async def test_reprocess_refused_with_unconfirmed_transfer(
        self, state_machine, business, payroll_settings, employees, gateway,
    ):
        records = by_employee(await state_machine.process_period(business.id, 6, 2024))
        record = records[employees[1].id]
        await state_machine.approve_period(business.id, 6, 2024, [record.id])
        gateway.ambiguous.add("MP-EMP002")
        await state_machine.process_payments(business.id, 6, 2024, [record.id])
    
        with pytest.raises(GuardViolationException) as exc_info:
            await state_machine.process_period(business.id, 6, 2024)
    
        assert exc_info.value.rule == "NO_REPROCESS_WITH_UNSETTLED_TRANSFER"
        history = await state_machine.get_history(business.id, 6, 2024)
        assert {r.id for r in history} == set(r.id for r in records.values())


class TestPeriodReads:
    """Summary and payment method statistics."""
    
    @pytest.mark.asyncio
    async def test_period_summary(self, state_machine, business, payroll_settings, employees):
        records = await state_machine.process_period(business.id, 6, 2024)
        await state_machine.approve_period(business.id, 6, 2024, [records[0].id])
        
        summary = await state_machine.get_period_summary(business.id, 6, 2024)
        
        assert summary["total_employees"] == 3
        assert summary["status"] == PeriodStatus.PARTIALLY_APPROVED
        assert summary["total_net_salary"] == sum(r.net_salary for r in records)
        assert summary["total_nhif"] == Decimal("1500.00")
        assert summary["status_counts"]["approved"] == 1
        assert summary["status_counts"]["processed"] == 2
    
    @pytest.mark.asyncio
    async def test_empty_summary(self, state_machine, business):
        summary = await state_machine.get_period_summary(business.id, 3, 2024)
        
        assert summary["status"] == PeriodStatus.UNPROCESSED
        assert summary["total_employees"] == 0
        assert summary["total_gross_salary"] == Decimal("0.00")
    
    @pytest.mark.asyncio
    async def test_payment_method_stats(self, db_session, state_machine, business, payroll_settings, employees):
        await make_employee(db_session, business, "EMP004", "Esther", "Njeri", "50000", channel="none")
        await state_machine.process_period(business.id, 6, 2024)
        
        stats = await state_machine.get_payment_method_stats(business.id, 6, 2024)
        
        assert stats == {
            "total": 4, "wallet": 1, "bank": 2, "none": 1, "active_wallet": 1, "active_bank": 2,
        }
    
    @pytest.mark.asyncio
    async def test_payment_method_stats_count_payable_channels(
        self, db_session, state_machine, business, payroll_settings, employees,
    ):
        employees[1].wallet.is_active = False
        await db_session.commit()
        await state_machine.process_period(business.id, 6, 2024)
    
        stats = await state_machine.get_payment_method_stats(business.id, 6, 2024)
    
        assert stats["wallet"] == 1
        assert stats["active_wallet"] == 0
        assert stats["active_bank"] == stats["bank"] == 2
    
    @pytest.mark.asyncio
    async def test_employee_history(self, state_machine, business, payroll_settings, employees):
        await state_machine.process_period(business.id, 5, 2024)
        await state_machine.process_period(business.id, 6, 2024)
        
        history = await state_machine.get_employee_history(business.id, employees[0].id)
        
        assert [(r.month, r.year) for r in history] == [(6, 2024), (5, 2024)]
