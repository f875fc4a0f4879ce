"""
Staffma Payroll - Workflow Context

Single canonical view of one business's payroll period. Screens and batch
tools read records through the context instead of keeping their own copies,
and every mutating action refreshes it from the store afterwards
(read-your-writes).
"""

import logging
import uuid
from enum import Enum
from typing import Dict, List, Optional, Sequence

from staffma.models.payroll import PayrollRecord, PayrollSettings, PeriodStatus, RecordStatus
from staffma.services.cancellation import CancellationToken
from staffma.services.period_state_machine import (
    PaymentReport,
    PeriodStateMachine,
    derive_period_status,
)

logger = logging.getLogger(__name__)


class WorkflowStage(str, Enum):
    """Stages of the payroll workflow screen."""
    PROCESS = "process"
    REVIEW = "review"
    PAYMENTS = "payments"


class PayrollWorkflowContext:
    """Canonical PayrollRecord set for one (business, month, year)."""

    def __init__(self, state_machine: PeriodStateMachine, business_id: uuid.UUID, month: int, year: int):
        self.state_machine = state_machine
        self.business_id = business_id
        self.month = month
        self.year = year
        self._records: Dict[uuid.UUID, PayrollRecord] = {}
        self._order: List[uuid.UUID] = []
        self._paid_locked = False

    @property
    def records(self) -> List[PayrollRecord]:
        return [self._records[rid] for rid in self._order]

    @property
    def status(self) -> PeriodStatus:
        return derive_period_status(self.records, self._paid_locked)

    @property
    def suggested_stage(self) -> WorkflowStage:
        """Review once records exist, payments once any record is approved."""
        if not self._records:
            return WorkflowStage.PROCESS
        if any(r.status in (RecordStatus.APPROVED, RecordStatus.PAID, RecordStatus.FAILED) for r in self.records):
            return WorkflowStage.PAYMENTS
        return WorkflowStage.REVIEW

    def get(self, record_id: uuid.UUID) -> Optional[PayrollRecord]:
        return self._records.get(record_id)

    def records_in(self, *statuses: RecordStatus) -> List[PayrollRecord]:
        return [r for r in self.records if r.status in statuses]

    def _replace(self, records: Sequence[PayrollRecord]) -> None:
        self._records = {r.id: r for r in records}
        self._order = [r.id for r in records]

    async def refresh(self, token: Optional[CancellationToken] = None) -> "PayrollWorkflowContext":
        if token:
            token.raise_if_cancelled("RefreshWorkflow")
        period = await self.state_machine.get_period(self.business_id, self.month, self.year)
        self._paid_locked = bool(period and period.paid_locked)
        self._replace(await self.state_machine.get_history(self.business_id, self.month, self.year))
        logger.debug(
            f"Workflow {self.month:02d}/{self.year} refreshed: {len(self._order)} record(s), {self.status.value}"
        )
        return self

    # ===========================================
    # ACTIONS (delegate, then refresh)
    # ===========================================

    async def process(
        self,
        settings: Optional[PayrollSettings] = None,
        token: Optional[CancellationToken] = None,
    ) -> List[PayrollRecord]:
        try:
            return await self.state_machine.process_period(
                self.business_id, self.month, self.year, settings, token,
            )
        finally:
            await self.refresh()

    async def approve(
        self,
        record_ids: Sequence[uuid.UUID],
        token: Optional[CancellationToken] = None,
    ) -> List[PayrollRecord]:
        try:
            return await self.state_machine.approve_period(
                self.business_id, self.month, self.year, record_ids, token,
            )
        finally:
            await self.refresh()

    async def pay(
        self,
        record_ids: Sequence[uuid.UUID],
        token: Optional[CancellationToken] = None,
    ) -> PaymentReport:
        try:
            return await self.state_machine.process_payments(
                self.business_id, self.month, self.year, record_ids, token,
            )
        finally:
            await self.refresh()
