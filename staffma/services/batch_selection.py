"""
Staffma Payroll - Batch Selection Coordinator

Multi-record selection for the review and payment stages. Only records the
current stage can act on are selectable, and a batch action is refused
outright if its selection holds anything else.

    review   -> Processed records -> ApprovePeriod
    payments -> Approved records  -> ProcessPayments
"""

import logging
import uuid
from typing import Callable, Dict, FrozenSet, List, Optional, Set, Union

from staffma.models.payroll import PayrollRecord, RecordStatus
from staffma.services.cancellation import CancellationToken
from staffma.services.period_state_machine import PaymentReport
from staffma.services.workflow_context import PayrollWorkflowContext, WorkflowStage
from staffma.utils.error_handling import (
    EmptySelectionException,
    ErrorCode,
    ValidationException,
)

logger = logging.getLogger(__name__)

STAGE_ELIGIBLE_STATUS: Dict[WorkflowStage, RecordStatus] = {
    WorkflowStage.REVIEW: RecordStatus.PROCESSED,
    WorkflowStage.PAYMENTS: RecordStatus.APPROVED,
}


class IneligibleSelectionException(ValidationException):
    """Selection contains records the stage cannot act on"""

    def __init__(self, stage: WorkflowStage, record_ids: List[uuid.UUID]):
        super().__init__(
            message=f"{len(record_ids)} selected record(s) are not eligible for the {stage.value} stage",
            field="record_ids",
            code=ErrorCode.INELIGIBLE_SELECTION,
            details={"stage": stage.value, "record_ids": sorted(str(rid) for rid in record_ids)},
        )


class BatchSelectionCoordinator:
    """Selection set scoped to one workflow stage of a PayrollWorkflowContext."""

    def __init__(self, context: PayrollWorkflowContext, stage: WorkflowStage = WorkflowStage.REVIEW):
        self.context = context
        self._stage = stage
        self._selected: Set[uuid.UUID] = set()

    @property
    def stage(self) -> WorkflowStage:
        return self._stage

    @property
    def selected(self) -> FrozenSet[uuid.UUID]:
        return frozenset(self._selected)

    def set_stage(self, stage: WorkflowStage) -> None:
        """Switching stage drops the selection."""
        if stage != self._stage:
            self._stage = stage
            self._selected.clear()

    def is_eligible(self, record_id: uuid.UUID) -> bool:
        status = STAGE_ELIGIBLE_STATUS.get(self._stage)
        record = self.context.get(record_id)
        return status is not None and record is not None and record.status == status

    def eligible_ids(self) -> List[uuid.UUID]:
        return [r.id for r in self.context.records if self.is_eligible(r.id)]

    def select_all(self, predicate: Optional[Callable[[PayrollRecord], bool]] = None) -> FrozenSet[uuid.UUID]:
        """Select every eligible record, optionally narrowed by `predicate`."""
        self._selected = {
            rid for rid in self.eligible_ids()
            if predicate is None or predicate(self.context.get(rid))
        }
        return self.selected

    def clear(self) -> None:
        self._selected.clear()

    def toggle(self, record_id: uuid.UUID) -> bool:
        """Flip one record; returns whether it is now selected."""
        if record_id in self._selected:
            self._selected.discard(record_id)
            return False
        if not self.is_eligible(record_id):
            raise IneligibleSelectionException(self._stage, [record_id])
        self._selected.add(record_id)
        return True

    def select(self, record_ids: List[uuid.UUID]) -> FrozenSet[uuid.UUID]:
        """Replace the selection; all ids must be eligible."""
        ineligible = [rid for rid in record_ids if not self.is_eligible(rid)]
        if ineligible:
            raise IneligibleSelectionException(self._stage, ineligible)
        self._selected = set(record_ids)
        return self.selected

    def prune(self) -> None:
        """Drop ids that are no longer eligible (after a refresh)."""
        self._selected = {rid for rid in self._selected if self.is_eligible(rid)}

    async def dispatch(
        self,
        token: Optional[CancellationToken] = None,
    ) -> Union[List[PayrollRecord], PaymentReport]:
        """
        Run the stage's batch action on the selection.

        The context is refreshed first so eligibility is judged against the
        stored state; any ineligible id rejects the whole batch before the
        action is issued.
        """
        action = {WorkflowStage.REVIEW: "approval", WorkflowStage.PAYMENTS: "payment"}.get(self._stage)
        if action is None:
            raise ValidationException(
                f"The {self._stage.value} stage has no batch action",
                field="stage",
            )
        if not self._selected:
            raise EmptySelectionException(action)

        await self.context.refresh(token)
        ineligible = [rid for rid in self._selected if not self.is_eligible(rid)]
        if ineligible:
            logger.warning(f"Batch {action} refused: {len(ineligible)} ineligible record(s)")
            raise IneligibleSelectionException(self._stage, ineligible)

        ids = [r.id for r in self.context.records if r.id in self._selected]
        if self._stage == WorkflowStage.REVIEW:
            result = await self.context.approve(ids, token)
        else:
            result = await self.context.pay(ids, token)
        self.prune()
        return result
