"""
Staffma Payroll - Services Package

Business logic services.
"""

from staffma.services.cancellation import CancellationToken
from staffma.services.tax_engine import TaxEngineClient, StatutoryComputation
from staffma.services.payment_gateway import PaymentGatewayClient, TransferDestination, TransferResult
from staffma.services.deduction_reconciler import DeductionReconciler
from staffma.services.payment_channel_binder import PaymentChannelBinder, BankAccountInput
from staffma.services.period_state_machine import PeriodStateMachine, PaymentReport, PaymentOutcome
from staffma.services.workflow_context import PayrollWorkflowContext, WorkflowStage
from staffma.services.batch_selection import BatchSelectionCoordinator
from staffma.services.payroll_settings_service import PayrollSettingsService
from staffma.services.employee_service import EmployeeService

__all__ = [
    "CancellationToken",
    "TaxEngineClient",
    "StatutoryComputation",
    "PaymentGatewayClient",
    "TransferDestination",
    "TransferResult",
    "DeductionReconciler",
    "PaymentChannelBinder",
    "BankAccountInput",
    "PeriodStateMachine",
    "PaymentReport",
    "PaymentOutcome",
    "PayrollWorkflowContext",
    "WorkflowStage",
    "BatchSelectionCoordinator",
    "PayrollSettingsService",
    "EmployeeService",
]
