"""
Staffma Payroll - SQLAlchemy Models Package

This package contains all database models for the application.
"""

from staffma.models.base import BaseModel, TimestampMixin
from staffma.models.business import Business
from staffma.models.employee import (
    Employee,
    EmployeeStatus,
    EmployeeBankAccount,
    BankAccountType,
    EmployeeWallet,
    PaymentChannelKind,
)
from staffma.models.payroll import (
    CalculationType,
    RecordStatus,
    PeriodStatus,
    LineType,
    DeductionClass,
    StatutoryKind,
    CustomDeductionType,
    CustomDeductionStatus,
    FailureReason,
    PayrollSettings,
    AllowanceDefinition,
    DeductionDefinition,
    PayrollPeriod,
    PayrollRecord,
    PayrollLineItem,
    CustomDeduction,
    DeductionInstallment,
)

__all__ = [
    "BaseModel",
    "TimestampMixin",
    "Business",
    "Employee",
    "EmployeeStatus",
    "EmployeeBankAccount",
    "BankAccountType",
    "EmployeeWallet",
    "PaymentChannelKind",
    "CalculationType",
    "RecordStatus",
    "PeriodStatus",
    "LineType",
    "DeductionClass",
    "StatutoryKind",
    "CustomDeductionType",
    "CustomDeductionStatus",
    "FailureReason",
    "PayrollSettings",
    "AllowanceDefinition",
    "DeductionDefinition",
    "PayrollPeriod",
    "PayrollRecord",
    "PayrollLineItem",
    "CustomDeduction",
    "DeductionInstallment",
]
