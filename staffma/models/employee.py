"""
Staffma Payroll - Employee Models

Employees and their payment channels. An employee is paid either by bank
transfer (one or more accounts, at most one primary) or by mobile wallet,
never both.
"""

import uuid
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Dict, List, Optional

from sqlalchemy import (
    Boolean, Date, ForeignKey, Integer, String, Uuid,
    Enum as SQLEnum, JSON, UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from staffma.models.base import BaseModel, money_column

if TYPE_CHECKING:
    from staffma.models.business import Business
    from staffma.models.payroll import CustomDeduction


# ===========================================
# ENUMS
# ===========================================

class EmployeeStatus(str, Enum):
    """Employment status. Only active employees are included in payroll."""
    ACTIVE = "active"
    INACTIVE = "inactive"


class BankAccountType(str, Enum):
    """Bank account type."""
    SAVINGS = "savings"
    CURRENT = "current"


class PaymentChannelKind(str, Enum):
    """Disbursement channel of an employee."""
    BANK = "bank"
    WALLET = "wallet"
    NONE = "none"


# ===========================================
# EMPLOYEE
# ===========================================

class Employee(BaseModel):
    """Employee included in a business's payroll."""
    
    __tablename__ = "employees"
    
    business_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    
    employee_number: Mapped[str] = mapped_column(
        String(50), nullable=False,
        comment="Internal staff number",
    )
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    phone_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    department: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    position: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    start_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[EmployeeStatus] = mapped_column(
        SQLEnum(EmployeeStatus),
        default=EmployeeStatus.ACTIVE,
        nullable=False,
    )
    
    # Salary
    basic_salary: Mapped[Decimal] = money_column(default=Decimal("0"))
    allowance_overrides: Mapped[Optional[Dict[str, str]]] = mapped_column(
        JSON, nullable=True,
        comment="Per-employee allowance amounts keyed by allowance name",
    )
    
    # Bumped by every payment channel write; stale writers lose the update
    channel_version: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    
    # Relationships
    business: Mapped["Business"] = relationship("Business", back_populates="employees")
    bank_accounts: Mapped[List["EmployeeBankAccount"]] = relationship(
        "EmployeeBankAccount",
        back_populates="employee",
        cascade="all, delete-orphan",
        order_by="EmployeeBankAccount.position",
        lazy="selectin",
    )
    wallet: Mapped[Optional["EmployeeWallet"]] = relationship(
        "EmployeeWallet",
        back_populates="employee",
        cascade="all, delete-orphan",
        uselist=False,
        lazy="selectin",
    )
    custom_deductions: Mapped[List["CustomDeduction"]] = relationship(
        "CustomDeduction", back_populates="employee", cascade="all, delete-orphan",
    )
    
    __table_args__ = (
        UniqueConstraint('business_id', 'employee_number', name='uq_employee_business_number'),
    )
    
    @property
    def full_name(self) -> str:
        """Get employee's full name."""
        return f"{self.first_name} {self.last_name}"
    
    @property
    def payment_channel(self) -> PaymentChannelKind:
        """Which channel variant is populated."""
        if self.wallet is not None:
            return PaymentChannelKind.WALLET
        if self.bank_accounts:
            return PaymentChannelKind.BANK
        return PaymentChannelKind.NONE
    
    def __repr__(self) -> str:
        return f"<Employee(id={self.id}, number={self.employee_number}, name={self.full_name})>"


# ===========================================
# EMPLOYEE BANK ACCOUNT
# ===========================================

class EmployeeBankAccount(BaseModel):
    """Employee bank account for salary payments."""
    
    __tablename__ = "employee_bank_accounts"
    
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    
    bank_name: Mapped[str] = mapped_column(String(100), nullable=False)
    account_number: Mapped[str] = mapped_column(String(30), nullable=False)
    account_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    account_type: Mapped[BankAccountType] = mapped_column(
        SQLEnum(BankAccountType),
        default=BankAccountType.SAVINGS,
        nullable=False,
    )
    is_primary: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False,
        comment="Primary account for salary payment",
    )
    position: Mapped[int] = mapped_column(default=0, nullable=False)
    
    employee: Mapped["Employee"] = relationship(
        "Employee", back_populates="bank_accounts",
    )
    
    def __repr__(self) -> str:
        return f"<EmployeeBankAccount(employee_id={self.employee_id}, bank={self.bank_name})>"


# ===========================================
# EMPLOYEE WALLET
# ===========================================

class EmployeeWallet(BaseModel):
    """Mobile money wallet (e.g. M-Pesa) for salary payments."""
    
    __tablename__ = "employee_wallets"
    
    employee_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("employees.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    wallet_id: Mapped[str] = mapped_column(
        String(100), nullable=False, unique=True,
        comment="Provider wallet identifier; one wallet belongs to one employee",
    )
    phone_number: Mapped[str] = mapped_column(
        String(15), nullable=False,
        comment="Normalised to 254XXXXXXXXX",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    
    employee: Mapped["Employee"] = relationship("Employee", back_populates="wallet")
    
    def __repr__(self) -> str:
        return f"<EmployeeWallet(employee_id={self.employee_id}, phone={self.phone_number})>"
