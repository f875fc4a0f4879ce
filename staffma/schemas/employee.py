"""
Staffma Payroll - Employee Schemas

Pydantic schemas for employees and their payment channels.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, EmailStr, Field

from staffma.models.employee import BankAccountType, EmployeeStatus, PaymentChannelKind


# ===========================================
# PAYMENT CHANNEL SCHEMAS
# ===========================================

class BankAccountBase(BaseModel):
    """Base bank account schema."""
    bank_name: str = Field(..., min_length=1, max_length=100)
    account_number: str = Field(..., min_length=1, max_length=30)
    account_name: Optional[str] = Field(None, max_length=200)
    account_type: BankAccountType = BankAccountType.SAVINGS
    is_primary: bool = False


class BankAccountCreate(BankAccountBase):
    """Add bank account request."""
    pass


class BankAccountResponse(BankAccountBase):
    """Bank account response."""
    id: UUID
    created_at: datetime
    
    class Config:
        from_attributes = True


class BankChannelRequest(BaseModel):
    """Switch an employee to bank transfer."""
    accounts: List[BankAccountBase]


class WalletChannelRequest(BaseModel):
    """Switch an employee to mobile wallet."""
    wallet_id: str
    phone_number: str
    is_active: bool = True


class WalletResponse(BaseModel):
    """Wallet response."""
    id: UUID
    wallet_id: str
    phone_number: str
    is_active: bool
    
    class Config:
        from_attributes = True


class PaymentDestinationResponse(BaseModel):
    """Resolved transfer destination."""
    channel: PaymentChannelKind
    bank_name: Optional[str] = None
    account_number: Optional[str] = None
    account_name: Optional[str] = None
    wallet_id: Optional[str] = None
    phone_number: Optional[str] = None
    
    class Config:
        from_attributes = True


# ===========================================
# EMPLOYEE SCHEMAS
# ===========================================

class EmployeeBase(BaseModel):
    """Base employee schema."""
    employee_number: str = Field(..., min_length=1, max_length=50)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone_number: Optional[str] = None
    department: Optional[str] = None
    position: Optional[str] = None
    start_date: date
    status: EmployeeStatus = EmployeeStatus.ACTIVE
    basic_salary: Decimal = Decimal("0")
    allowance_overrides: Optional[Dict[str, Decimal]] = None


class EmployeeCreate(EmployeeBase):
    """Create employee request."""
    pass


class EmployeeStatusUpdate(BaseModel):
    status: EmployeeStatus


class EmployeeResponse(EmployeeBase):
    """Employee response."""
    id: UUID
    business_id: UUID
    created_at: datetime
    updated_at: datetime
    
    full_name: str
    payment_channel: PaymentChannelKind
    bank_accounts: List[BankAccountResponse] = []
    wallet: Optional[WalletResponse] = None
    
    class Config:
        from_attributes = True


class EmployeeListResponse(BaseModel):
    """Paginated employee list."""
    items: List[EmployeeResponse]
    total: int
    page: int
    per_page: int
