"""
Staffma Payroll - Business Model

The employer whose payroll is being run. Every employee, setting and
payroll period is scoped to one business.
"""

from datetime import date
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import Boolean, Date, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from staffma.models.base import BaseModel

if TYPE_CHECKING:
    from staffma.models.employee import Employee


class Business(BaseModel):
    """Employer account."""
    
    __tablename__ = "businesses"
    
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    kra_pin: Mapped[Optional[str]] = mapped_column(
        String(20), nullable=True,
        comment="KRA Personal Identification Number",
    )
    registration_date: Mapped[date] = mapped_column(
        Date, nullable=False,
        comment="Payroll cannot be processed for months before this date",
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    
    employees: Mapped[List["Employee"]] = relationship(
        "Employee", back_populates="business", cascade="all, delete-orphan",
    )
    
    def __repr__(self) -> str:
        return f"<Business(id={self.id}, name={self.name})>"
