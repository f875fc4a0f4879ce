"""
Staffma Payroll - Base Model

Declarative base for payroll tables: UUID keys, timestamps and the money
column type shared by salaries, line items and deductions.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import DateTime, Numeric, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from staffma.database import Base


# KES amounts, two decimal places
MONEY = Numeric(15, 2, asdecimal=True)


def money_column(default: Optional[Decimal] = None, **kwargs: Any) -> Any:
    """Non-null money column, optionally defaulted."""
    if default is not None:
        kwargs["default"] = default
    return mapped_column(MONEY, nullable=False, **kwargs)


class TimestampMixin:
    """created_at / updated_at maintained by the database."""
    
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class BaseModel(Base, TimestampMixin):
    """Abstract payroll table with a client-generated UUID key."""
    
    __abstract__ = True
    
    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    
    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.id}>"
