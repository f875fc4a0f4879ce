"""
Staffma Payroll - Employee Service

Employee records used by the payroll workflow.
"""

import uuid
from datetime import date
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from staffma.models.business import Business
from staffma.models.employee import Employee, EmployeeStatus
from staffma.utils.error_handling import (
    EmployeeNotFoundException,
    ErrorCode,
    NotFoundException,
    ValidationException,
    validate_amount,
)


class EmployeeService:
    """Service for managing employees."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def create_business(self, name: str, registration_date: date, kra_pin: Optional[str] = None) -> Business:
        business = Business(name=name, registration_date=registration_date, kra_pin=kra_pin)
        self.db.add(business)
        await self.db.commit()
        await self.db.refresh(business)
        return business

    async def create_employee(self, business_id: uuid.UUID, data: Dict[str, Any]) -> Employee:
        """Create a new employee."""
        business = await self.db.get(Business, business_id)
        if business is None:
            raise NotFoundException("Business", business_id)

        data = dict(data)
        data["basic_salary"] = validate_amount(data.get("basic_salary", 0), "basic_salary", allow_zero=True)
        if data.get("allowance_overrides"):
            # JSON column: store amounts as strings
            data["allowance_overrides"] = {
                name: str(validate_amount(value, f"allowance_overrides.{name}", allow_zero=True))
                for name, value in data["allowance_overrides"].items()
            }

        # Check for duplicate employee number
        existing = await self.db.execute(
            select(Employee.id).where(
                and_(
                    Employee.business_id == business_id,
                    Employee.employee_number == data["employee_number"],
                )
            )
        )
        if existing.scalar_one_or_none():
            raise ValidationException(
                f"Employee number {data['employee_number']} already exists",
                field="employee_number",
                code=ErrorCode.DUPLICATE_ENTRY,
            )

        employee = Employee(business_id=business_id, **data)
        self.db.add(employee)
        await self.db.commit()
        return await self.get_employee(business_id, employee.id)

    async def get_employee(self, business_id: uuid.UUID, employee_id: uuid.UUID) -> Employee:
        """Get employee by ID."""
        result = await self.db.execute(
            select(Employee)
            .where(
                and_(
                    Employee.id == employee_id,
                    Employee.business_id == business_id,
                )
            )
            .execution_options(populate_existing=True)
        )
        employee = result.scalar_one_or_none()
        if employee is None:
            raise EmployeeNotFoundException(employee_id)
        return employee

    async def list_employees(
        self,
        business_id: uuid.UUID,
        status: Optional[EmployeeStatus] = None,
        search: Optional[str] = None,
        page: int = 1,
        per_page: int = 50,
    ) -> Tuple[List[Employee], int]:
        """List employees with filters and pagination."""
        query = select(Employee).where(Employee.business_id == business_id)

        if status:
            query = query.where(Employee.status == status)

        if search:
            search_term = f"%{search}%"
            query = query.where(
                or_(
                    Employee.first_name.ilike(search_term),
                    Employee.last_name.ilike(search_term),
                    Employee.email.ilike(search_term),
                    Employee.employee_number.ilike(search_term),
                )
            )

        total = await self.db.scalar(select(func.count()).select_from(query.subquery()))

        query = query.order_by(Employee.last_name, Employee.first_name)
        query = query.offset((page - 1) * per_page).limit(per_page)
        result = await self.db.execute(query)
        return list(result.scalars().all()), total

    async def set_status(self, business_id: uuid.UUID, employee_id: uuid.UUID, status: EmployeeStatus) -> Employee:
        employee = await self.get_employee(business_id, employee_id)
        employee.status = status
        await self.db.commit()
        return await self.get_employee(business_id, employee_id)
