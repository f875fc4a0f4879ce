"""
Staffma Payroll - API Routers
"""

from staffma.routers import employees, payroll

__all__ = ["employees", "payroll"]
