"""
Staffma Payroll - Schemas Package

Pydantic schemas for request/response validation.
"""
