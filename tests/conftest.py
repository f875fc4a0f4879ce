"""
Staffma Payroll - Test Configuration

Pytest fixtures and configuration.
"""

import os

os.environ.setdefault("DATABASE_URL_ASYNC", "sqlite+aiosqlite:///./staffma_test.db")
os.environ.setdefault("TAX_ENGINE_URL", "https://tax-engine.test")
os.environ.setdefault("PAYMENT_GATEWAY_URL", "https://gateway.test")

from datetime import date
from decimal import Decimal
from typing import AsyncGenerator, List

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from staffma.database import Base, get_async_session
from staffma.dependencies import get_payment_gateway, get_tax_engine
from staffma.models.business import Business
from staffma.models.employee import Employee
from staffma.models.payroll import CalculationType, PayrollSettings
from staffma.services.payroll_settings_service import PayrollSettingsService
from staffma.services.period_state_machine import PeriodStateMachine
from tests.fixtures.collaborators import FakePaymentGateway, FakeTaxEngine
from tests.fixtures.factories import make_employee
from main import app


# Periods in 2024 are processable; the business was registered in January 2023
TODAY = date(2024, 12, 31)


@pytest_asyncio.fixture(scope="function")
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker, None]:
    """A fresh file-backed SQLite database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payroll.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    
    yield async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )
    
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def tax_engine() -> FakeTaxEngine:
    return FakeTaxEngine()


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def state_machine(db_session, tax_engine, gateway) -> PeriodStateMachine:
    return PeriodStateMachine(db_session, tax_engine=tax_engine, gateway=gateway, today=TODAY)


@pytest_asyncio.fixture(scope="function")
async def client(db_session: AsyncSession, tax_engine, gateway) -> AsyncGenerator[AsyncClient, None]:
    """Test client with database session and collaborator overrides."""
    
    async def override_get_session():
        yield db_session
    
    app.dependency_overrides[get_async_session] = override_get_session
    app.dependency_overrides[get_tax_engine] = lambda: tax_engine
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    
    app.dependency_overrides.clear()


# ===========================================
# DATA FIXTURES
# ===========================================

@pytest_asyncio.fixture
async def business(db_session: AsyncSession) -> Business:
    """Create a test business."""
    business = Business(
        name="Savannah Logistics Ltd",
        kra_pin="P051234567X",
        registration_date=date(2023, 1, 1),
    )
    db_session.add(business)
    await db_session.commit()
    await db_session.refresh(business)
    return business


@pytest_asyncio.fixture
async def payroll_settings(db_session: AsyncSession, business: Business) -> PayrollSettings:
    """House allowance 5,000 fixed and transport 10% of basic."""
    return await PayrollSettingsService(db_session).save_settings(
        business.id,
        allowances=[
            {"name": "House", "calculation": CalculationType.FIXED, "value": Decimal("5000")},
            {"name": "Transport", "calculation": CalculationType.PERCENTAGE, "value": Decimal("10")},
            {"name": "Hardship", "calculation": CalculationType.FIXED, "value": Decimal("2500"), "enabled": False},
        ],
        deductions=[],
        currency="KES",
    )


@pytest_asyncio.fixture
async def employees(db_session: AsyncSession, business: Business) -> List[Employee]:
    """Three active employees: two paid by bank, one by wallet."""
    return [
        await make_employee(db_session, business, "EMP001", "Achieng", "Otieno", "80000", "bank"),
        await make_employee(db_session, business, "EMP002", "Brian", "Kamau", "60000", "wallet"),
        await make_employee(db_session, business, "EMP003", "Carol", "Wanjiru", "45000", "bank"),
    ]
