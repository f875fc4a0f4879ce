"""
In-process stand-ins for the tax engine and payment gateway.

Used by service tests that need to control timing (blocking calls for
cancellation, hooks that run while a remote call is in flight) without an
HTTP layer. The HTTP clients themselves are tested against respx mocks in
collaborator_mock.py.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Awaitable, Callable, Dict, List, Optional, Set

from staffma.models.payroll import StatutoryKind
from staffma.services.payment_gateway import TransferDestination, TransferResult
from staffma.services.tax_engine import StatutoryComputation
from staffma.utils.error_handling import PaymentGatewayException, TaxEngineException


def _cents(value: Decimal) -> Decimal:
    return value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def flat_statutory(gross_salary: Decimal) -> Dict[StatutoryKind, Decimal]:
    """
    Deterministic statutory amounts for tests.

    PAYE 10% of gross, NHIF 500, NSSF 6% of gross capped at 1080,
    Housing Levy 1.5% of gross.
    """
    return {
        StatutoryKind.PAYE: _cents(gross_salary * Decimal("0.10")),
        StatutoryKind.NHIF: Decimal("500.00"),
        StatutoryKind.NSSF: min(_cents(gross_salary * Decimal("0.06")), Decimal("1080.00")),
        StatutoryKind.HOUSING_LEVY: _cents(gross_salary * Decimal("0.015")),
    }


@dataclass
class FakeTaxEngine:
    """Computes flat_statutory and records every call."""
    calls: List[Dict] = field(default_factory=list)
    fail_for: Set[uuid.UUID] = field(default_factory=set)
    before_return: Optional[Callable[[], Awaitable[None]]] = None
    block: Optional[asyncio.Event] = None
    started: asyncio.Event = field(default_factory=asyncio.Event)

    async def compute(self, employee_id, month, year, basic_salary, gross_salary, allowances):
        self.calls.append({
            "employee_id": employee_id,
            "month": month,
            "year": year,
            "gross_salary": gross_salary,
        })
        self.started.set()
        if self.block is not None:
            await self.block.wait()
        if employee_id in self.fail_for:
            raise TaxEngineException("Tax engine unavailable")
        if self.before_return is not None:
            hook, self.before_return = self.before_return, None
            await hook()
        return StatutoryComputation(
            taxable_income=_cents(gross_salary - Decimal("1080.00")),
            amounts=flat_statutory(gross_salary),
        )


@dataclass
class FakePaymentGateway:
    """
    Accepts every transfer unless told otherwise. Idempotent by reference:
    replaying an accepted reference returns the original result and moves
    no money.

    decline:   destination id (account number or wallet id) -> decline message
    errors:    destination ids for which the gateway is unreachable
    ambiguous: destination ids whose transfer goes through but whose
               response times out (consumed on first use)
    block:     when set, transfers (to block_targets, or all) wait on it
    """
    transfers: List[Dict] = field(default_factory=list)
    references: List[str] = field(default_factory=list)
    decline: Dict[str, str] = field(default_factory=dict)
    errors: Set[str] = field(default_factory=set)
    ambiguous: Set[str] = field(default_factory=set)
    block: Optional[asyncio.Event] = None
    block_targets: Set[str] = field(default_factory=set)
    started: asyncio.Event = field(default_factory=asyncio.Event)
    aborted: int = 0
    accepted: Dict[str, TransferResult] = field(default_factory=dict)

    async def transfer(
        self,
        reference: str,
        amount: Decimal,
        currency: str,
        destination: TransferDestination,
        narration: str = "",
    ) -> TransferResult:
        target = destination.wallet_id or destination.account_number
        self.references.append(reference)
        if self.block is not None and (not self.block_targets or target in self.block_targets):
            self.started.set()
            try:
                await self.block.wait()
            except asyncio.CancelledError:
                self.aborted += 1
                raise
        if target in self.errors:
            raise PaymentGatewayException("Gateway connection reset")
        if reference in self.accepted:
            return self.accepted[reference]
        self.transfers.append({
            "reference": reference,
            "amount": amount,
            "currency": currency,
            "channel": destination.channel,
            "target": target,
        })
        if target in self.decline:
            return TransferResult(success=False, message=self.decline[target])
        result = TransferResult(success=True, reference=f"TRF-{reference[:12].upper()}", message="Transfer queued")
        self.accepted[reference] = result
        if target in self.ambiguous:
            self.ambiguous.discard(target)
            raise PaymentGatewayException("Payment gateway request timed out")
        return result
