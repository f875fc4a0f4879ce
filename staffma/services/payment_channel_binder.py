"""
Staffma Payroll - Payment Channel Binder

Keeps every employee on at most one payment channel: bank accounts or a
mobile wallet, never both. Switching channel is a single transaction that
removes the old channel and writes the new one; if any part fails the
transaction is rolled back and the previous channel is left untouched.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from staffma.models.employee import (
    BankAccountType,
    Employee,
    EmployeeBankAccount,
    EmployeeWallet,
    PaymentChannelKind,
)
from staffma.services.cancellation import CancellationToken
from staffma.services.payment_gateway import TransferDestination
from staffma.utils.error_handling import (
    ChannelConflictException,
    ConcurrencyException,
    EmployeeNotFoundException,
    ValidationException,
    validate_phone_number,
)

logger = logging.getLogger(__name__)


@dataclass
class BankAccountInput:
    """Bank account supplied by a caller."""
    bank_name: str
    account_number: str
    account_type: BankAccountType = BankAccountType.SAVINGS
    is_primary: bool = False
    account_name: Optional[str] = None


def _validate_accounts(accounts: List[BankAccountInput]) -> None:
    if not accounts:
        raise ValidationException(
            "At least one bank account is required; use the clear channel operation to remove all accounts",
            field="accounts",
        )
    for index, account in enumerate(accounts):
        if not account.bank_name or not account.bank_name.strip():
            raise ValidationException("Bank name is required", field=f"accounts.{index}.bank_name")
        number = (account.account_number or "").replace(" ", "")
        if not number.isdigit():
            raise ValidationException(
                f"Invalid account number: {account.account_number}",
                field=f"accounts.{index}.account_number",
            )
    if sum(1 for account in accounts if account.is_primary) > 1:
        raise ValidationException("Only one bank account can be primary", field="accounts")


def resolve_primary(employee: Employee) -> Optional[TransferDestination]:
    """
    Transfer destination of an employee, or None when payment is blocked.

    Bank accounts: the primary account, else the first one.
    Wallet: only when active.
    """
    wallet = employee.wallet
    if wallet is not None:
        if not wallet.is_active:
            return None
        return TransferDestination(
            channel=PaymentChannelKind.WALLET,
            wallet_id=wallet.wallet_id,
            phone_number=wallet.phone_number,
        )
    if employee.bank_accounts:
        account = next(
            (a for a in employee.bank_accounts if a.is_primary),
            employee.bank_accounts[0],
        )
        return TransferDestination(
            channel=PaymentChannelKind.BANK,
            bank_name=account.bank_name,
            account_number=account.account_number,
            account_name=account.account_name or employee.full_name,
        )
    return None


class PaymentChannelBinder:
    """Atomic payment channel operations for employees."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_employee(self, business_id: uuid.UUID, employee_id: uuid.UUID) -> Employee:
        """Employee with freshly loaded channel state."""
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

    async def _bump_channel_version(self, employee: Employee) -> None:
        """
        Compare-and-swap on Employee.channel_version.

        Must run inside the write's transaction. Raises ConcurrencyException
        when another writer changed the channel after `employee` was read.
        """
        employee_id = employee.id
        expected = employee.channel_version
        result = await self.db.execute(
            update(Employee)
            .where(
                and_(
                    Employee.id == employee_id,
                    Employee.channel_version == expected,
                )
            )
            .values(channel_version=expected + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            logger.warning(f"Employee {employee_id}: payment channel changed concurrently")
            raise ConcurrencyException(
                f"Payment channel of employee {employee_id} was changed by another request",
                resource_type="Employee",
                details={"employee_id": str(employee_id), "expected_version": expected},
            )

    async def _commit_or_rollback(self, token: CancellationToken, operation: str) -> None:
        try:
            token.raise_if_cancelled(operation)
            await self.db.commit()
        except BaseException:
            await self.db.rollback()
            raise

    # ===========================================
    # ATOMIC CHANNEL SWITCHES
    # ===========================================

    async def set_bank_channel(
        self,
        business_id: uuid.UUID,
        employee_id: uuid.UUID,
        accounts: List[BankAccountInput],
        token: Optional[CancellationToken] = None,
    ) -> Employee:
        """Replace the employee's channel with the given bank accounts."""
        token = token or CancellationToken()
        _validate_accounts(accounts)
        token.raise_if_cancelled("SetBankChannel")

        employee = await self.get_employee(business_id, employee_id)
        previous = employee.payment_channel

        try:
            await self._bump_channel_version(employee)
            employee.wallet = None
            employee.bank_accounts = [
                EmployeeBankAccount(
                    bank_name=account.bank_name.strip(),
                    account_number=account.account_number.replace(" ", ""),
                    account_name=account.account_name,
                    account_type=account.account_type,
                    is_primary=account.is_primary,
                    position=index,
                )
                for index, account in enumerate(accounts)
            ]
            await self.db.flush()
        except BaseException:
            await self.db.rollback()
            raise
        await self._commit_or_rollback(token, "SetBankChannel")

        logger.info(
            f"Employee {employee_id}: payment channel {previous.value} -> bank "
            f"({len(accounts)} account(s))"
        )
        return await self.get_employee(business_id, employee_id)

    async def set_wallet_channel(
        self,
        business_id: uuid.UUID,
        employee_id: uuid.UUID,
        wallet_id: str,
        phone_number: str,
        is_active: bool = True,
        token: Optional[CancellationToken] = None,
    ) -> Employee:
        """Replace the employee's channel with a mobile wallet."""
        token = token or CancellationToken()
        normalised_phone = validate_phone_number(phone_number)
        if not wallet_id or not wallet_id.strip():
            raise ValidationException("Wallet ID is required", field="wallet_id")
        token.raise_if_cancelled("SetWalletChannel")

        employee = await self.get_employee(business_id, employee_id)
        previous = employee.payment_channel

        try:
            await self._bump_channel_version(employee)
            employee.bank_accounts = []
            if employee.wallet is not None:
                employee.wallet.wallet_id = wallet_id.strip()
                employee.wallet.phone_number = normalised_phone
                employee.wallet.is_active = is_active
            else:
                employee.wallet = EmployeeWallet(
                    wallet_id=wallet_id.strip(),
                    phone_number=normalised_phone,
                    is_active=is_active,
                )
            await self.db.flush()
        except BaseException:
            await self.db.rollback()
            raise
        await self._commit_or_rollback(token, "SetWalletChannel")

        logger.info(f"Employee {employee_id}: payment channel {previous.value} -> wallet")
        return await self.get_employee(business_id, employee_id)

    async def clear_channel(
        self,
        business_id: uuid.UUID,
        employee_id: uuid.UUID,
        kind: Optional[PaymentChannelKind] = None,
        token: Optional[CancellationToken] = None,
    ) -> Employee:
        """
        Remove the employee's channel.

        With `kind` given only that variant is removed; asking to clear a
        variant that is not populated leaves the employee unchanged.
        """
        token = token or CancellationToken()
        token.raise_if_cancelled("ClearChannel")
        employee = await self.get_employee(business_id, employee_id)
        previous = employee.payment_channel

        try:
            await self._bump_channel_version(employee)
            if kind in (None, PaymentChannelKind.BANK, PaymentChannelKind.NONE):
                employee.bank_accounts = []
            if kind in (None, PaymentChannelKind.WALLET, PaymentChannelKind.NONE):
                employee.wallet = None
            await self.db.flush()
        except BaseException:
            await self.db.rollback()
            raise
        await self._commit_or_rollback(token, "ClearChannel")

        logger.info(f"Employee {employee_id}: payment channel {previous.value} cleared")
        return await self.get_employee(business_id, employee_id)

    async def resolve_primary(
        self,
        business_id: uuid.UUID,
        employee_id: uuid.UUID,
    ) -> Optional[TransferDestination]:
        employee = await self.get_employee(business_id, employee_id)
        return resolve_primary(employee)

    # ===========================================
    # NON-ATOMIC EDITS (same channel only)
    # ===========================================

    async def add_bank_account(
        self,
        business_id: uuid.UUID,
        employee_id: uuid.UUID,
        account: BankAccountInput,
    ) -> Employee:
        """Append one bank account. Refused while the employee has a wallet."""
        _validate_accounts([account])
        employee = await self.get_employee(business_id, employee_id)
        if employee.wallet is not None:
            logger.warning(f"Employee {employee_id}: bank account add refused, wallet configured")
            raise ChannelConflictException(employee_id, "wallet", "bank")

        try:
            await self._bump_channel_version(employee)
            # If setting as primary, unset other primary accounts
            if account.is_primary:
                for existing in employee.bank_accounts:
                    existing.is_primary = False

            employee.bank_accounts.append(EmployeeBankAccount(
                bank_name=account.bank_name.strip(),
                account_number=account.account_number.replace(" ", ""),
                account_name=account.account_name,
                account_type=account.account_type,
                is_primary=account.is_primary,
                position=len(employee.bank_accounts),
            ))
            await self.db.commit()
        except BaseException:
            await self.db.rollback()
            raise
        return await self.get_employee(business_id, employee_id)

    async def save_wallet(
        self,
        business_id: uuid.UUID,
        employee_id: uuid.UUID,
        wallet_id: str,
        phone_number: str,
        is_active: bool = True,
    ) -> Employee:
        """Create or edit the wallet. Refused while the employee has bank accounts."""
        normalised_phone = validate_phone_number(phone_number)
        employee = await self.get_employee(business_id, employee_id)
        if employee.bank_accounts:
            logger.warning(f"Employee {employee_id}: wallet update refused, bank accounts configured")
            raise ChannelConflictException(employee_id, "bank", "wallet")

        try:
            await self._bump_channel_version(employee)
            if employee.wallet is None:
                employee.wallet = EmployeeWallet(
                    wallet_id=wallet_id.strip(),
                    phone_number=normalised_phone,
                    is_active=is_active,
                )
            else:
                employee.wallet.wallet_id = wallet_id.strip()
                employee.wallet.phone_number = normalised_phone
                employee.wallet.is_active = is_active
            await self.db.commit()
        except BaseException:
            await self.db.rollback()
            raise
        return await self.get_employee(business_id, employee_id)
