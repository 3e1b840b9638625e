"""Credit ledger repository.

Balances are adjusted with a single UPDATE whose new value is computed by the
database, so concurrent adjustments for the same user are never lost to a
stale application-side read. Results are floored at zero.
"""

from decimal import Decimal

from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from atelier.core.timezone import utcnow
from atelier.models.credit import UserCredits


class CreditLedgerRepository:
    """Repository for per-user credit balances."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_balance(self, user_id: int) -> Decimal | None:
        """Read the current balance.

        Args:
            user_id: Owner of the balance

        Returns:
            Balance if the account exists, None otherwise
        """
        result = await self.session.execute(
            select(UserCredits.balance).where(UserCredits.user_id == user_id)  # type: ignore[arg-type]
        )
        balance = result.scalar_one_or_none()
        return Decimal(balance) if balance is not None else None

    async def ensure_account(self, user_id: int, initial_balance: Decimal) -> Decimal:
        """Return the balance, creating the account with `initial_balance` if missing."""
        balance = await self.get_balance(user_id)
        if balance is not None:
            return balance
        starting = max(Decimal(initial_balance), Decimal("0"))
        self.session.add(UserCredits(user_id=user_id, balance=starting, updated_at=utcnow()))
        await self.session.flush()
        return starting

    async def debit_if_sufficient(self, user_id: int, amount: Decimal) -> Decimal | None:
        """Atomically subtract `amount` only when the balance covers it.

        Args:
            user_id: Owner of the balance
            amount: Non-negative amount to debit

        Returns:
            Balance after the debit, or None when the account is missing or short
        """
        amount = Decimal(amount)
        result = await self.session.execute(
            update(UserCredits)
            .where(
                UserCredits.user_id == user_id,  # type: ignore[arg-type]
                UserCredits.balance >= amount,  # type: ignore[operator]
            )
            .values(balance=UserCredits.balance - amount, updated_at=utcnow())  # type: ignore[operator]
            .returning(UserCredits.balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()
        return Decimal(new_balance) if new_balance is not None else None

    async def adjust(self, user_id: int, delta: Decimal) -> Decimal:
        """Atomically add `delta` (negative to debit) and return the new balance.

        The stored value never drops below zero. A missing account is created
        holding max(delta, 0).

        Args:
            user_id: Owner of the balance
            delta: Signed amount to apply

        Returns:
            Balance after the adjustment
        """
        delta = Decimal(delta)
        adjusted = UserCredits.balance + delta  # type: ignore[operator]
        result = await self.session.execute(
            update(UserCredits)
            .where(UserCredits.user_id == user_id)  # type: ignore[arg-type]
            .values(balance=case((adjusted < 0, 0), else_=adjusted), updated_at=utcnow())
            .returning(UserCredits.balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is not None:
            return Decimal(new_balance)

        starting = max(delta, Decimal("0"))
        self.session.add(UserCredits(user_id=user_id, balance=starting, updated_at=utcnow()))
        await self.session.flush()
        return starting
