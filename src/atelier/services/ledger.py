"""Credit reconciliation helpers shared by submission and job execution.

Charging happens inside the caller's unit of work, together with the row
insert or reset it pays for. Refunds are guarded by a flag stored in the job
metadata and written in the same transaction as the ledger credit, so a
refund is applied at most once however often reconciliation runs.
"""

from decimal import Decimal
from typing import Optional

import structlog

from atelier.models.creation import Creation
from atelier.models.metadata import LandscapeFailed
from atelier.models.provider import Provider
from atelier.services.exceptions import InsufficientCreditsError
from atelier.uow import UnitOfWork, UowFactory

logger = structlog.get_logger()

CREDIT_QUANTUM = Decimal("0.0001")


async def charge(
    uow: UnitOfWork, user_id: int, cost: Decimal, initial_balance: Decimal
) -> Decimal:
    """Debit `cost` from the user, creating the account on first use.

    Args:
        uow: Active unit of work (the debit commits with the caller's writes)
        user_id: Paying user
        cost: Non-negative job cost
        initial_balance: Starting balance for a user without an account

    Returns:
        Balance after the debit

    Raises:
        InsufficientCreditsError: Balance is lower than the cost
    """
    balance = await uow.credits.ensure_account(user_id, initial_balance)
    if cost <= 0:
        return balance
    new_balance = await uow.credits.debit_if_sufficient(user_id, cost)
    if new_balance is None:
        current = await uow.credits.get_balance(user_id)
        raise InsufficientCreditsError(required=cost, current=current or Decimal("0"))
    return new_balance


async def refund_once(uow: UnitOfWork, creation: Creation) -> Decimal:
    """Refund a locked creation's paid attempt unless it was refunded already.

    Args:
        uow: Active unit of work holding the row lock
        creation: Creation loaded with `get_for_update`

    Returns:
        Amount credited back (zero when nothing was owed)
    """
    meta = creation.job_meta
    if not meta.is_paid or meta.credits_refunded:
        return Decimal("0")
    creation.mark_refunded()
    await uow.creations.save(creation)
    balance = await uow.credits.adjust(creation.user_id, meta.credit_cost)
    logger.info(
        "credits.refunded",
        creation_id=creation.id,
        user_id=creation.user_id,
        amount=str(meta.credit_cost),
        balance=str(balance),
    )
    return meta.credit_cost


async def refund_creation_once(uow_factory: UowFactory, creation_id: int) -> Decimal:
    """Refund a creation in its own transaction (after the failure is recorded)."""
    async with await uow_factory() as uow:
        creation = await uow.creations.get_for_update(creation_id)
        if creation is None:
            return Decimal("0")
        return await refund_once(uow, creation)


async def refund_landscape_once(uow: UnitOfWork, creation: Creation) -> Decimal:
    """Refund a failed landscape attached to a locked creation, at most once."""
    meta = creation.job_meta
    state = meta.landscape
    if not isinstance(state, LandscapeFailed) or state.credits_refunded:
        return Decimal("0")
    if state.credit_cost <= 0:
        return Decimal("0")
    meta.landscape = state.model_copy(update={"credits_refunded": True})
    creation.set_job_meta(meta)
    await uow.creations.save(creation)
    balance = await uow.credits.adjust(creation.user_id, state.credit_cost)
    logger.info(
        "credits.landscape_refunded",
        creation_id=creation.id,
        user_id=creation.user_id,
        amount=str(state.credit_cost),
        balance=str(balance),
    )
    return state.credit_cost


async def credit_provider_owner(
    uow_factory: UowFactory,
    provider: Provider,
    payer_user_id: int,
    charged: Decimal,
    share: Decimal,
) -> Optional[Decimal]:
    """Pay the provider owner their share of a completed job. Best-effort.

    Failures are logged and swallowed: a completed job stays completed.

    Returns:
        Amount credited, or None when nothing was paid
    """
    owner_id = provider.owner_user_id
    if owner_id is None or owner_id == payer_user_id or charged <= 0 or share <= 0:
        return None

    amount = (charged * share).quantize(CREDIT_QUANTUM)
    if amount <= 0:
        return None

    try:
        async with await uow_factory() as uow:
            await uow.credits.ensure_account(owner_id, Decimal("0"))
            await uow.credits.adjust(owner_id, amount)
    except Exception as e:
        logger.warning(
            "credits.revenue_share.failed",
            provider_id=provider.id,
            owner_user_id=owner_id,
            amount=str(amount),
            error=str(e),
        )
        return None

    logger.info(
        "credits.revenue_share.paid",
        provider_id=provider.id,
        owner_user_id=owner_id,
        amount=str(amount),
    )
    return amount
