"""
Wallet manager.

Balances only move inside a larger ledger transaction: callers load the
wallet, apply ``credit`` / ``debit`` and write it back together with their own
audit record, so the balance check and the write commit as one step.
"""

import logging
from datetime import datetime
from typing import Optional

from .config import INITIAL_COINS
from .context import EconomyContext
from .errors import EconomyError, ErrorCode
from .ledger import LedgerTransaction
from .models import Wallet

logger = logging.getLogger(__name__)

BALANCE_FIELDS = ("coins", "diamonds")


def new_wallet(user_id: str, now: datetime, coins: int = 0) -> Wallet:
    return Wallet(user_id=user_id, coins=coins, diamonds=0, updated_at=now)


async def load_wallet(tx: LedgerTransaction, user_id: str, now: datetime) -> Wallet:
    """The user's wallet, or an empty one (no welcome grant) if it was never created"""
    wallet = await tx.get(Wallet, user_id)
    return wallet if wallet is not None else new_wallet(user_id, now)


def credit(wallet: Wallet, field: str, amount: int) -> None:
    if field not in BALANCE_FIELDS:
        raise ValueError(f"Unknown balance field {field}")
    if amount < 0:
        raise ValueError("Credit amount must not be negative")
    setattr(wallet, field, getattr(wallet, field) + amount)


def debit(
    wallet: Wallet,
    field: str,
    amount: int,
    error: ErrorCode = ErrorCode.INSUFFICIENT_BALANCE,
) -> None:
    if field not in BALANCE_FIELDS:
        raise ValueError(f"Unknown balance field {field}")
    if amount < 0:
        raise ValueError("Debit amount must not be negative")
    current = getattr(wallet, field)
    if current < amount:
        raise EconomyError(error)
    setattr(wallet, field, current - amount)


def stamp(wallet: Wallet, transaction_id: str, now: datetime) -> None:
    wallet.last_transaction_id = transaction_id
    wallet.updated_at = now


async def create_wallet(ctx: EconomyContext, user_id: str) -> bool:
    """Create the wallet with the welcome grant. Returns False if it already existed."""
    if not user_id:
        raise EconomyError(ErrorCode.INVALID_REQUEST, "Missing userId")

    async def _create(tx: LedgerTransaction) -> bool:
        if await tx.get(Wallet, user_id) is not None:
            return False
        await tx.put(new_wallet(user_id, ctx.now(), coins=INITIAL_COINS))
        return True

    created = await ctx.store.transaction(_create)
    if created:
        logger.info(f"Created wallet for {user_id} with {INITIAL_COINS} coins")
    return created


async def get_wallet(ctx: EconomyContext, user_id: str) -> Optional[Wallet]:
    return await ctx.store.read(Wallet, user_id)
