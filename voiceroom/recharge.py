"""
Recharge orders: created -> completed, exactly once.

The gateway order is created before any ledger write, so a gateway failure
leaves nothing behind. Verification checks the payment signature, then
completes the order and credits coins in one transaction; the completed
status is what makes a resubmitted verification harmless. Agency commission
runs afterwards in its own transaction and can be re-driven.
"""

import logging
from typing import List

from .agency import record_recharge
from .config import get_coins_for_pack, get_vip_level
from .context import EconomyContext
from .errors import EconomyError, ErrorCode
from .ledger import LedgerTransaction
from .models import OrderStatus, RechargeOrder, UserProfile
from .wallet import credit, load_wallet, stamp

logger = logging.getLogger(__name__)


async def create_order(ctx: EconomyContext, user_id: str, amount_inr) -> dict:
    if not user_id:
        raise EconomyError(ErrorCode.INVALID_REQUEST, "Missing userId")
    if isinstance(amount_inr, bool) or not isinstance(amount_inr, (int, float)):
        raise EconomyError(ErrorCode.INVALID_PACK)
    coins = get_coins_for_pack(amount_inr)
    if coins is None or amount_inr < 1:
        raise EconomyError(ErrorCode.INVALID_PACK)
    if not ctx.gateway.configured:
        raise EconomyError(ErrorCode.PAYMENTS_NOT_CONFIGURED)

    now = ctx.now()
    amount_paise = round(amount_inr * 100)
    receipt = f"recharge_{user_id}_{int(now.timestamp() * 1000)}"[:40]
    order_id = await ctx.gateway.create_order(amount_paise, receipt, {"userId": user_id})

    await ctx.store.save(
        RechargeOrder(
            order_id=order_id,
            user_id=user_id,
            amount_paise=amount_paise,
            amount_inr=amount_inr,
            coins_to_credit=coins,
            status=OrderStatus.CREATED,
            created_at=now,
        )
    )
    logger.info(f"Recharge order {order_id} created for {user_id}: ₹{amount_inr} -> {coins} coins")
    return {"order_id": order_id, "amount_paise": amount_paise, "key_id": ctx.gateway.key_id}


async def verify_payment(ctx: EconomyContext, user_id: str, order_id: str, payment_id: str, signature: str) -> dict:
    """Credit a paid order's coins once; a second verification raises REPLAY"""
    if not user_id or not order_id or not payment_id or not signature:
        raise EconomyError(ErrorCode.INVALID_REQUEST, "Missing payment details")

    ctx.gateway.verify_signature(order_id, payment_id, signature)

    async def _complete(tx: LedgerTransaction) -> dict:
        order = await tx.get(RechargeOrder, order_id)
        if order is None or order.user_id != user_id:
            raise EconomyError(ErrorCode.ORDER_NOT_FOUND)
        if order.status == OrderStatus.COMPLETED:
            raise EconomyError(ErrorCode.REPLAY)

        now = ctx.now()
        wallet = await load_wallet(tx, user_id, now)
        credit(wallet, "coins", order.coins_to_credit)
        wallet.cumulative_recharge_inr = wallet.cumulative_recharge_inr + order.amount_inr
        wallet.vip_level = get_vip_level(wallet.cumulative_recharge_inr)
        stamp(wallet, f"recharge_{order_id}", now)

        profile = await tx.get(UserProfile, user_id)
        if profile is None:
            profile = UserProfile(user_id=user_id, updated_at=now)
        profile.vip_level = wallet.vip_level
        profile.updated_at = now

        order.status = OrderStatus.COMPLETED
        order.completed_at = now
        order.payment_id = payment_id

        await tx.put(order)
        await tx.put(wallet)
        await tx.put(profile)
        return {"coins": order.coins_to_credit, "vip_level": wallet.vip_level}

    result = await ctx.store.transaction(_complete)
    logger.info(f"Recharge {order_id} completed for {user_id}: +{result['coins']} coins, VIP {result['vip_level']}")

    try:
        await record_recharge(ctx, order_id)
    except Exception as e:
        # Coins are already credited; the order stays un-stamped for redrive
        logger.error(f"Commission propagation failed for order {order_id}: {e}")

    return result


async def redrive_commission(ctx: EconomyContext, order_id: str) -> List[dict]:
    if not order_id:
        raise EconomyError(ErrorCode.INVALID_REQUEST, "Missing orderId")
    return await record_recharge(ctx, order_id)


async def redrive_pending_commissions(ctx: EconomyContext, limit: int = 100) -> int:
    """Re-run propagation for completed orders whose commission never landed"""
    orders = await ctx.store.transaction(
        lambda tx: tx.query(
            RechargeOrder,
            {"status": OrderStatus.COMPLETED, "commission_propagated_at": None},
            order_by="completed_at",
            limit=limit,
        )
    )
    redriven = 0
    for order in orders:
        try:
            await record_recharge(ctx, order.order_id)
            redriven += 1
        except EconomyError as e:
            logger.error(f"Commission redrive failed for order {order.order_id}: {e}")
    return redriven
