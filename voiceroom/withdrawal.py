import logging
import uuid
from datetime import timedelta
from typing import List, Optional

from .config import DIAMOND_TO_INR_RATE, MIN_WITHDRAWAL_INR, WITHDRAWAL_COOLDOWN_HOURS
from .context import EconomyContext
from .errors import EconomyError, ErrorCode
from .ledger import LedgerTransaction
from .models import WithdrawalAction, WithdrawalRequest, WithdrawalStatus
from .wallet import credit, debit, load_wallet, stamp

logger = logging.getLogger(__name__)


async def request_withdrawal(ctx: EconomyContext, user_id: str, diamonds: int, upi_id: Optional[str] = None) -> str:
    """Hold the diamonds and open a pending request. Returns the request id."""
    if not user_id or isinstance(diamonds, bool) or not isinstance(diamonds, int) or diamonds <= 0:
        raise EconomyError(ErrorCode.INVALID_REQUEST)
    inr_amount = diamonds * DIAMOND_TO_INR_RATE
    if inr_amount < MIN_WITHDRAWAL_INR:
        raise EconomyError(ErrorCode.BELOW_MINIMUM, f"Minimum withdrawal is ₹{MIN_WITHDRAWAL_INR}")

    request_id = f"wd_{uuid.uuid4().hex[:16]}"

    async def _request(tx: LedgerTransaction) -> None:
        now = ctx.now()
        latest = await tx.query(
            WithdrawalRequest,
            {"user_id": user_id},
            order_by="requested_at",
            descending=True,
            limit=1,
        )
        if latest and now - latest[0].requested_at < timedelta(hours=WITHDRAWAL_COOLDOWN_HOURS):
            raise EconomyError(ErrorCode.COOLDOWN)

        wallet = await load_wallet(tx, user_id, now)
        debit(wallet, "diamonds", diamonds, error=ErrorCode.INSUFFICIENT_DIAMONDS)
        stamp(wallet, request_id, now)
        await tx.put(wallet)
        await tx.put(
            WithdrawalRequest(
                request_id=request_id,
                user_id=user_id,
                diamonds=diamonds,
                inr_amount=inr_amount,
                status=WithdrawalStatus.PENDING,
                requested_at=now,
                upi_id=upi_id,
            )
        )

    await ctx.store.transaction(_request)
    logger.info(f"Withdrawal {request_id} requested by {user_id}: {diamonds} diamonds (₹{inr_amount})")
    return request_id


async def process_withdrawal(ctx: EconomyContext, admin_id: str, request_id: str, action: str) -> WithdrawalStatus:
    """Approve (payout happens out of band) or reject (diamonds go back) a pending request"""
    if not request_id or not action:
        raise EconomyError(ErrorCode.INVALID_REQUEST)
    try:
        action = WithdrawalAction(action)
    except ValueError:
        raise EconomyError(ErrorCode.INVALID_REQUEST)

    async def _process(tx: LedgerTransaction) -> WithdrawalStatus:
        request = await tx.get(WithdrawalRequest, request_id)
        if request is None or request.status != WithdrawalStatus.PENDING:
            raise EconomyError(ErrorCode.NOT_PENDING)

        now = ctx.now()
        if action == WithdrawalAction.REJECT:
            wallet = await load_wallet(tx, request.user_id, now)
            credit(wallet, "diamonds", request.diamonds)
            stamp(wallet, f"refund_{request_id}", now)
            await tx.put(wallet)
            request.status = WithdrawalStatus.REJECTED
        else:
            request.status = WithdrawalStatus.APPROVED

        request.processed_at = now
        request.admin_id = admin_id
        await tx.put(request)
        return request.status

    status = await ctx.store.transaction(_process)
    logger.info(f"Withdrawal {request_id} {status.value} by {admin_id}")
    return status


async def list_requests(ctx: EconomyContext, limit: int = 100, status: Optional[str] = None) -> List[WithdrawalRequest]:
    limit = max(1, min(limit, 100))
    filters = {}
    if status:
        try:
            filters["status"] = WithdrawalStatus(status)
        except ValueError:
            raise EconomyError(ErrorCode.INVALID_REQUEST)
    return await ctx.store.transaction(
        lambda tx: tx.query(WithdrawalRequest, filters, order_by="requested_at", descending=True, limit=limit)
    )
