import logging
import re
from datetime import datetime
from typing import Optional

from .config import CONTEST_REWARD_DIAMONDS, CONTEST_TOP_N
from .context import EconomyContext
from .errors import EconomyError, ErrorCode
from .ledger import LedgerTransaction
from .models import ContestReward, HostActivity, Room
from .wallet import credit, load_wallet, stamp

logger = logging.getLogger(__name__)

WEEK_KEY_PATTERN = re.compile(r"^\d{4}-W\d{2}$")


def week_key(moment: datetime) -> str:
    """ISO week key, e.g. 2026-W42"""
    year, week, _ = moment.isocalendar()
    return f"{year}-W{week:02d}"


async def tick_host_minute(ctx: EconomyContext, room_id: str, user_id: str) -> str:
    """Add one active minute for the room's host in the current week"""
    if not room_id or not user_id:
        raise EconomyError(ErrorCode.INVALID_REQUEST, "Missing roomId or userId")

    async def _tick(tx: LedgerTransaction) -> str:
        room = await tx.get(Room, room_id)
        if room is None or room.host_user_id != user_id:
            raise EconomyError(ErrorCode.NOT_HOST)
        now = ctx.now()
        key = week_key(now)
        await tx.increment(
            HostActivity,
            HostActivity.make_key(user_id, key),
            "minutes",
            1,
            on_insert={"user_id": user_id, "week_key": key, "minutes": 0},
            set_fields={"updated_at": now},
        )
        return key

    return await ctx.store.transaction(_tick)


async def distribute_contest_rewards(ctx: EconomyContext, admin_id: str, week: Optional[str] = None) -> int:
    """Pay the week's top hosts once. Returns how many hosts were paid."""
    week = week or week_key(ctx.now())
    if not WEEK_KEY_PATTERN.match(week):
        raise EconomyError(ErrorCode.INVALID_REQUEST, "Invalid weekKey")

    async def _distribute(tx: LedgerTransaction) -> int:
        if await tx.get(ContestReward, week) is not None:
            raise EconomyError(ErrorCode.ALREADY_DISTRIBUTED)

        ranking = await tx.query(
            HostActivity,
            {"week_key": week},
            order_by="minutes",
            descending=True,
            limit=CONTEST_TOP_N,
        )
        if not ranking:
            return 0

        now = ctx.now()
        winners = []
        for rank, (activity, reward) in enumerate(zip(ranking, CONTEST_REWARD_DIAMONDS)):
            wallet = await load_wallet(tx, activity.user_id, now)
            credit(wallet, "diamonds", reward)
            stamp(wallet, f"contest_{week}_{rank}", now)
            await tx.put(wallet)
            winners.append({"rank": rank + 1, "user_id": activity.user_id, "minutes": activity.minutes, "diamonds": reward})

        await tx.put(
            ContestReward(
                week_key=week,
                distributed_at=now,
                admin_id=admin_id,
                winner_count=len(winners),
                winners=winners,
            )
        )
        return len(winners)

    distributed = await ctx.store.transaction(_distribute)
    logger.info(f"Contest {week}: rewarded {distributed} hosts (by {admin_id})")
    return distributed
