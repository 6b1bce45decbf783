"""
Room treasure box.

A share of every gift sent in a room fills the room's box. Crossing the
current threshold pays a fixed diamond reward to one contributor, drawn with
probability proportional to what they put in, then empties the box and moves
to the next threshold of the ladder (cycling).
"""

import logging
import random
from typing import Dict

from .config import TREASURE_REWARD_DIAMONDS, TREASURE_THRESHOLDS
from .context import EconomyContext
from .errors import EconomyError, ErrorCode
from .ledger import LedgerTransaction
from .models import GiftTransaction, Room
from .wallet import credit, load_wallet, stamp

logger = logging.getLogger(__name__)


def pick_winner(contributions: Dict[str, int], rng: random.Random) -> str:
    """Contribution-weighted draw: walk the entries subtracting each amount from r"""
    entries = [(user_id, amount) for user_id, amount in contributions.items() if amount > 0]
    if not entries:
        raise ValueError("No contributions to draw from")
    total = sum(amount for _, amount in entries)
    r = rng.uniform(0, total)
    for user_id, amount in entries:
        r -= amount
        if r <= 0:
            return user_id
    # Float rounding can leave r a hair above zero after the last entry
    return entries[-1][0]


async def add_contribution(ctx: EconomyContext, room_id: str, user_id: str, transaction_id: str) -> dict:
    """Count one gift toward a room's treasure box, paying out if it crosses the threshold."""
    if not room_id or not user_id or not transaction_id:
        raise EconomyError(ErrorCode.INVALID_REQUEST, "Missing roomId, userId, or transactionId")

    async def _contribute(tx: LedgerTransaction) -> dict:
        gift = await tx.get(GiftTransaction, transaction_id)
        room = await tx.get(Room, room_id)

        if gift is None or gift.sender_id != user_id or gift.source != "gift":
            raise EconomyError(ErrorCode.INVALID_TRANSACTION)
        if gift.treasure_room_id:
            raise EconomyError(ErrorCode.ALREADY_COUNTED)
        if gift.coin_amount <= 0:
            raise EconomyError(ErrorCode.INVALID_AMOUNT)

        now = ctx.now()
        if room is None:
            room = Room(room_id=room_id, created_at=now)

        contributions = dict(room.treasure_contributions)
        contributions[user_id] = contributions.get(user_id, 0) + gift.coin_amount
        progress = room.treasure_progress + gift.coin_amount
        index = min(room.treasure_threshold_index, len(TREASURE_THRESHOLDS) - 1)
        threshold = TREASURE_THRESHOLDS[index]

        gift.treasure_room_id = room_id
        await tx.put(gift)

        result = {"progress": progress, "threshold": threshold, "winner_id": None}

        if progress >= threshold:
            winner_id = pick_winner(contributions, ctx.rng)
            winner = await load_wallet(tx, winner_id, now)
            credit(winner, "diamonds", TREASURE_REWARD_DIAMONDS)
            stamp(winner, f"treasure_{room_id}_{int(now.timestamp() * 1000)}", now)
            await tx.put(winner)

            room.treasure_progress = 0
            room.treasure_contributions = {}
            room.treasure_threshold_index = (index + 1) % len(TREASURE_THRESHOLDS)
            room.last_treasure_winner_id = winner_id
            room.last_treasure_at = now
            result.update(progress=0, winner_id=winner_id, reward=TREASURE_REWARD_DIAMONDS)
        else:
            room.treasure_progress = progress
            room.treasure_contributions = contributions
            room.treasure_threshold_index = index

        room.updated_at = now
        await tx.put(room)
        return result

    result = await ctx.store.transaction(_contribute)
    if result["winner_id"]:
        logger.info(
            f"Treasure box in room {room_id} opened at {result['threshold']}: "
            f"{result['winner_id']} wins {TREASURE_REWARD_DIAMONDS} diamonds"
        )
    return result
