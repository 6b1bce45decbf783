import logging
import math
import uuid
from datetime import timedelta

from .config import DIAMOND_RATE, GIFT_CATALOG, GIFT_RATE_WINDOW_SECONDS, MAX_GIFTS_PER_MINUTE
from .context import EconomyContext
from .errors import EconomyError, ErrorCode
from .ledger import LedgerTransaction
from .models import GiftTransaction
from .wallet import credit, debit, load_wallet, stamp

logger = logging.getLogger(__name__)


def get_gift_price(gift_id: str) -> int:
    gift = GIFT_CATALOG.get(gift_id)
    if not gift or gift["price"] <= 0:
        raise EconomyError(ErrorCode.INVALID_GIFT)
    return gift["price"]


def diamonds_for(price: int) -> int:
    return math.floor(price * DIAMOND_RATE)


async def send_gift(ctx: EconomyContext, sender_id: str, receiver_id: str, gift_id: str) -> str:
    """Move a gift's price from the sender's coins into the receiver's diamonds.

    Returns the id of the immutable gift transaction record; the caller may
    forward it to the treasure box of the room the gift was sent in.
    """
    if not sender_id or not receiver_id or not gift_id:
        raise EconomyError(ErrorCode.INVALID_REQUEST, "Missing or invalid senderId, receiverId, or giftId")

    price = get_gift_price(gift_id)
    diamond_credit = diamonds_for(price)
    transaction_id = f"gift_{uuid.uuid4().hex[:16]}"

    async def _send(tx: LedgerTransaction) -> None:
        now = ctx.now()
        sender = await load_wallet(tx, sender_id, now)
        # Sending to yourself must mutate a single wallet record
        receiver = sender if receiver_id == sender_id else await load_wallet(tx, receiver_id, now)

        if sender.coins < price:
            raise EconomyError(ErrorCode.INSUFFICIENT_COINS)

        # Counted inside the transaction so concurrent sends serialize on it
        window_start = now - timedelta(seconds=GIFT_RATE_WINDOW_SECONDS)
        recent_gifts = await tx.query(
            GiftTransaction,
            {"sender_id": sender_id, "created_at": {"$gte": window_start}},
        )
        if len(recent_gifts) >= MAX_GIFTS_PER_MINUTE:
            raise EconomyError(ErrorCode.RATE_LIMIT)

        debit(sender, "coins", price, error=ErrorCode.INSUFFICIENT_COINS)
        credit(receiver, "diamonds", diamond_credit)
        stamp(sender, transaction_id, now)
        stamp(receiver, transaction_id, now)

        await tx.put(sender)
        if receiver is not sender:
            await tx.put(receiver)
        await tx.put(
            GiftTransaction(
                transaction_id=transaction_id,
                sender_id=sender_id,
                receiver_id=receiver_id,
                gift_id=gift_id,
                coin_amount=price,
                diamond_amount=diamond_credit,
                created_at=now,
            )
        )

    await ctx.store.transaction(_send)
    logger.info(f"Gift {gift_id} from {sender_id} to {receiver_id}: -{price} coins, +{diamond_credit} diamonds ({transaction_id})")
    return transaction_id
