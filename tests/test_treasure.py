import asyncio
import random
from collections import Counter

import pytest

from voiceroom import gifts, treasure
from voiceroom.config import TREASURE_REWARD_DIAMONDS, TREASURE_THRESHOLDS
from voiceroom.errors import EconomyError, ErrorCode
from voiceroom.models import GiftTransaction, Room, Wallet

from conftest import seed_room, seed_wallet


class TestPickWinner:

    def test_draw_is_weighted_by_contribution(self):
        rng = random.Random(42)
        wins = Counter(treasure.pick_winner({"A": 8000, "B": 4000}, rng) for _ in range(6000))

        share = wins["A"] / 6000
        assert 0.63 < share < 0.70

    def test_zero_contributions_never_win(self):
        rng = random.Random(7)
        winners = {treasure.pick_winner({"A": 0, "B": 10}, rng) for _ in range(200)}
        assert winners == {"B"}

    def test_empty_box_cannot_draw(self):
        with pytest.raises(ValueError):
            treasure.pick_winner({}, random.Random(1))


class TestAddContribution:

    @pytest.mark.asyncio
    async def test_crown_gifts_fill_first_threshold(self, ctx, clock):
        await seed_wallet(ctx, "alice", coins=12000)

        first_id = await gifts.send_gift(ctx, "alice", "bob", "crown")
        result = await treasure.add_contribution(ctx, "room1", "alice", first_id)
        assert result == {"progress": 100, "threshold": TREASURE_THRESHOLDS[0], "winner_id": None}

        room = await ctx.store.read(Room, "room1")
        assert room.treasure_contributions == {"alice": 100}

        for i in range(1, 120):
            if i % 8 == 0:
                clock.advance(seconds=61)
            transaction_id = await gifts.send_gift(ctx, "alice", "bob", "crown")
            result = await treasure.add_contribution(ctx, "room1", "alice", transaction_id)

        assert result["winner_id"] == "alice"
        assert result["reward"] == TREASURE_REWARD_DIAMONDS
        assert result["progress"] == 0

        room = await ctx.store.read(Room, "room1")
        assert room.treasure_progress == 0
        assert room.treasure_contributions == {}
        assert room.treasure_threshold_index == 1
        assert room.last_treasure_winner_id == "alice"

        alice = await ctx.store.read(Wallet, "alice")
        assert alice.coins == 0
        assert alice.diamonds == TREASURE_REWARD_DIAMONDS
        assert alice.last_transaction_id.startswith("treasure_room1_")

    @pytest.mark.asyncio
    async def test_payout_goes_to_one_contributor(self, ctx):
        await seed_room(
            ctx,
            "room1",
            treasure_progress=11_500,
            treasure_contributions={"alice": 8000, "bob": 3500},
        )
        await seed_wallet(ctx, "bob", coins=500)
        transaction_id = await gifts.send_gift(ctx, "bob", "carol", "rocket")

        result = await treasure.add_contribution(ctx, "room1", "bob", transaction_id)

        assert result["winner_id"] in {"alice", "bob"}
        winner = await ctx.store.read(Wallet, result["winner_id"])
        assert winner.diamonds == TREASURE_REWARD_DIAMONDS
        loser_id = "bob" if result["winner_id"] == "alice" else "alice"
        loser = await ctx.store.read(Wallet, loser_id)
        assert loser is None or loser.diamonds == 0

    @pytest.mark.asyncio
    async def test_concurrent_contributions_open_the_box_once(self, ctx):
        await seed_room(ctx, "room1", treasure_progress=11_900, treasure_contributions={"regular": 11_900})
        senders = [f"fan{i}" for i in range(4)]
        transaction_ids = []
        for sender in senders:
            await seed_wallet(ctx, sender, coins=100)
            transaction_ids.append(await gifts.send_gift(ctx, sender, "host", "crown"))

        results = await asyncio.gather(*[
            treasure.add_contribution(ctx, "room1", sender, transaction_id)
            for sender, transaction_id in zip(senders, transaction_ids)
        ])

        winners = [r["winner_id"] for r in results if r["winner_id"]]
        assert len(winners) == 1
        paid = 0
        for user_id in ["regular"] + senders:
            wallet = await ctx.store.read(Wallet, user_id)
            paid += wallet.diamonds if wallet else 0
        assert paid == TREASURE_REWARD_DIAMONDS

        # The crossing resets the box; the other three gifts count toward the next tier
        room = await ctx.store.read(Room, "room1")
        assert room.last_treasure_winner_id == winners[0]
        assert room.treasure_threshold_index == 1
        assert room.treasure_progress == 300
        assert sum(room.treasure_contributions.values()) == 300
        assert "regular" not in room.treasure_contributions

    @pytest.mark.asyncio
    async def test_threshold_ladder_cycles(self, ctx):
        await seed_room(
            ctx,
            "room1",
            treasure_progress=TREASURE_THRESHOLDS[2] - 10,
            treasure_contributions={"alice": TREASURE_THRESHOLDS[2] - 10},
            treasure_threshold_index=2,
        )
        await seed_wallet(ctx, "alice", coins=10)
        transaction_id = await gifts.send_gift(ctx, "alice", "bob", "rose")

        result = await treasure.add_contribution(ctx, "room1", "alice", transaction_id)

        assert result["threshold"] == TREASURE_THRESHOLDS[2]
        assert result["winner_id"] == "alice"
        room = await ctx.store.read(Room, "room1")
        assert room.treasure_threshold_index == 0

    @pytest.mark.asyncio
    async def test_transaction_counts_only_once(self, ctx):
        await seed_wallet(ctx, "alice", coins=1000)
        transaction_id = await gifts.send_gift(ctx, "alice", "bob", "heart")

        await treasure.add_contribution(ctx, "room1", "alice", transaction_id)
        with pytest.raises(EconomyError) as excinfo:
            await treasure.add_contribution(ctx, "room2", "alice", transaction_id)

        assert excinfo.value.code == ErrorCode.ALREADY_COUNTED
        assert (await ctx.store.read(Room, "room1")).treasure_progress == 50
        assert await ctx.store.read(Room, "room2") is None
        assert (await ctx.store.read(GiftTransaction, transaction_id)).treasure_room_id == "room1"

    @pytest.mark.asyncio
    async def test_only_the_sender_may_contribute(self, ctx):
        await seed_wallet(ctx, "alice", coins=1000)
        transaction_id = await gifts.send_gift(ctx, "alice", "bob", "heart")

        with pytest.raises(EconomyError) as excinfo:
            await treasure.add_contribution(ctx, "room1", "bob", transaction_id)

        assert excinfo.value.code == ErrorCode.INVALID_TRANSACTION

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, ctx):
        with pytest.raises(EconomyError) as excinfo:
            await treasure.add_contribution(ctx, "room1", "alice", "gift_missing")
        assert excinfo.value.code == ErrorCode.INVALID_TRANSACTION

    @pytest.mark.asyncio
    async def test_zero_amount_transaction(self, ctx, clock):
        await ctx.store.save(
            GiftTransaction(
                transaction_id="gift_zero",
                sender_id="alice",
                receiver_id="bob",
                gift_id="rose",
                coin_amount=0,
                diamond_amount=0,
                created_at=clock(),
            )
        )

        with pytest.raises(EconomyError) as excinfo:
            await treasure.add_contribution(ctx, "room1", "alice", "gift_zero")
        assert excinfo.value.code == ErrorCode.INVALID_AMOUNT
