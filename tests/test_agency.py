import asyncio
import random

import pytest

from voiceroom import agency
from voiceroom.errors import EconomyError, ErrorCode
from voiceroom.models import (
    AgencyCode,
    AgencyNode,
    AgencyRole,
    CommissionRecord,
    OrderStatus,
    RechargeOrder,
    Wallet,
)

from conftest import seed_agency, seed_wallet


async def seed_completed_order(ctx, order_id: str, user_id: str, amount_inr: int = 4999, coins: int = 70000):
    now = ctx.now()
    order = RechargeOrder(
        order_id=order_id,
        user_id=user_id,
        amount_paise=amount_inr * 100,
        amount_inr=amount_inr,
        coins_to_credit=coins,
        status=OrderStatus.COMPLETED,
        created_at=now,
        completed_at=now,
        payment_id=f"pay_{order_id}",
    )
    await ctx.store.save(order)
    return order


class TestAgencyCodes:

    def test_generated_codes_use_unambiguous_alphabet(self):
        rng = random.Random(3)
        for _ in range(50):
            code = agency.generate_agency_code(rng)
            assert len(code) == 6
            assert not set(code) & set("IO01")

    def test_normalize_code(self):
        assert agency.normalize_code("  abcd23 ") == "ABCD23"
        assert agency.normalize_code("abc") is None
        assert agency.normalize_code(None) is None

    @pytest.mark.asyncio
    async def test_create_agency_is_idempotent(self, ctx):
        code = await agency.create_agency(ctx, "alice")

        assert await agency.create_agency(ctx, "alice") == code
        node = await ctx.store.read(AgencyNode, "alice")
        assert node.role == AgencyRole.BD
        assert node.parent_user_id is None
        assert (await ctx.store.read(AgencyCode, code)).user_id == "alice"

    @pytest.mark.asyncio
    async def test_configured_chief_official(self, ctx):
        await agency.create_agency(ctx, "chief")

        node = await ctx.store.read(AgencyNode, "chief")
        assert node.role == AgencyRole.CHIEF_OFFICIAL

    @pytest.mark.asyncio
    async def test_code_collision_never_overwrites_owner(self, ctx, store, settings, clock):
        from voiceroom.context import EconomyContext

        # Two contexts whose generators produce the same sequence
        first = EconomyContext(store, settings, gateway=ctx.gateway, rng=random.Random(5), clock=clock)
        second = EconomyContext(store, settings, gateway=ctx.gateway, rng=random.Random(5), clock=clock)

        alice_code = await agency.create_agency(first, "alice")
        bob_code = await agency.create_agency(second, "bob")

        assert alice_code != bob_code
        assert (await store.read(AgencyCode, alice_code)).user_id == "alice"
        assert (await store.read(AgencyCode, bob_code)).user_id == "bob"


class TestBindAgency:

    @pytest.mark.asyncio
    async def test_bind_once(self, ctx):
        await seed_agency(ctx, "parent", "PARENT")
        await seed_agency(ctx, "other", "OTHER1")
        await seed_agency(ctx, "child", "CHILD1")

        assert await agency.bind_agency(ctx, "child", "parent") == "parent"

        with pytest.raises(EconomyError) as excinfo:
            await agency.bind_agency(ctx, "child", "OTHER1")
        assert excinfo.value.code == ErrorCode.ALREADY_BOUND

        node = await ctx.store.read(AgencyNode, "child")
        assert node.parent_user_id == "parent"
        assert node.bound_at is not None

    @pytest.mark.asyncio
    async def test_own_code_is_rejected(self, ctx):
        await seed_agency(ctx, "alice", "ALICE1")

        with pytest.raises(EconomyError) as excinfo:
            await agency.bind_agency(ctx, "alice", "ALICE1")
        assert excinfo.value.code == ErrorCode.INVALID_CODE

    @pytest.mark.asyncio
    async def test_unknown_or_short_code(self, ctx):
        await seed_agency(ctx, "alice", "ALICE1")

        for code in ("ZZZZZZ", "ab"):
            with pytest.raises(EconomyError) as excinfo:
                await agency.bind_agency(ctx, "alice", code)
            assert excinfo.value.code == ErrorCode.INVALID_CODE

    @pytest.mark.asyncio
    async def test_binding_requires_own_agency(self, ctx):
        await seed_agency(ctx, "parent", "PARENT")

        with pytest.raises(EconomyError) as excinfo:
            await agency.bind_agency(ctx, "stranger", "PARENT")
        assert excinfo.value.code == ErrorCode.AGENCY_NOT_FOUND

    @pytest.mark.asyncio
    async def test_binding_under_own_descendant_is_rejected(self, ctx):
        await seed_agency(ctx, "top", "TOP111")
        await seed_agency(ctx, "mid", "MID111", parent_user_id="top")
        await seed_agency(ctx, "low", "LOW111", parent_user_id="mid")

        with pytest.raises(EconomyError) as excinfo:
            await agency.bind_agency(ctx, "top", "LOW111")
        assert excinfo.value.code == ErrorCode.INVALID_CODE
        assert (await ctx.store.read(AgencyNode, "top")).parent_user_id is None

    @pytest.mark.asyncio
    async def test_crossing_binds_cannot_form_a_cycle(self, ctx):
        await seed_agency(ctx, "a", "AAAAAA")
        await seed_agency(ctx, "b", "BBBBBB")

        results = await asyncio.gather(
            agency.bind_agency(ctx, "a", "BBBBBB"),
            agency.bind_agency(ctx, "b", "AAAAAA"),
            return_exceptions=True,
        )

        bound = [r for r in results if isinstance(r, str)]
        refused = [r for r in results if isinstance(r, EconomyError)]
        assert len(bound) == 1
        assert [e.code for e in refused] == [ErrorCode.INVALID_CODE]
        a = await ctx.store.read(AgencyNode, "a")
        b = await ctx.store.read(AgencyNode, "b")
        assert (a.parent_user_id is None) != (b.parent_user_id is None)


class TestAssignRole:

    @pytest.mark.asyncio
    async def test_chief_official_assigns_roles(self, ctx):
        await seed_agency(ctx, "chief", "CHIEF1", role=AgencyRole.CHIEF_OFFICIAL)
        await seed_agency(ctx, "alice", "ALICE1")

        role = await agency.assign_role(ctx, "chief", "alice", "Country Manager")

        assert role == AgencyRole.COUNTRY_MANAGER
        assert (await ctx.store.read(AgencyNode, "alice")).role == AgencyRole.COUNTRY_MANAGER

    @pytest.mark.asyncio
    async def test_other_roles_cannot_assign(self, ctx):
        await seed_agency(ctx, "boss", "BOSS11", role=AgencyRole.SUPER_ADMIN)
        await seed_agency(ctx, "alice", "ALICE1")

        with pytest.raises(EconomyError) as excinfo:
            await agency.assign_role(ctx, "boss", "alice", "Admin")
        assert excinfo.value.code == ErrorCode.ADMIN_ONLY

    @pytest.mark.asyncio
    async def test_unknown_role(self, ctx):
        with pytest.raises(EconomyError) as excinfo:
            await agency.assign_role(ctx, "chief", "alice", "Emperor")
        assert excinfo.value.code == ErrorCode.INVALID_ROLE

    @pytest.mark.asyncio
    async def test_missing_target(self, ctx):
        await seed_agency(ctx, "chief", "CHIEF1", role=AgencyRole.CHIEF_OFFICIAL)

        with pytest.raises(EconomyError) as excinfo:
            await agency.assign_role(ctx, "chief", "ghost", "Admin")
        assert excinfo.value.code == ErrorCode.AGENCY_NOT_FOUND


class TestCommission:

    @pytest.mark.asyncio
    async def test_commission_decays_up_the_chain(self, ctx):
        await seed_agency(ctx, "grand", "GRAND1")
        await seed_agency(ctx, "parent", "PARENT", parent_user_id="grand")
        await seed_agency(ctx, "child", "CHILD1", parent_user_id="parent")
        await seed_completed_order(ctx, "order_1", "child", amount_inr=4999)

        credited = await agency.record_recharge(ctx, "order_1")

        # floor(4999 * 0.02) = 99, then floor(99 * 0.02) = 1
        assert credited == [
            {"user_id": "parent", "level": 1, "commission": 99},
            {"user_id": "grand", "level": 2, "commission": 1},
        ]
        parent = await ctx.store.read(AgencyNode, "parent")
        assert parent.commission_balance == 99
        assert parent.team_earnings == 99
        record = await ctx.store.read(CommissionRecord, "order_1_L2")
        assert record.from_user_id == "child"
        assert record.via_user_id == "parent"
        assert record.amount == 99

    @pytest.mark.asyncio
    async def test_walk_stops_when_commission_rounds_to_zero(self, ctx):
        await seed_agency(ctx, "great", "GREAT1")
        await seed_agency(ctx, "grand", "GRAND1", parent_user_id="great")
        await seed_agency(ctx, "parent", "PARENT", parent_user_id="grand")
        await seed_agency(ctx, "child", "CHILD1", parent_user_id="parent")
        await seed_completed_order(ctx, "order_1", "child", amount_inr=4999)

        credited = await agency.record_recharge(ctx, "order_1")

        assert [c["user_id"] for c in credited] == ["parent", "grand"]
        assert (await ctx.store.read(AgencyNode, "great")).commission_balance == 0

    @pytest.mark.asyncio
    async def test_small_recharge_pays_nothing(self, ctx):
        await seed_agency(ctx, "parent", "PARENT")
        await seed_agency(ctx, "child", "CHILD1", parent_user_id="parent")
        await seed_completed_order(ctx, "order_1", "child", amount_inr=49, coins=500)

        assert await agency.record_recharge(ctx, "order_1") == []
        assert (await ctx.store.read(RechargeOrder, "order_1")).commission_propagated_at is not None

    @pytest.mark.asyncio
    async def test_propagation_is_idempotent(self, ctx):
        await seed_agency(ctx, "parent", "PARENT")
        await seed_agency(ctx, "child", "CHILD1", parent_user_id="parent")
        await seed_completed_order(ctx, "order_1", "child", amount_inr=999, coins=12000)

        first = await agency.record_recharge(ctx, "order_1")
        second = await agency.record_recharge(ctx, "order_1")

        assert first == [{"user_id": "parent", "level": 1, "commission": 19}]
        assert second == []
        assert (await ctx.store.read(AgencyNode, "parent")).commission_balance == 19

    @pytest.mark.asyncio
    async def test_cycle_in_stored_hierarchy_terminates(self, ctx):
        # A corrupted hierarchy: a -> b -> a
        await seed_agency(ctx, "a", "AAAAAA", parent_user_id="b")
        await seed_agency(ctx, "b", "BBBBBB", parent_user_id="a")
        await seed_completed_order(ctx, "order_1", "a", amount_inr=4999)

        credited = await agency.record_recharge(ctx, "order_1")

        assert credited == [{"user_id": "b", "level": 1, "commission": 99}]

    @pytest.mark.asyncio
    async def test_order_must_be_completed(self, ctx):
        order = await seed_completed_order(ctx, "order_1", "child")
        await ctx.store.save(order.model_copy(update={"status": OrderStatus.CREATED}))

        with pytest.raises(EconomyError) as excinfo:
            await agency.record_recharge(ctx, "order_1")
        assert excinfo.value.code == ErrorCode.ORDER_NOT_COMPLETED

        with pytest.raises(EconomyError) as excinfo:
            await agency.record_recharge(ctx, "order_missing")
        assert excinfo.value.code == ErrorCode.ORDER_NOT_FOUND

    @pytest.mark.asyncio
    async def test_team_view(self, ctx):
        await seed_agency(ctx, "parent", "PARENT")
        await seed_agency(ctx, "child", "CHILD1", parent_user_id="parent")
        await seed_completed_order(ctx, "order_1", "child", amount_inr=999, coins=12000)
        await agency.record_recharge(ctx, "order_1")

        team = await agency.get_team(ctx, "parent")

        assert team["agency_code"] == "PARENT"
        assert team["team_size"] == 1
        assert team["members"][0]["user_id"] == "child"
        assert team["commission_balance"] == 19
        assert team["commissions"][0]["order_id"] == "order_1"


class TestCommissionWithdrawal:

    async def seed_balance(self, ctx, user_id: str, balance: int) -> None:
        node = await seed_agency(ctx, user_id, "EARNER")
        await ctx.store.save(node.model_copy(update={"commission_balance": balance, "team_earnings": balance}))

    @pytest.mark.asyncio
    async def test_balance_moves_into_diamonds(self, ctx):
        await self.seed_balance(ctx, "earner", 99)
        await seed_wallet(ctx, "earner", coins=5, diamonds=10)

        assert await agency.withdraw_commission(ctx, "earner") == 99

        wallet = await ctx.store.read(Wallet, "earner")
        assert wallet.diamonds == 109
        assert wallet.coins == 5
        assert wallet.last_transaction_id.startswith("commission_earner_")
        node = await ctx.store.read(AgencyNode, "earner")
        assert node.commission_balance == 0
        assert node.total_withdrawn == 99
        assert node.team_earnings == 99

    @pytest.mark.asyncio
    async def test_zero_balance_is_refused(self, ctx):
        await self.seed_balance(ctx, "earner", 0)

        for user_id in ("earner", "stranger"):
            with pytest.raises(EconomyError) as excinfo:
                await agency.withdraw_commission(ctx, user_id)
            assert excinfo.value.code == ErrorCode.NO_COMMISSION

        assert await ctx.store.read(Wallet, "earner") is None

    @pytest.mark.asyncio
    async def test_concurrent_withdrawals_pay_once(self, ctx):
        await self.seed_balance(ctx, "earner", 250)

        results = await asyncio.gather(
            *[agency.withdraw_commission(ctx, "earner") for _ in range(3)],
            return_exceptions=True,
        )

        assert sorted(r for r in results if isinstance(r, int)) == [250]
        assert all(e.code == ErrorCode.NO_COMMISSION for e in results if isinstance(e, EconomyError))
        assert (await ctx.store.read(Wallet, "earner")).diamonds == 250
        node = await ctx.store.read(AgencyNode, "earner")
        assert node.commission_balance == 0
        assert node.total_withdrawn == 250
