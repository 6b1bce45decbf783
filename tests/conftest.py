"""
Shared fixtures for the economy tests.

Every test gets a fresh in-memory ledger, a seeded random source, a clock it
can move by hand and a Razorpay client whose HTTP calls go to a
``httpx.MockTransport`` handler the test controls.
"""

import random
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import httpx
import pytest

from voiceroom.config import Settings
from voiceroom.context import EconomyContext
from voiceroom.gateway import RazorpayClient
from voiceroom.ledger import MemoryLedgerStore
from voiceroom.models import AgencyCode, AgencyNode, AgencyRole, Room, Session, UserProfile, Wallet

TEST_KEY_ID = "rzp_test_key"
TEST_KEY_SECRET = "rzp_test_secret"


class FakeClock:
    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


class GatewayStub:
    """Answers POST /orders with incrementing order ids unless told otherwise"""

    def __init__(self):
        self.calls = []
        self.responder: Optional[Callable[[httpx.Request], httpx.Response]] = None
        self._counter = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.responder is not None:
            return self.responder(request)
        self._counter += 1
        return httpx.Response(200, json={"id": f"order_test{self._counter:04d}", "status": "created"})


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 10, 14, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def store():
    return MemoryLedgerStore(max_attempts=50, base_delay=0.001)


@pytest.fixture
def settings():
    return Settings(
        razorpay_key_id=TEST_KEY_ID,
        razorpay_key_secret=TEST_KEY_SECRET,
        admin_password="open-sesame",
        chief_official_user_ids=["chief"],
    )


@pytest.fixture
def gateway_stub():
    return GatewayStub()


@pytest.fixture
def ctx(store, settings, gateway_stub, rng, clock):
    gateway = RazorpayClient(
        key_id=settings.razorpay_key_id,
        key_secret=settings.razorpay_key_secret,
        api_url="https://gateway.test/v1",
        transport=httpx.MockTransport(gateway_stub),
    )
    return EconomyContext(store, settings, gateway=gateway, rng=rng, clock=clock)


async def seed_wallet(ctx, user_id: str, coins: int = 0, diamonds: int = 0) -> Wallet:
    wallet = Wallet(user_id=user_id, coins=coins, diamonds=diamonds, updated_at=ctx.now())
    await ctx.store.save(wallet)
    return wallet


async def seed_room(ctx, room_id: str, host_user_id: Optional[str] = None, **fields) -> Room:
    room = Room(room_id=room_id, host_user_id=host_user_id, created_at=ctx.now(), **fields)
    await ctx.store.save(room)
    return room


async def seed_agency(ctx, user_id: str, code: str, parent_user_id: Optional[str] = None,
                      role: AgencyRole = AgencyRole.BD) -> AgencyNode:
    now = ctx.now()
    node = AgencyNode(
        user_id=user_id,
        role=role,
        agency_code=code,
        parent_user_id=parent_user_id,
        bound_at=now if parent_user_id else None,
        created_at=now,
        updated_at=now,
    )
    await ctx.store.save(node)
    await ctx.store.save(AgencyCode(code=code, user_id=user_id))
    return node


async def seed_session(ctx, token: str, user_id: str, is_admin: bool = False, hours: int = 24) -> None:
    now = ctx.now()
    await ctx.store.save(
        Session(session_token=token, user_id=user_id, expires_at=now + timedelta(hours=hours), created_at=now)
    )
    await ctx.store.save(UserProfile(user_id=user_id, is_admin=is_admin, updated_at=now))
