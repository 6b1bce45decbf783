import random
from datetime import datetime, timezone
from typing import Callable, Optional

from .config import Settings
from .ledger import LedgerStore
from .gateway import RazorpayClient


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class EconomyContext:
    """Everything an engine operation needs, built once at process start.

    Engines take the context as their first argument instead of reaching for
    module-level handles, so tests can hand in an in-memory ledger, a seeded
    random source and a fixed clock.
    """

    def __init__(
        self,
        store: LedgerStore,
        settings: Optional[Settings] = None,
        gateway: Optional[RazorpayClient] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.settings = settings or Settings()
        self.gateway = gateway or RazorpayClient(
            key_id=self.settings.razorpay_key_id,
            key_secret=self.settings.razorpay_key_secret,
            api_url=self.settings.razorpay_api_url,
            timeout=self.settings.gateway_timeout_seconds,
        )
        self.rng = rng or random.SystemRandom()
        self.clock = clock

    def now(self) -> datetime:
        return self.clock()

    async def close(self) -> None:
        await self.gateway.close()
        await self.store.close()
