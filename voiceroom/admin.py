import hmac
import logging

from .config import COIN_PACKS, GIFT_CATALOG, VIP_LEVELS_DATA
from .context import EconomyContext
from .errors import EconomyError, ErrorCode
from .ledger import LedgerTransaction
from .models import AgencyNode, UserProfile, Wallet

logger = logging.getLogger(__name__)


async def verify_admin_password(ctx: EconomyContext, user_id: str, password: str) -> None:
    """Grant the admin claim to an authenticated user who knows the shared password"""
    expected = ctx.settings.admin_password
    if (
        not isinstance(password, str)
        or not expected
        or not hmac.compare_digest(password.encode(), expected.encode())
    ):
        logger.warning(f"Rejected admin password attempt by {user_id}")
        raise EconomyError(ErrorCode.INVALID_PASSWORD)

    async def _grant(tx: LedgerTransaction) -> None:
        now = ctx.now()
        profile = await tx.get(UserProfile, user_id)
        if profile is None:
            profile = UserProfile(user_id=user_id, updated_at=now)
        profile.is_admin = True
        profile.updated_at = now
        await tx.put(profile)

    await ctx.store.transaction(_grant)
    logger.info(f"Admin claim granted to {user_id}")


async def get_user_overview(ctx: EconomyContext, user_id: str) -> dict:
    if not user_id:
        raise EconomyError(ErrorCode.INVALID_REQUEST, "Missing userId")

    async def _overview(tx: LedgerTransaction) -> dict:
        wallet = await tx.get(Wallet, user_id)
        agency = await tx.get(AgencyNode, user_id)
        profile = await tx.get(UserProfile, user_id)
        if wallet is None and agency is None and profile is None:
            raise EconomyError(ErrorCode.USER_NOT_FOUND)
        return {
            "user": profile.model_dump(mode="json") if profile else None,
            "wallet": wallet.model_dump(mode="json") if wallet else None,
            "agency": agency.model_dump(mode="json") if agency else None,
        }

    return await ctx.store.transaction(_overview)


def catalog() -> dict:
    return {
        "catalog": GIFT_CATALOG,
        "packs": COIN_PACKS,
        "vip_levels": VIP_LEVELS_DATA,
    }
