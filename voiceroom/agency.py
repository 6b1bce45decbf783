"""
Agency hierarchy: invitation codes, one-time parent binding, roles and
recharge commission.

Commission walks up the chain from the recharging user. The direct parent
earns COMMISSION_RATE of the recharge; every ancestor above earns
COMMISSION_RATE of what the level below it earned. The walk stops at an
unbound node, a zero commission, a repeated user or MAX_COMMISSION_DEPTH
levels. History records are keyed by order id and level, and the order is
stamped in the same transaction, so re-running a propagation pays nothing twice.
"""

import logging
import math
from typing import List, Optional

from .config import (
    AGENCY_CODE_ALPHABET,
    AGENCY_CODE_LENGTH,
    AGENCY_CODE_MIN_LENGTH,
    COMMISSION_RATE,
    MAX_COMMISSION_DEPTH,
)
from .context import EconomyContext
from .errors import EconomyError, ErrorCode
from .ledger import LedgerTransaction
from .models import (
    ADMIN_ROLES,
    DEFAULT_AGENCY_ROLE,
    AgencyCode,
    AgencyNode,
    AgencyRole,
    CommissionRecord,
    OrderStatus,
    RechargeOrder,
)
from .wallet import credit, load_wallet, stamp

logger = logging.getLogger(__name__)


def generate_agency_code(rng) -> str:
    return "".join(rng.choice(AGENCY_CODE_ALPHABET) for _ in range(AGENCY_CODE_LENGTH))


def normalize_code(agency_code: str) -> Optional[str]:
    code = (agency_code or "").strip().upper()
    if len(code) < AGENCY_CODE_MIN_LENGTH:
        return None
    return code


async def create_agency(ctx: EconomyContext, user_id: str) -> str:
    """Agency code of the user's node, creating the node on first call"""
    if not user_id:
        raise EconomyError(ErrorCode.INVALID_REQUEST, "Missing userId")

    async def _create(tx: LedgerTransaction) -> str:
        existing = await tx.get(AgencyNode, user_id)
        if existing is not None:
            return existing.agency_code

        code = generate_agency_code(ctx.rng)
        if await tx.get(AgencyCode, code) is not None:
            logger.warning(f"Agency code collision on {code}, regenerating")
            code = generate_agency_code(ctx.rng)
            if await tx.get(AgencyCode, code) is not None:
                raise EconomyError(ErrorCode.AGENCY_CODE_UNAVAILABLE)

        now = ctx.now()
        role = (
            AgencyRole.CHIEF_OFFICIAL
            if user_id in ctx.settings.chief_official_user_ids
            else DEFAULT_AGENCY_ROLE
        )
        await tx.put(
            AgencyNode(
                user_id=user_id,
                role=role,
                agency_code=code,
                created_at=now,
                updated_at=now,
            )
        )
        await tx.put(AgencyCode(code=code, user_id=user_id))
        logger.info(f"Created agency {code} for {user_id} as {role.value}")
        return code

    return await ctx.store.transaction(_create)


async def bind_agency(ctx: EconomyContext, user_id: str, agency_code: str) -> str:
    """Bind the user under the owner of agency_code. Allowed once per user."""
    if not user_id or not agency_code:
        raise EconomyError(ErrorCode.INVALID_REQUEST, "Missing userId or agencyCode")
    code = normalize_code(agency_code)
    if code is None:
        raise EconomyError(ErrorCode.INVALID_CODE)

    async def _bind(tx: LedgerTransaction) -> str:
        child = await tx.get(AgencyNode, user_id)
        entry = await tx.get(AgencyCode, code)

        if child is None:
            raise EconomyError(ErrorCode.AGENCY_NOT_FOUND)
        if child.parent_user_id is not None:
            raise EconomyError(ErrorCode.ALREADY_BOUND)
        parent_user_id = entry.user_id if entry else None
        if not parent_user_id or parent_user_id == user_id:
            raise EconomyError(ErrorCode.INVALID_CODE)

        # Refuse a code whose owner sits below the caller
        ancestor_id = parent_user_id
        for _ in range(MAX_COMMISSION_DEPTH):
            ancestor = await tx.get(AgencyNode, ancestor_id)
            if ancestor is None or not ancestor.parent_user_id:
                break
            if ancestor.parent_user_id == user_id:
                raise EconomyError(ErrorCode.INVALID_CODE)
            ancestor_id = ancestor.parent_user_id

        parent = await tx.get(AgencyNode, parent_user_id)
        if parent is None:
            raise EconomyError(ErrorCode.INVALID_CODE)

        now = ctx.now()
        child.parent_user_id = parent_user_id
        child.bound_at = now
        child.updated_at = now
        await tx.put(child)
        # Crossing binds (A under B, B under A) must write a common document
        parent.updated_at = now
        await tx.put(parent)
        return parent_user_id

    parent_user_id = await ctx.store.transaction(_bind)
    logger.info(f"Bound {user_id} under {parent_user_id} via {code}")
    return parent_user_id


async def assign_role(ctx: EconomyContext, admin_user_id: str, target_user_id: str, role: str) -> AgencyRole:
    if not admin_user_id or not target_user_id or not role:
        raise EconomyError(ErrorCode.INVALID_REQUEST, "Missing adminUserId, targetUserId, or role")
    try:
        new_role = AgencyRole(role)
    except ValueError:
        raise EconomyError(ErrorCode.INVALID_ROLE)

    async def _assign(tx: LedgerTransaction) -> None:
        admin = await tx.get(AgencyNode, admin_user_id)
        if admin is None or admin.role not in ADMIN_ROLES:
            raise EconomyError(ErrorCode.ADMIN_ONLY)
        target = await tx.get(AgencyNode, target_user_id)
        if target is None:
            raise EconomyError(ErrorCode.AGENCY_NOT_FOUND)
        target.role = new_role
        target.updated_at = ctx.now()
        await tx.put(target)

    await ctx.store.transaction(_assign)
    logger.info(f"{admin_user_id} assigned role {new_role.value} to {target_user_id}")
    return new_role


async def record_recharge(ctx: EconomyContext, order_id: str) -> List[dict]:
    """Propagate commission for a completed recharge order up the hierarchy.

    Returns the commissions credited by this call; an order that was already
    propagated returns an empty list.
    """

    async def _propagate(tx: LedgerTransaction) -> List[dict]:
        order = await tx.get(RechargeOrder, order_id)
        if order is None:
            raise EconomyError(ErrorCode.ORDER_NOT_FOUND)
        if order.status != OrderStatus.COMPLETED:
            raise EconomyError(ErrorCode.ORDER_NOT_COMPLETED)
        if order.commission_propagated_at is not None:
            return []

        now = ctx.now()
        credited = []
        visited = {order.user_id}
        current_id = order.user_id
        base = order.amount_inr

        for level in range(1, MAX_COMMISSION_DEPTH + 1):
            node = await tx.get(AgencyNode, current_id)
            if node is None or not node.parent_user_id:
                break
            parent_id = node.parent_user_id
            if parent_id in visited:
                logger.warning(f"Circular agency reference at {parent_id} while paying order {order_id}")
                break
            commission = math.floor(base * COMMISSION_RATE)
            if commission <= 0:
                break
            parent = await tx.get(AgencyNode, parent_id)
            if parent is None:
                break

            history_key = CommissionRecord.make_key(order_id, level)
            if await tx.get(CommissionRecord, history_key) is None:
                parent.commission_balance += commission
                parent.team_earnings += commission
                parent.updated_at = now
                await tx.put(parent)
                await tx.put(
                    CommissionRecord(
                        user_id=parent_id,
                        from_user_id=order.user_id,
                        via_user_id=current_id,
                        order_id=order_id,
                        level=level,
                        amount=base,
                        commission_amount=commission,
                        created_at=now,
                    )
                )
                credited.append({"user_id": parent_id, "level": level, "commission": commission})

            visited.add(parent_id)
            current_id = parent_id
            base = commission

        order.commission_propagated_at = now
        await tx.put(order)
        return credited

    credited = await ctx.store.transaction(_propagate)
    for item in credited:
        logger.info(f"Commission {item['commission']} to {item['user_id']} (level {item['level']}) for order {order_id}")
    return credited


async def get_team(ctx: EconomyContext, user_id: str, history_limit: int = 20) -> dict:
    async def _team(tx: LedgerTransaction) -> dict:
        node = await tx.get(AgencyNode, user_id)
        if node is None:
            raise EconomyError(ErrorCode.AGENCY_NOT_FOUND)
        members = await tx.query(AgencyNode, {"parent_user_id": user_id}, order_by="bound_at", descending=True)
        history = await tx.query(
            CommissionRecord,
            {"user_id": user_id},
            order_by="created_at",
            descending=True,
            limit=history_limit,
        )
        return {
            "agency_code": node.agency_code,
            "role": node.role.value,
            "parent_user_id": node.parent_user_id,
            "commission_balance": node.commission_balance,
            "team_earnings": node.team_earnings,
            "total_withdrawn": node.total_withdrawn,
            "team_size": len(members),
            "members": [{"user_id": m.user_id, "role": m.role.value, "bound_at": m.bound_at} for m in members],
            "commissions": [record.model_dump(mode="json") for record in history],
        }

    return await ctx.store.transaction(_team)


async def withdraw_commission(ctx: EconomyContext, user_id: str) -> int:
    """Move the whole commission balance into wallet diamonds (1:1). Returns the amount moved."""
    if not user_id:
        raise EconomyError(ErrorCode.INVALID_REQUEST, "Missing userId")

    async def _withdraw(tx: LedgerTransaction) -> int:
        node = await tx.get(AgencyNode, user_id)
        if node is None or node.commission_balance <= 0:
            raise EconomyError(ErrorCode.NO_COMMISSION)

        now = ctx.now()
        amount = node.commission_balance
        wallet = await load_wallet(tx, user_id, now)
        credit(wallet, "diamonds", amount)
        stamp(wallet, f"commission_{user_id}_{int(now.timestamp() * 1000)}", now)

        node.commission_balance = 0
        node.total_withdrawn += amount
        node.updated_at = now

        await tx.put(wallet)
        await tx.put(node)
        return amount

    amount = await ctx.store.transaction(_withdraw)
    logger.info(f"Commission withdrawal by {user_id}: {amount} -> diamonds")
    return amount
