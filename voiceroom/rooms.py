"""Room records as the economy sees them: the host, and voice uid -> user mapping."""

from .context import EconomyContext
from .errors import EconomyError, ErrorCode
from .ledger import LedgerTransaction
from .models import Room


async def open_room(ctx: EconomyContext, room_id: str, host_user_id: str) -> Room:
    """Create the room with the caller as host; an existing room is returned untouched"""
    if not room_id or not host_user_id:
        raise EconomyError(ErrorCode.INVALID_REQUEST, "Missing roomId or userId")

    async def _open(tx: LedgerTransaction) -> Room:
        room = await tx.get(Room, room_id)
        if room is not None:
            return room
        now = ctx.now()
        room = Room(room_id=room_id, host_user_id=host_user_id, created_at=now, updated_at=now)
        await tx.put(room)
        return room

    return await ctx.store.transaction(_open)


async def set_voice_member(ctx: EconomyContext, room_id: str, user_id: str, voice_uid: str) -> None:
    if not room_id or not user_id or not voice_uid:
        raise EconomyError(ErrorCode.INVALID_REQUEST, "Missing roomId, userId, or voiceUid")

    async def _set(tx: LedgerTransaction) -> None:
        room = await tx.get(Room, room_id)
        if room is None:
            raise EconomyError(ErrorCode.ROOM_NOT_FOUND)
        owner = room.voice_members.get(voice_uid)
        if owner is not None and owner != user_id:
            raise EconomyError(ErrorCode.INVALID_REQUEST, "Voice uid belongs to another member")
        members = {uid: member for uid, member in room.voice_members.items() if member != user_id}
        members[voice_uid] = user_id
        room.voice_members = members
        room.updated_at = ctx.now()
        await tx.put(room)

    await ctx.store.transaction(_set)


async def remove_voice_member(ctx: EconomyContext, room_id: str, user_id: str) -> None:
    async def _remove(tx: LedgerTransaction) -> None:
        room = await tx.get(Room, room_id)
        if room is None:
            raise EconomyError(ErrorCode.ROOM_NOT_FOUND)
        room.voice_members = {uid: member for uid, member in room.voice_members.items() if member != user_id}
        room.updated_at = ctx.now()
        await tx.put(room)

    await ctx.store.transaction(_remove)
