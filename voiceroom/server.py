from fastapi import FastAPI, APIRouter, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
import logging
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Awaitable, Optional
from datetime import datetime, timezone

from . import admin, agency, contest, gifts, recharge, rooms, treasure, wallet, withdrawal
from .config import Settings
from .context import EconomyContext
from .errors import EconomyError, ErrorCode, ErrorKind
from .ledger import MemoryLedgerStore, MongoLedgerStore
from .models import Session, UserProfile

settings = Settings.from_env()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create the main app
app = FastAPI(title="Voice Room Economy")

# Create a router with the /api prefix
api_router = APIRouter(prefix="/api")

# ==================== MODELS ====================

class Payload(BaseModel):
    """Request bodies accept both snake_case and camelCase keys"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class CurrentUser(BaseModel):
    user_id: str
    is_admin: bool = False

class UserRequest(Payload):
    user_id: Optional[str] = None

class SendGiftRequest(Payload):
    sender_id: Optional[str] = None
    receiver_id: str
    gift_id: str

class TreasureContributionRequest(Payload):
    room_id: str
    user_id: Optional[str] = None
    transaction_id: str

class BindAgencyRequest(Payload):
    user_id: Optional[str] = None
    agency_code: str

class AssignRoleRequest(Payload):
    admin_user_id: Optional[str] = None
    target_user_id: str
    role: str

class CreateRechargeOrderRequest(Payload):
    user_id: Optional[str] = None
    amount_inr: float

class VerifyRechargePaymentRequest(Payload):
    user_id: Optional[str] = None
    order_id: str
    payment_id: str
    signature: str

class RedriveRequest(Payload):
    order_id: Optional[str] = None

class RequestWithdrawalRequest(Payload):
    user_id: Optional[str] = None
    diamonds: int
    upi_id: Optional[str] = None

class ProcessWithdrawalRequest(Payload):
    request_id: str
    action: str

class RoomRequest(Payload):
    room_id: str
    user_id: Optional[str] = None

class VoiceMemberRequest(Payload):
    room_id: str
    user_id: Optional[str] = None
    voice_uid: Optional[str] = None
    joined: bool = True

class DistributeContestRewardsRequest(Payload):
    week_key: Optional[str] = None

class VerifyAdminPasswordRequest(Payload):
    password: str

# ==================== CONTEXT & AUTH HELPERS ====================

def get_context(request: Request) -> EconomyContext:
    return request.app.state.context

async def get_session_token(request: Request) -> Optional[str]:
    """Get session token from cookie or Authorization header"""
    # Try cookie first
    session_token = request.cookies.get("session_token")
    if session_token:
        return session_token

    # Try Authorization header
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:]

    return None

async def get_current_user(request: Request) -> CurrentUser:
    """Resolve the caller from the session written by the identity provider"""
    session_token = await get_session_token(request)
    if not session_token:
        raise EconomyError(ErrorCode.UNAUTHORIZED, "Not authenticated")

    ctx = get_context(request)
    session = await ctx.store.read(Session, session_token)
    if not session:
        raise EconomyError(ErrorCode.UNAUTHORIZED, "Invalid session")

    # Check expiry (handle timezone-naive datetimes from MongoDB)
    expires_at = session.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)

    if expires_at < ctx.now():
        raise EconomyError(ErrorCode.UNAUTHORIZED, "Session expired")

    profile = await ctx.store.read(UserProfile, session.user_id)
    return CurrentUser(user_id=session.user_id, is_admin=bool(profile and profile.is_admin))

def require_self(current_user: CurrentUser, user_id: Optional[str]) -> str:
    """Self operations act on the caller only"""
    if user_id and user_id != current_user.user_id:
        raise EconomyError(ErrorCode.UNAUTHORIZED)
    return current_user.user_id

def require_admin(current_user: CurrentUser) -> None:
    if not current_user.is_admin:
        raise EconomyError(ErrorCode.ADMIN_ONLY)

async def run_operation(name: str, call: Awaitable[dict]) -> dict:
    """Uniform result contract: every failure is {success: false, error}"""
    try:
        return await call
    except EconomyError as e:
        if e.kind in (ErrorKind.EXTERNAL, ErrorKind.CONFLICT):
            logger.warning(f"{name} rejected: {e}")
        return e.to_response()
    except Exception as e:
        logger.error(f"{name} failed: {e}", exc_info=True)
        return {"success": False, "error": f"{name} failed"}

# ==================== WALLET ENDPOINTS ====================

@api_router.post("/wallet/create")
async def create_wallet(
    request: UserRequest,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Create the caller's wallet with the welcome coins (no-op if it exists)"""
    user_id = require_self(current_user, request.user_id)

    async def _create():
        created = await wallet.create_wallet(ctx, user_id)
        return {"success": True, "created": created}

    return await run_operation("Create wallet", _create())

@api_router.get("/wallet")
async def get_wallet(
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Get user's wallet"""
    async def _get():
        found = await wallet.get_wallet(ctx, current_user.user_id)
        if not found:
            return {"success": False, "error": "Wallet not found"}
        return {"success": True, "wallet": found.model_dump(mode="json")}

    return await run_operation("Get wallet", _get())

# ==================== GIFT SYSTEM ====================

@api_router.post("/gifts/send")
async def send_gift(
    request: SendGiftRequest,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Send a gift; the returned transaction id can be fed to the room treasure box"""
    sender_id = require_self(current_user, request.sender_id)

    async def _send():
        transaction_id = await gifts.send_gift(ctx, sender_id, request.receiver_id, request.gift_id)
        return {"success": True, "transaction_id": transaction_id}

    return await run_operation("Transaction", _send())

@api_router.post("/treasure/contribute")
async def add_treasure_contribution(
    request: TreasureContributionRequest,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Count a sent gift toward the room's treasure box"""
    user_id = require_self(current_user, request.user_id)

    async def _contribute():
        result = await treasure.add_contribution(ctx, request.room_id, user_id, request.transaction_id)
        return {"success": True, **result}

    return await run_operation("Treasure contribution", _contribute())

# ==================== AGENCY/COMMISSION SYSTEM ====================

@api_router.post("/agency/create")
async def create_agency(
    request: UserRequest,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Get or create the caller's agency profile and invitation code"""
    user_id = require_self(current_user, request.user_id)

    async def _create():
        code = await agency.create_agency(ctx, user_id)
        return {"success": True, "agency_code": code}

    return await run_operation("Create agency", _create())

@api_router.post("/agency/bind")
async def bind_agency(
    request: BindAgencyRequest,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """One-time bind to an inviter's agency code"""
    user_id = require_self(current_user, request.user_id)

    async def _bind():
        parent_user_id = await agency.bind_agency(ctx, user_id, request.agency_code)
        return {"success": True, "parent_user_id": parent_user_id}

    return await run_operation("Bind agency", _bind())

@api_router.post("/agency/assign-role")
async def assign_role(
    request: AssignRoleRequest,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Assign an agency role (Chief Official only)"""
    admin_user_id = require_self(current_user, request.admin_user_id)

    async def _assign():
        role = await agency.assign_role(ctx, admin_user_id, request.target_user_id, request.role)
        return {"success": True, "role": role.value}

    return await run_operation("Assign role", _assign())

@api_router.get("/agency/team")
async def get_agency_team(
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Get the caller's team and recent commission history"""
    async def _team():
        team = await agency.get_team(ctx, current_user.user_id)
        return {"success": True, **team}

    return await run_operation("Agency team", _team())

@api_router.post("/agency/withdraw-commission")
async def withdraw_agency_commission(
    request: UserRequest,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Move the caller's commission balance into wallet diamonds"""
    user_id = require_self(current_user, request.user_id)

    async def _withdraw():
        amount = await agency.withdraw_commission(ctx, user_id)
        return {"success": True, "diamonds": amount}

    return await run_operation("Commission withdrawal", _withdraw())

# ==================== RECHARGE ====================

@api_router.post("/recharge/order")
async def create_recharge_order(
    request: CreateRechargeOrderRequest,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Create a Razorpay order for one of the coin packs"""
    user_id = require_self(current_user, request.user_id)

    async def _order():
        amount = request.amount_inr
        if float(amount).is_integer():
            amount = int(amount)
        order = await recharge.create_order(ctx, user_id, amount)
        return {"success": True, **order}

    return await run_operation("Create order", _order())

@api_router.post("/recharge/verify")
async def verify_recharge_payment(
    request: VerifyRechargePaymentRequest,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Verify the payment signature and credit the pack's coins once"""
    user_id = require_self(current_user, request.user_id)

    async def _verify():
        result = await recharge.verify_payment(
            ctx, user_id, request.order_id, request.payment_id, request.signature
        )
        return {"success": True, **result}

    return await run_operation("Verification", _verify())

# ==================== WITHDRAWAL SYSTEM ====================

@api_router.post("/withdrawal/request")
async def request_withdrawal(
    request: RequestWithdrawalRequest,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Create a withdrawal request, holding the diamonds"""
    user_id = require_self(current_user, request.user_id)

    async def _request():
        request_id = await withdrawal.request_withdrawal(ctx, user_id, request.diamonds, request.upi_id)
        return {"success": True, "request_id": request_id}

    return await run_operation("Withdrawal request", _request())

# ==================== HOST CONTEST ====================

@api_router.post("/contest/tick")
async def tick_host_minute(
    request: RoomRequest,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Count one active minute for the room host"""
    user_id = require_self(current_user, request.user_id)

    async def _tick():
        week_key = await contest.tick_host_minute(ctx, request.room_id, user_id)
        return {"success": True, "week_key": week_key}

    return await run_operation("Host minute", _tick())

# ==================== ROOMS ====================

@api_router.post("/rooms/open")
async def open_room(
    request: RoomRequest,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Open a room hosted by the caller"""
    user_id = require_self(current_user, request.user_id)

    async def _open():
        room = await rooms.open_room(ctx, request.room_id, user_id)
        return {"success": True, "room": room.model_dump(mode="json")}

    return await run_operation("Open room", _open())

@api_router.post("/rooms/voice-member")
async def update_voice_member(
    request: VoiceMemberRequest,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Map (or unmap) the caller's voice channel uid in a room"""
    user_id = require_self(current_user, request.user_id)

    async def _update():
        if request.joined:
            await rooms.set_voice_member(ctx, request.room_id, user_id, request.voice_uid)
        else:
            await rooms.remove_voice_member(ctx, request.room_id, user_id)
        return {"success": True}

    return await run_operation("Voice member", _update())

# ==================== ADMIN ====================

@api_router.post("/admin/verify-password")
async def verify_admin_password(
    request: VerifyAdminPasswordRequest,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Grant the admin claim to the caller"""
    async def _verify():
        await admin.verify_admin_password(ctx, current_user.user_id, request.password)
        return {"success": True}

    return await run_operation("Admin verification", _verify())

@api_router.post("/admin/withdrawal/process")
async def process_withdrawal(
    request: ProcessWithdrawalRequest,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Approve or reject (refunding) a pending withdrawal"""
    require_admin(current_user)

    async def _process():
        status = await withdrawal.process_withdrawal(
            ctx, current_user.user_id, request.request_id, request.action
        )
        return {"success": True, "status": status.value}

    return await run_operation("Process withdrawal", _process())

@api_router.get("/admin/withdrawal/list")
async def list_withdrawal_requests(
    limit: int = 100,
    status: Optional[str] = None,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Newest withdrawal requests first"""
    require_admin(current_user)

    async def _list():
        requests = await withdrawal.list_requests(ctx, limit=max(1, min(limit, 100)), status=status)
        return {"success": True, "list": [r.model_dump(mode="json") for r in requests]}

    return await run_operation("List withdrawals", _list())

@api_router.post("/admin/contest/distribute")
async def distribute_contest_rewards(
    request: DistributeContestRewardsRequest,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Pay the week's top hosts (once per week)"""
    require_admin(current_user)

    async def _distribute():
        distributed = await contest.distribute_contest_rewards(ctx, current_user.user_id, request.week_key)
        return {"success": True, "distributed": distributed}

    return await run_operation("Contest distribution", _distribute())

@api_router.post("/admin/recharge/redrive")
async def redrive_commission(
    request: RedriveRequest,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Re-run commission propagation for one order, or for every order still missing it"""
    require_admin(current_user)

    async def _redrive():
        if request.order_id:
            credited = await recharge.redrive_commission(ctx, request.order_id)
            return {"success": True, "credited": credited}
        redriven = await recharge.redrive_pending_commissions(ctx)
        return {"success": True, "redriven": redriven}

    return await run_operation("Commission redrive", _redrive())

@api_router.post("/admin/user")
async def admin_get_user(
    request: UserRequest,
    current_user: CurrentUser = Depends(get_current_user),
    ctx: EconomyContext = Depends(get_context)
):
    """Wallet, agency node and profile of one user"""
    require_admin(current_user)

    async def _get():
        overview = await admin.get_user_overview(ctx, request.user_id)
        return {"success": True, **overview}

    return await run_operation("Get user", _get())

@api_router.get("/admin/catalog")
async def admin_catalog(current_user: CurrentUser = Depends(get_current_user)):
    """Gift catalog, coin packs and VIP ladder"""
    require_admin(current_user)
    return {"success": True, **admin.catalog()}

# ==================== HEALTH CHECK ====================

@api_router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

@app.exception_handler(EconomyError)
async def economy_error_handler(request: Request, exc: EconomyError):
    return JSONResponse(status_code=200, content=exc.to_response())

@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=200,
        content=EconomyError(ErrorCode.INVALID_REQUEST).to_response()
    )

# Include the router in the main app
app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_context():
    # Tests install their own context before the app starts
    if getattr(app.state, "context", None) is not None:
        return

    if settings.ledger_backend == "memory":
        store = MemoryLedgerStore(max_attempts=settings.ledger_max_attempts)
        logger.warning("Using the in-memory ledger; balances are lost on restart")
    else:
        client = AsyncIOMotorClient(settings.mongo_url, tz_aware=True)
        store = MongoLedgerStore(client, settings.db_name)
        logger.info(f"Connected ledger to MongoDB database {settings.db_name}")
    app.state.context = EconomyContext(store, settings)

@app.on_event("shutdown")
async def shutdown_context():
    ctx = getattr(app.state, "context", None)
    if ctx is not None:
        await ctx.close()
