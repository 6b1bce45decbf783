"""
Ledger records.

Each model maps to one collection; the document key is derived from the
record's own fields. Documents are validated when loaded, so a malformed
record is rejected instead of being read as zeros.
"""

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class Record(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    collection: ClassVar[str]

    @property
    def key(self) -> str:
        raise NotImplementedError


# ==================== WALLET ====================

class Wallet(Record):
    collection: ClassVar[str] = "wallets"

    user_id: str
    coins: int = Field(..., ge=0)
    diamonds: int = Field(..., ge=0)
    cumulative_recharge_inr: float = Field(0, ge=0)
    vip_level: int = Field(0, ge=0)
    last_transaction_id: Optional[str] = None
    updated_at: datetime

    @property
    def key(self) -> str:
        return self.user_id


class UserProfile(Record):
    collection: ClassVar[str] = "users"

    user_id: str
    vip_level: int = Field(0, ge=0)
    is_admin: bool = False
    updated_at: datetime

    @property
    def key(self) -> str:
        return self.user_id


class Session(Record):
    collection: ClassVar[str] = "user_sessions"

    session_token: str
    user_id: str
    expires_at: datetime
    created_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return self.session_token


# ==================== GIFTS & ROOMS ====================

class GiftTransaction(Record):
    collection: ClassVar[str] = "transactions"

    transaction_id: str
    sender_id: str
    receiver_id: str
    gift_id: str
    coin_amount: int
    diamond_amount: int
    created_at: datetime
    source: Literal["gift"] = "gift"
    treasure_room_id: Optional[str] = None

    @property
    def key(self) -> str:
        return self.transaction_id


class Room(Record):
    collection: ClassVar[str] = "rooms"

    room_id: str
    host_user_id: Optional[str] = None
    treasure_progress: int = Field(0, ge=0)
    treasure_contributions: Dict[str, int] = Field(default_factory=dict)
    treasure_threshold_index: int = Field(0, ge=0, le=2)
    last_treasure_winner_id: Optional[str] = None
    last_treasure_at: Optional[datetime] = None
    voice_members: Dict[str, str] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return self.room_id


# ==================== AGENCY ====================

class AgencyRole(str, Enum):
    BD = "BD"
    ADMIN = "Admin"
    SUPER_ADMIN = "Super Admin"
    COUNTRY_MANAGER = "Country Manager"
    CHIEF_OFFICIAL = "Chief Official"


DEFAULT_AGENCY_ROLE = AgencyRole.BD
# Only these roles may assign roles to others
ADMIN_ROLES = {AgencyRole.CHIEF_OFFICIAL}


class AgencyNode(Record):
    collection: ClassVar[str] = "agency"

    user_id: str
    role: AgencyRole
    agency_code: str
    parent_user_id: Optional[str] = None
    bound_at: Optional[datetime] = None
    commission_balance: int = Field(0, ge=0)
    team_earnings: int = Field(0, ge=0)
    total_withdrawn: int = Field(0, ge=0)
    created_at: datetime
    updated_at: datetime

    @property
    def key(self) -> str:
        return self.user_id


class AgencyCode(Record):
    collection: ClassVar[str] = "agency_codes"

    code: str
    user_id: str

    @property
    def key(self) -> str:
        return self.code


class CommissionRecord(Record):
    collection: ClassVar[str] = "commission_history"

    user_id: str
    from_user_id: str
    via_user_id: str
    order_id: str
    level: int = Field(..., ge=1)
    amount: float
    commission_amount: int = Field(..., gt=0)
    source: Literal["recharge"] = "recharge"
    created_at: datetime

    @staticmethod
    def make_key(order_id: str, level: int) -> str:
        return f"{order_id}_L{level}"

    @property
    def key(self) -> str:
        return self.make_key(self.order_id, self.level)


# ==================== RECHARGE ====================

class OrderStatus(str, Enum):
    CREATED = "created"
    COMPLETED = "completed"


class RechargeOrder(Record):
    collection: ClassVar[str] = "recharge_orders"

    order_id: str
    user_id: str
    amount_paise: int
    amount_inr: float
    coins_to_credit: int = Field(..., gt=0)
    status: OrderStatus
    created_at: datetime
    completed_at: Optional[datetime] = None
    payment_id: Optional[str] = None
    commission_propagated_at: Optional[datetime] = None

    @property
    def key(self) -> str:
        return self.order_id


# ==================== WITHDRAWAL ====================

class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class WithdrawalAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class WithdrawalRequest(Record):
    collection: ClassVar[str] = "withdrawal_requests"

    request_id: str
    user_id: str
    diamonds: int = Field(..., gt=0)
    inr_amount: float
    status: WithdrawalStatus
    requested_at: datetime
    processed_at: Optional[datetime] = None
    admin_id: Optional[str] = None
    upi_id: Optional[str] = None

    @property
    def key(self) -> str:
        return self.request_id


# ==================== CONTEST ====================

class HostActivity(Record):
    collection: ClassVar[str] = "host_activity"

    user_id: str
    week_key: str
    minutes: int = Field(0, ge=0)
    updated_at: Optional[datetime] = None

    @staticmethod
    def make_key(user_id: str, week_key: str) -> str:
        return f"{user_id}_{week_key}"

    @property
    def key(self) -> str:
        return self.make_key(self.user_id, self.week_key)


class ContestReward(Record):
    collection: ClassVar[str] = "contest_rewards"

    week_key: str
    distributed_at: datetime
    admin_id: Optional[str] = None
    winner_count: int
    winners: List[Dict[str, Any]] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return self.week_key
