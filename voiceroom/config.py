import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

ROOT_DIR = Path(__file__).parent.parent

# ==================== ECONOMY CONSTANTS ====================

INITIAL_COINS = 1000

# 60% of spent coins become receiver diamonds
DIAMOND_RATE = 0.6
MAX_GIFTS_PER_MINUTE = 10
GIFT_RATE_WINDOW_SECONDS = 60

# Server-side price catalog. Client-declared prices are never trusted.
GIFT_CATALOG = {
    "rose": {"gift_id": "rose", "name": "Red Rose", "price": 10},
    "heart": {"gift_id": "heart", "name": "Love Heart", "price": 50},
    "crown": {"gift_id": "crown", "name": "Royal Crown", "price": 100},
    "diamond": {"gift_id": "diamond", "name": "Diamond", "price": 200},
    "rocket": {"gift_id": "rocket", "name": "Rocket", "price": 500},
}

TREASURE_THRESHOLDS = [12_000, 50_000, 150_000]
TREASURE_REWARD_DIAMONDS = 500

AGENCY_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
AGENCY_CODE_LENGTH = 6
AGENCY_CODE_MIN_LENGTH = 4
COMMISSION_RATE = 0.02
MAX_COMMISSION_DEPTH = 10

# INR -> coins. The only price oracle for recharges.
COIN_PACKS = [
    {"inr": 99, "coins": 1000},
    {"inr": 499, "coins": 5500},
    {"inr": 999, "coins": 12000},
    {"inr": 2499, "coins": 32000},
    {"inr": 4999, "coins": 70000},
]

# Cumulative recharge (INR, inclusive) needed for each VIP level
VIP_LEVELS_DATA = [
    {"level": 0, "name": "Basic", "recharge_requirement": 0, "badge_color": "#808080"},
    {"level": 1, "name": "Bronze", "recharge_requirement": 500, "badge_color": "#CD7F32"},
    {"level": 2, "name": "Silver", "recharge_requirement": 2000, "badge_color": "#C0C0C0"},
    {"level": 3, "name": "Gold", "recharge_requirement": 5000, "badge_color": "#FFD700"},
    {"level": 4, "name": "Platinum", "recharge_requirement": 10000, "badge_color": "#E5E4E2"},
    {"level": 5, "name": "Diamond", "recharge_requirement": 25000, "badge_color": "#B9F2FF"},
]

DIAMOND_TO_INR_RATE = 0.5
MIN_WITHDRAWAL_INR = 100
WITHDRAWAL_COOLDOWN_HOURS = 24

CONTEST_TOP_N = 10
CONTEST_REWARD_DIAMONDS = [500, 300, 200, 100, 100, 50, 50, 50, 50, 50]


def get_coins_for_pack(amount_inr) -> Optional[int]:
    for pack in COIN_PACKS:
        if pack["inr"] == amount_inr:
            return pack["coins"]
    return None


def get_vip_level(cumulative_recharge_inr: float) -> int:
    """Highest level whose requirement is covered by the lifetime recharge"""
    eligible_level = 0
    for level_data in VIP_LEVELS_DATA:
        if cumulative_recharge_inr >= level_data["recharge_requirement"]:
            eligible_level = level_data["level"]
    return eligible_level


# ==================== SETTINGS ====================

def _split_csv(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseModel):
    mongo_url: str = "mongodb://localhost:27017"
    db_name: str = "voiceroom"
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_api_url: str = "https://api.razorpay.com/v1"
    gateway_timeout_seconds: float = 10.0
    admin_password: str = ""
    chief_official_user_ids: List[str] = Field(default_factory=list)
    ledger_backend: str = "mongo"
    ledger_max_attempts: int = Field(5, ge=1)
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    @property
    def payments_configured(self) -> bool:
        return bool(self.razorpay_key_id and self.razorpay_key_secret)

    @classmethod
    def from_env(cls, env_file: Optional[Path] = None) -> "Settings":
        """Build settings from the process environment, after loading the repo .env"""
        load_dotenv(env_file or ROOT_DIR / ".env")
        env = os.environ
        return cls(
            mongo_url=env.get("MONGO_URL", "mongodb://localhost:27017"),
            db_name=env.get("DB_NAME", "voiceroom"),
            razorpay_key_id=env.get("RAZORPAY_KEY_ID", ""),
            razorpay_key_secret=env.get("RAZORPAY_KEY_SECRET", ""),
            razorpay_api_url=env.get("RAZORPAY_API_URL", "https://api.razorpay.com/v1"),
            gateway_timeout_seconds=float(env.get("GATEWAY_TIMEOUT_SECONDS", "10")),
            admin_password=env.get("ADMIN_PASSWORD", ""),
            chief_official_user_ids=_split_csv(env.get("CHIEF_OFFICIAL_USER_IDS", "")),
            ledger_backend=env.get("LEDGER_BACKEND", "mongo").lower(),
            ledger_max_attempts=int(env.get("LEDGER_MAX_ATTEMPTS", "5")),
            cors_origins=_split_csv(env.get("CORS_ORIGINS", "*")),
            log_level=env.get("LOG_LEVEL", "INFO"),
        )
