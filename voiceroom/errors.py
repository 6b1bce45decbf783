from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    BUSINESS = "business"
    AUTHORIZATION = "authorization"
    EXTERNAL = "external"
    CONFLICT = "conflict"


class ErrorCode(str, Enum):
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_GIFT = "INVALID_GIFT"
    INVALID_PACK = "INVALID_PACK"
    INVALID_ROLE = "INVALID_ROLE"
    INVALID_CODE = "INVALID_CODE"
    BELOW_MINIMUM = "BELOW_MINIMUM"

    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INSUFFICIENT_COINS = "INSUFFICIENT_COINS"
    INSUFFICIENT_DIAMONDS = "INSUFFICIENT_DIAMONDS"
    RATE_LIMIT = "RATE_LIMIT"
    INVALID_TRANSACTION = "INVALID_TRANSACTION"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    ALREADY_COUNTED = "ALREADY_COUNTED"
    AGENCY_NOT_FOUND = "AGENCY_NOT_FOUND"
    AGENCY_CODE_UNAVAILABLE = "AGENCY_CODE_UNAVAILABLE"
    ALREADY_BOUND = "ALREADY_BOUND"
    NO_COMMISSION = "NO_COMMISSION"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    ORDER_NOT_COMPLETED = "ORDER_NOT_COMPLETED"
    REPLAY = "REPLAY"
    COOLDOWN = "COOLDOWN"
    NOT_PENDING = "NOT_PENDING"
    NOT_HOST = "NOT_HOST"
    ROOM_NOT_FOUND = "ROOM_NOT_FOUND"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    ALREADY_DISTRIBUTED = "ALREADY_DISTRIBUTED"

    UNAUTHORIZED = "UNAUTHORIZED"
    ADMIN_ONLY = "ADMIN_ONLY"
    INVALID_PASSWORD = "INVALID_PASSWORD"

    PAYMENTS_NOT_CONFIGURED = "PAYMENTS_NOT_CONFIGURED"
    GATEWAY_UNAVAILABLE = "GATEWAY_UNAVAILABLE"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"

    CONFLICT = "CONFLICT"


ERROR_MESSAGES = {
    ErrorCode.INVALID_REQUEST: "Invalid request",
    ErrorCode.INVALID_GIFT: "Invalid gift",
    ErrorCode.INVALID_PACK: "Invalid pack. Choose a valid amount.",
    ErrorCode.INVALID_ROLE: "Invalid role",
    ErrorCode.INVALID_CODE: "Invalid or your own code",
    ErrorCode.BELOW_MINIMUM: "Minimum withdrawal is ₹100",
    ErrorCode.INSUFFICIENT_BALANCE: "Insufficient balance",
    ErrorCode.INSUFFICIENT_COINS: "Insufficient coins",
    ErrorCode.INSUFFICIENT_DIAMONDS: "Insufficient diamonds",
    ErrorCode.RATE_LIMIT: "Too many gifts. Try again in a minute.",
    ErrorCode.INVALID_TRANSACTION: "Invalid transaction",
    ErrorCode.INVALID_AMOUNT: "Invalid transaction",
    ErrorCode.ALREADY_COUNTED: "Already counted",
    ErrorCode.AGENCY_NOT_FOUND: "Create agency first",
    ErrorCode.AGENCY_CODE_UNAVAILABLE: "Could not allocate an agency code. Try again.",
    ErrorCode.ALREADY_BOUND: "Already bound to an inviter",
    ErrorCode.NO_COMMISSION: "No commission to withdraw",
    ErrorCode.ORDER_NOT_FOUND: "Order not found",
    ErrorCode.ORDER_NOT_COMPLETED: "Order is not completed",
    ErrorCode.REPLAY: "Payment already processed",
    ErrorCode.COOLDOWN: "Please wait 24 hours between withdrawals",
    ErrorCode.NOT_PENDING: "Request not found or already processed",
    ErrorCode.NOT_HOST: "Not the host",
    ErrorCode.ROOM_NOT_FOUND: "Room not found",
    ErrorCode.USER_NOT_FOUND: "User not found",
    ErrorCode.ALREADY_DISTRIBUTED: "Rewards already distributed for this week",
    ErrorCode.UNAUTHORIZED: "Unauthorized",
    ErrorCode.ADMIN_ONLY: "Admin only",
    ErrorCode.INVALID_PASSWORD: "Invalid password",
    ErrorCode.PAYMENTS_NOT_CONFIGURED: "Payments not configured",
    ErrorCode.GATEWAY_UNAVAILABLE: "Could not create order",
    ErrorCode.INVALID_SIGNATURE: "Invalid signature",
    ErrorCode.CONFLICT: "Server busy. Please try again.",
}

ERROR_KINDS = {
    ErrorCode.INVALID_REQUEST: ErrorKind.VALIDATION,
    ErrorCode.INVALID_GIFT: ErrorKind.VALIDATION,
    ErrorCode.INVALID_PACK: ErrorKind.VALIDATION,
    ErrorCode.INVALID_ROLE: ErrorKind.VALIDATION,
    ErrorCode.BELOW_MINIMUM: ErrorKind.VALIDATION,
    ErrorCode.UNAUTHORIZED: ErrorKind.AUTHORIZATION,
    ErrorCode.ADMIN_ONLY: ErrorKind.AUTHORIZATION,
    ErrorCode.INVALID_PASSWORD: ErrorKind.AUTHORIZATION,
    ErrorCode.PAYMENTS_NOT_CONFIGURED: ErrorKind.EXTERNAL,
    ErrorCode.GATEWAY_UNAVAILABLE: ErrorKind.EXTERNAL,
    ErrorCode.INVALID_SIGNATURE: ErrorKind.EXTERNAL,
    ErrorCode.CONFLICT: ErrorKind.CONFLICT,
}


class EconomyError(Exception):
    """A rejected economy operation, reported to the caller as a tagged message."""

    def __init__(self, code: ErrorCode, message: Optional[str] = None):
        self.code = code
        self.message = message or ERROR_MESSAGES.get(code, "Request failed")
        super().__init__(f"{code.value}: {self.message}")

    @property
    def kind(self) -> ErrorKind:
        return ERROR_KINDS.get(self.code, ErrorKind.BUSINESS)

    def to_response(self) -> dict:
        return {"success": False, "error": self.message, "code": self.code.value}


class TransactionConflict(Exception):
    """The ledger refused a commit because a record read by it changed."""


class CorruptRecordError(Exception):
    """A stored document does not match its record schema."""

    def __init__(self, collection: str, key: str, detail: str):
        self.collection = collection
        self.key = key
        super().__init__(f"Malformed {collection}/{key}: {detail}")
