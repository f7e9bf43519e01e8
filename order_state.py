"""
Order model and status state machine

Statuses form a closed enumeration. Every write goes through the transition
table below; anything not listed is rejected instead of being written as a
free-form string.
"""

import json
import re
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional

from payment_errors import InvalidTransition

# Product category used by the storefront for wallet recharges
WALLET_RECHARGE_CATEGORY = "Recarga de Saldo"


class OrderStatus(Enum):
    """Order lifecycle states"""
    PENDING = "pending"
    PENDING_CONFIRMATION = "pending_confirmation"
    PROCESSING = "processing"
    CONFIRMED = "confirmed"
    CONFIRMED_ERROR_BALANCE = "confirmed_error_balance"
    CONFIRMED_ERROR_DB = "confirmed_error_db"
    FAILED_MISMATCH = "failed_mismatch"
    FAILED_EXPIRED = "failed_expired"
    FAILED_ERROR = "failed_error"
    FAILED_CANCELLED = "failed_cancelled"
    DONE = "done"

    @classmethod
    def failed(cls, reason: str) -> "OrderStatus":
        """Map a provider failure reason to its failed_<reason> status"""
        return cls(f"failed_{reason.lower()}")

    @property
    def is_failed(self) -> bool:
        return self.value.startswith("failed_")

    @property
    def is_terminal(self) -> bool:
        return self is OrderStatus.DONE


class OrderKind(Enum):
    WALLET_TOPUP = "wallet_topup"
    PRODUCT_PURCHASE = "product_purchase"


_FAILED = frozenset(s for s in OrderStatus if s.is_failed)
_CONFIRMED_ERRORS = frozenset({OrderStatus.CONFIRMED_ERROR_BALANCE, OrderStatus.CONFIRMED_ERROR_DB})

# Outcomes a claimed (processing) order may be finalized into
_CLAIM_OUTCOMES = frozenset({
    OrderStatus.DONE,
    OrderStatus.CONFIRMED,
}) | _CONFIRMED_ERRORS

ALLOWED_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({
        OrderStatus.PENDING_CONFIRMATION,
        OrderStatus.PROCESSING,
    }) | _FAILED,
    OrderStatus.PENDING_CONFIRMATION: frozenset({OrderStatus.PROCESSING}) | _FAILED,
    OrderStatus.PROCESSING: _CLAIM_OUTCOMES,
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.CONFIRMED_ERROR_BALANCE: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.CONFIRMED_ERROR_DB: frozenset({OrderStatus.PROCESSING}),
    # A late payment can still arrive after a provider reported a failure
    OrderStatus.FAILED_MISMATCH: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.FAILED_EXPIRED: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.FAILED_ERROR: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.FAILED_CANCELLED: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.DONE: frozenset(),
}

# States a processing claim can be released back to when the claimed work aborts
RELEASABLE_CLAIMS: FrozenSet[OrderStatus] = frozenset(
    s for s, targets in ALLOWED_TRANSITIONS.items() if OrderStatus.PROCESSING in targets
)

# Prior states from which an operator may mark an order as done
OPERATOR_CLAIMABLE: FrozenSet[OrderStatus] = frozenset({OrderStatus.PENDING, OrderStatus.CONFIRMED})

# States from which a provider confirmation starts the confirmation flow
WEBHOOK_CLAIMABLE: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.PENDING,
    OrderStatus.PENDING_CONFIRMATION,
}) | _FAILED | _CONFIRMED_ERRORS


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: OrderStatus, target: OrderStatus, order_id: Optional[str] = None) -> None:
    """Raise InvalidTransition unless current -> target is in the table"""
    if not can_transition(current, target):
        raise InvalidTransition(current.value, target.value, order_id)


def derive_order_kind(product_category: Optional[str]) -> OrderKind:
    if (product_category or "").strip() == WALLET_RECHARGE_CATEGORY:
        return OrderKind.WALLET_TOPUP
    return OrderKind.PRODUCT_PURCHASE


def normalize_phone(phone: Optional[str]) -> Optional[str]:
    """Keep digits only, prefixed with '+' (WhatsApp style)"""
    if not phone:
        return None
    digits = re.sub(r"\D", "", str(phone))
    return f"+{digits}" if digits else None


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def _load_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


@dataclass
class Order:
    """A purchase or wallet top-up tracked from checkout to fulfillment"""
    order_id: str
    status: OrderStatus
    product_category: Optional[str]
    base_amount: Optional[Decimal]
    final_amount: Decimal
    currency: str = "USD"
    user_id: Optional[str] = None
    provider: Optional[str] = None
    provider_details: Dict[str, Any] = field(default_factory=dict)
    cart_details: List[Dict[str, Any]] = field(default_factory=list)
    email: Optional[str] = None
    phone: Optional[str] = None
    notification_chat_id: Optional[str] = None
    notification_message_id: Optional[int] = None
    created_at: Optional[Any] = None

    @property
    def order_kind(self) -> OrderKind:
        return derive_order_kind(self.product_category)

    @property
    def is_wallet_topup(self) -> bool:
        return self.order_kind is OrderKind.WALLET_TOPUP

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Order":
        """Build an Order from a RealDictCursor row"""
        return cls(
            order_id=row["order_id"],
            status=OrderStatus(row["status"]),
            product_category=row.get("product_category"),
            base_amount=_to_decimal(row.get("base_amount")),
            final_amount=_to_decimal(row.get("final_amount")) or Decimal("0"),
            currency=(row.get("currency") or "USD").upper(),
            user_id=row.get("user_id"),
            provider=row.get("provider"),
            provider_details=_load_json(row.get("provider_details"), {}),
            cart_details=_load_json(row.get("cart_details"), []),
            email=row.get("email"),
            phone=row.get("phone"),
            notification_chat_id=row.get("notification_chat_id"),
            notification_message_id=row.get("notification_message_id"),
            created_at=row.get("created_at"),
        )


@dataclass
class CreditOutcome:
    """What happened to the wallet while an order was being confirmed"""
    attempted: bool = False
    credited: bool = False
    already_applied: bool = False
    amount_usd: Optional[Decimal] = None
    new_balance: Optional[Decimal] = None
    error: Optional[str] = None
    needs_review: bool = False
    # Fee-inclusive final_amount was credited because base_amount was missing
    used_final_amount_fallback: bool = False
    # Ledger call timed out: the credit may or may not have been committed
    uncertain: bool = False

    @property
    def succeeded(self) -> bool:
        return self.credited or self.already_applied
