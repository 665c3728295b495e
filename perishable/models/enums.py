# perishable/models/enums.py
from enum import Enum


class ReservationStatus(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    EXPIRED = "expired"  # 仅 TTL 扫描可写入
    CANCELLED = "cancelled"  # 买家/后台主动取消

    @property
    def is_terminal(self) -> bool:
        return self is not ReservationStatus.PENDING


class ReleaseReason(str, Enum):
    """Ledger.release 的调用方语义：决定终态是 expired 还是 cancelled。"""

    EXPIRED = "expired"
    CANCELLED = "cancelled"

    @property
    def terminal_status(self) -> ReservationStatus:
        return ReservationStatus(self.value)


class MovementReason(str, Enum):
    RESERVATION_HOLD = "reservation_hold"
    RESERVATION_RELEASE = "reservation_release"
    RESERVATION_COMMIT = "reservation_commit"
    MANUAL_ADJUSTMENT = "manual_adjustment"


class ChargeStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    EXPIRED = "expired"
    FAILED = "failed"


class DeliveryPriority(str, Enum):
    HIGH = "high"
    NORMAL = "normal"
