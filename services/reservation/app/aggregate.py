"""
Reservation Service — 在庫台帳と予約の状態遷移

在庫数は保存せず、予約行から毎回集計する。
available = total - reserved - confirmed で算出。

状態遷移:
    PENDING → CONFIRMED  (確定: 在庫を恒久的に差し引く)
    PENDING → CANCELLED  (キャンセル: 確保分を解放)
    PENDING → EXPIRED    (期限切れ: スイープで解放)
右辺はすべて終端状態。ALLOWED_TRANSITIONS がこの表そのもの。
"""

from datetime import datetime

from .models import Reservation, ReservationStatus

ALLOWED_TRANSITIONS: dict[ReservationStatus, frozenset[ReservationStatus]] = {
    ReservationStatus.PENDING: frozenset({
        ReservationStatus.CONFIRMED,
        ReservationStatus.CANCELLED,
        ReservationStatus.EXPIRED,
    }),
}


def can_transition(current: ReservationStatus, target: ReservationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def is_past_expiry(reservation: Reservation, now: datetime) -> bool:
    """スイープ前でも期限を過ぎた PENDING は失効扱い（遅延失効）"""
    return reservation.status == ReservationStatus.PENDING and now > reservation.expires_at


class ItemLedger:
    """1 商品ぶんの数量の内訳"""

    def __init__(self, total_quantity: int, reserved: int = 0, confirmed: int = 0) -> None:
        self.total_quantity = total_quantity
        self.reserved = reserved
        self.confirmed = confirmed

    @property
    def available(self) -> int:
        return self.total_quantity - self.reserved - self.confirmed
