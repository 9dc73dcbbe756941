"""
Reservation Service — ドメインモデル

Item と Reservation の 2 エンティティ。
available / reserved / confirmed は保存せず、読み取り時に集計する。
"""

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel


class ReservationStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class Item(BaseModel):
    id: UUID
    name: str
    total_quantity: int
    created_at: datetime
    updated_at: datetime


class ItemStatus(Item):
    """商品ステータス（集計値つき）"""
    available_quantity: int
    reserved_quantity: int
    confirmed_quantity: int


class Reservation(BaseModel):
    """
    予約 — 商品在庫に対する一時的な確保。

    confirmed_at / cancelled_at はどちらか一方だけが、遷移時に一度だけセットされる。
    """
    id: UUID
    item_id: UUID
    customer_id: str
    quantity: int
    status: ReservationStatus
    created_at: datetime
    expires_at: datetime
    confirmed_at: datetime | None = None
    cancelled_at: datetime | None = None


class ExpireReservationsResult(BaseModel):
    expired_count: int
    expired_reservation_ids: list[UUID]
