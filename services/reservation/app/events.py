"""
Reservation Service — イベント定義

状態変更が確定した後に Redis Pub/Sub (reservation_events) へ発行する。
イベントは過去形で命名し、不変として扱う。
"""

import json
import logging
from datetime import datetime
from uuid import UUID

import redis.asyncio as aioredis
from pydantic import BaseModel
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

CHANNEL = "reservation_events"


class ItemCreated(BaseModel):
    """商品が登録された"""
    item_id: UUID
    name: str
    total_quantity: int
    timestamp: datetime


class ReservationCreated(BaseModel):
    """予約(一時確保)が作成された"""
    reservation_id: UUID
    item_id: UUID
    customer_id: str
    quantity: int
    expires_at: datetime
    timestamp: datetime


class ReservationConfirmed(BaseModel):
    """予約が確定された（在庫を恒久的に差し引く）"""
    reservation_id: UUID
    item_id: UUID
    quantity: int
    timestamp: datetime


class ReservationCancelled(BaseModel):
    """予約がキャンセルされた（確保分を解放）"""
    reservation_id: UUID
    item_id: UUID
    quantity: int
    timestamp: datetime


class ReservationsExpired(BaseModel):
    """期限切れの予約がまとめて EXPIRED になった"""
    reservation_ids: list[UUID]
    timestamp: datetime


async def publish(redis: aioredis.Redis, event: BaseModel) -> None:
    """
    イベントを発行する。

    状態はすでに DB にコミット済み。イベントは通知にすぎないので、
    Redis の障害はログに残して握りつぶし、呼び出し元の結果は変えない。
    """
    event_type = type(event).__name__
    try:
        await redis.publish(
            CHANNEL,
            json.dumps(
                {"event_type": event_type, "data": event.model_dump(mode="json")},
                default=str,
            ),
        )
    except RedisError:
        logger.exception("Failed to publish %s", event_type)
