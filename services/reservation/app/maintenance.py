"""
Reservation Service — メンテナンス（期限切れスイープ）

外部トリガー（POST /v1/maintenance/expire-reservations）から呼ばれる。
内部スケジューラは持たない。

数量計算は期限切れの PENDING を最初から除外しているので、
スイープ前でも在庫は期限到来の時点で利用可能に戻っている。
スイープはステータスを EXPIRED に揃えるだけ。
"""

import logging
from datetime import datetime, timezone

import redis.asyncio as aioredis

from . import events
from .models import ExpireReservationsResult
from .store import ReservationStore

logger = logging.getLogger(__name__)


async def expire_reservations(
    store: ReservationStore,
    redis: aioredis.Redis,
) -> ExpireReservationsResult:
    """
    期限を過ぎた PENDING 予約をまとめて EXPIRED にする。

    返す ID は実際に UPDATE できたものだけ。SELECT と UPDATE の間に
    確定・キャンセルされた予約は含まれない。
    """
    now = datetime.now(timezone.utc)

    stale_ids = await store.find_stale_pending_ids(now)
    if not stale_ids:
        return ExpireReservationsResult(expired_count=0, expired_reservation_ids=[])

    expired_ids = await store.mark_expired(stale_ids)
    if len(expired_ids) < len(stale_ids):
        logger.info(
            "%d reservations changed state before the sweep could expire them",
            len(stale_ids) - len(expired_ids),
        )

    if expired_ids:
        await events.publish(
            redis,
            events.ReservationsExpired(reservation_ids=expired_ids, timestamp=now),
        )
    logger.info("Expired %d reservations", len(expired_ids))

    return ExpireReservationsResult(
        expired_count=len(expired_ids),
        expired_reservation_ids=expired_ids,
    )
