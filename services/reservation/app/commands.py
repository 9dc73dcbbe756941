"""
Reservation Service — コマンドハンドラ (Write 側)

予約のライフサイクル（作成・確定・キャンセル）を処理する。

排他制御はアプリ側では一切行わない。ステータス変更は
「status = 'PENDING' のときだけ」という条件付き UPDATE に任せ、
競合に負けた側は再読込して冪等な成功か競合エラーかを決める。

注意: 作成時の受付チェック（利用可能数の確認）と INSERT はアトミックではない。
高い並行度では確認と INSERT の間に他の予約が入り、わずかに売り越す可能性がある。
"""

import logging
from datetime import datetime, timedelta, timezone
from uuid import UUID

import redis.asyncio as aioredis

from . import events, queries
from .aggregate import is_past_expiry
from .errors import (
    InsufficientQuantity,
    ItemNotFound,
    ReservationCancelled,
    ReservationConfirmed,
    ReservationExpired,
    ReservationNotFound,
    ReservationStateChanged,
)
from .models import Item, Reservation, ReservationStatus
from .store import ReservationStore

logger = logging.getLogger(__name__)

# 予約の有効期限（分）
RESERVATION_EXPIRY_MINUTES = 1


async def create_item(
    store: ReservationStore,
    redis: aioredis.Redis,
    name: str,
    total_quantity: int,
) -> Item:
    """商品登録コマンド"""
    item = await store.insert_item(name.strip(), total_quantity)

    await events.publish(
        redis,
        events.ItemCreated(
            item_id=item.id,
            name=item.name,
            total_quantity=item.total_quantity,
            timestamp=item.created_at,
        ),
    )
    logger.info("Created item %s (total_quantity=%d)", item.id, item.total_quantity)
    return item


async def create_reservation(
    store: ReservationStore,
    redis: aioredis.Redis,
    item_id: UUID,
    customer_id: str,
    quantity: int,
) -> Reservation:
    """
    予約作成コマンド

    1. 商品の存在確認
    2. 利用可能数を確認（期限内 PENDING + CONFIRMED を差し引いた数）
    3. 有効期限 = 現在時刻 + RESERVATION_EXPIRY_MINUTES
    4. PENDING で INSERT
    """
    if not await store.item_exists(item_id):
        raise ItemNotFound()

    available = await queries.get_available_quantity(store, item_id)
    if available < quantity:
        raise InsufficientQuantity(available=available, requested=quantity)

    expires_at = datetime.now(timezone.utc) + timedelta(minutes=RESERVATION_EXPIRY_MINUTES)
    reservation = await store.insert_reservation(item_id, customer_id, quantity, expires_at)

    await events.publish(
        redis,
        events.ReservationCreated(
            reservation_id=reservation.id,
            item_id=reservation.item_id,
            customer_id=reservation.customer_id,
            quantity=reservation.quantity,
            expires_at=reservation.expires_at,
            timestamp=reservation.created_at,
        ),
    )
    logger.info(
        "Reserved %d of item %s for %s (reservation %s)",
        quantity, item_id, customer_id, reservation.id,
    )
    return reservation


async def confirm_reservation(
    store: ReservationStore,
    redis: aioredis.Redis,
    reservation_id: UUID,
) -> Reservation:
    """
    予約確定コマンド

    - 冪等: 確定済みなら何もせずそのまま返す
    - キャンセル済み・期限切れは確定できない
    """
    reservation = await store.get_reservation(reservation_id)
    if reservation is None:
        raise ReservationNotFound()

    if reservation.status == ReservationStatus.CONFIRMED:
        return reservation
    if reservation.status == ReservationStatus.CANCELLED:
        raise ReservationCancelled("Cannot confirm a cancelled reservation")
    if reservation.status == ReservationStatus.EXPIRED:
        raise ReservationExpired("Cannot confirm an expired reservation")

    now = datetime.now(timezone.utc)
    if is_past_expiry(reservation, now):
        raise ReservationExpired("Cannot confirm an expired reservation")

    confirmed = await store.transition_reservation(
        reservation_id, ReservationStatus.CONFIRMED, now
    )
    if confirmed is None:
        # 競合に負けた: 再読込して結果を決める
        current = await store.get_reservation(reservation_id)
        if current is not None and current.status == ReservationStatus.CONFIRMED:
            return current
        if current is not None and is_past_expiry(current, now):
            raise ReservationExpired("Cannot confirm an expired reservation")
        logger.warning("Reservation %s changed state during confirm", reservation_id)
        raise ReservationStateChanged()

    await events.publish(
        redis,
        events.ReservationConfirmed(
            reservation_id=confirmed.id,
            item_id=confirmed.item_id,
            quantity=confirmed.quantity,
            timestamp=now,
        ),
    )
    logger.info("Confirmed reservation %s", reservation_id)
    return confirmed


async def cancel_reservation(
    store: ReservationStore,
    redis: aioredis.Redis,
    reservation_id: UUID,
) -> Reservation:
    """
    予約キャンセルコマンド

    - 冪等: キャンセル済みなら何もせずそのまま返す
    - 確定済みはキャンセルできない（確定分は恒久的）
    - 確保していた数量を利用可能数に戻す
    """
    reservation = await store.get_reservation(reservation_id)
    if reservation is None:
        raise ReservationNotFound()

    if reservation.status == ReservationStatus.CANCELLED:
        return reservation
    if reservation.status == ReservationStatus.EXPIRED:
        raise ReservationExpired("Cannot cancel an expired reservation")
    if reservation.status == ReservationStatus.CONFIRMED:
        raise ReservationConfirmed("Cannot cancel a confirmed reservation")

    now = datetime.now(timezone.utc)
    if is_past_expiry(reservation, now):
        raise ReservationExpired("Cannot cancel an expired reservation")

    cancelled = await store.transition_reservation(
        reservation_id, ReservationStatus.CANCELLED, now
    )
    if cancelled is None:
        current = await store.get_reservation(reservation_id)
        if current is not None and current.status in (
            ReservationStatus.CANCELLED,
            ReservationStatus.EXPIRED,
        ):
            return current
        if current is not None and is_past_expiry(current, now):
            raise ReservationExpired("Cannot cancel an expired reservation")
        logger.warning("Reservation %s changed state during cancel", reservation_id)
        raise ReservationConfirmed("Reservation state changed")

    await events.publish(
        redis,
        events.ReservationCancelled(
            reservation_id=cancelled.id,
            item_id=cancelled.item_id,
            quantity=cancelled.quantity,
            timestamp=now,
        ),
    )
    logger.info("Cancelled reservation %s", reservation_id)
    return cancelled
