"""
Reservation Service — クエリハンドラ (Read 側) / 数量計算

数量の「reserved」には 2 つの定義があり、意図的に使い分ける:

  get_available_quantity (作成時の受付チェック)
      reserved = 期限内 (expires_at > now) の PENDING のみ
  get_item_status (ステータスレポート)
      reserved = 期限に関係なくすべての PENDING

どちらも confirmed = CONFIRMED の合計。統合しないこと。
"""

from datetime import datetime, timezone
from uuid import UUID

from .aggregate import ItemLedger
from .errors import ItemNotFound, ReservationNotFound
from .models import Item, ItemStatus, Reservation, ReservationStatus
from .store import ReservationStore


async def get_available_quantity(store: ReservationStore, item_id: UUID) -> int:
    """
    受付チェック用の利用可能数。

    Available = Total - Pending(期限内) - Confirmed
    """
    item = await store.get_item(item_id)
    if item is None:
        raise ItemNotFound()

    now = datetime.now(timezone.utc)
    ledger = ItemLedger(
        item.total_quantity,
        reserved=await store.sum_reservation_quantity(
            item_id, ReservationStatus.PENDING, expires_after=now
        ),
        confirmed=await store.sum_reservation_quantity(
            item_id, ReservationStatus.CONFIRMED
        ),
    )
    return ledger.available


async def get_item_status(store: ReservationStore, item_id: UUID) -> ItemStatus:
    """商品の内訳 (total / available / reserved / confirmed) を返す。"""
    item = await store.get_item(item_id)
    if item is None:
        raise ItemNotFound()

    ledger = ItemLedger(
        item.total_quantity,
        reserved=await store.sum_reservation_quantity(
            item_id, ReservationStatus.PENDING
        ),
        confirmed=await store.sum_reservation_quantity(
            item_id, ReservationStatus.CONFIRMED
        ),
    )
    return ItemStatus(
        **item.model_dump(),
        available_quantity=ledger.available,
        reserved_quantity=ledger.reserved,
        confirmed_quantity=ledger.confirmed,
    )


async def list_items(store: ReservationStore) -> list[Item]:
    """全商品（新しい順）"""
    return await store.list_items()


async def get_reservation(store: ReservationStore, reservation_id: UUID) -> Reservation:
    reservation = await store.get_reservation(reservation_id)
    if reservation is None:
        raise ReservationNotFound()
    return reservation


async def list_reservations(store: ReservationStore) -> list[Reservation]:
    """全予約（新しい順）"""
    return await store.list_reservations()
