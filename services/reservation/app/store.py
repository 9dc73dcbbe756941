"""
Reservation Service — ストアアダプタ

PostgreSQL が唯一の正(System of Record)であり、唯一の同期点。
予約行のステータス変更は必ず「status = 'PENDING' のときだけ」という
条件付き UPDATE で行う（ステータス列に対する compare-and-swap）。

SQLAlchemy のエラーはすべて DatabaseError に包んで送出する。リトライはしない。
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from uuid import UUID, uuid4

from sqlalchemy import bindparam, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .aggregate import can_transition
from .errors import DatabaseError
from .models import Item, Reservation, ReservationStatus

logger = logging.getLogger(__name__)

# 遷移先ステータス → その遷移で一度だけセットするタイムスタンプ列
_TRANSITION_COLUMNS = {
    ReservationStatus.CONFIRMED: "confirmed_at",
    ReservationStatus.CANCELLED: "cancelled_at",
}


@contextmanager
def _database_errors(message: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error("%s: %s", message, exc)
        raise DatabaseError(message) from exc


def _to_item(row) -> Item:
    return Item(
        id=str(row.id),
        name=row.name,
        total_quantity=row.total_quantity,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_reservation(row) -> Reservation:
    return Reservation(
        id=str(row.id),
        item_id=str(row.item_id),
        customer_id=row.customer_id,
        quantity=row.quantity,
        status=row.status,
        created_at=row.created_at,
        expires_at=row.expires_at,
        confirmed_at=row.confirmed_at,
        cancelled_at=row.cancelled_at,
    )


class ReservationStore:
    """
    items / reservations テーブルへのアクセスをまとめたアダプタ。

    起動時に一度だけ生成し、各コンポーネントへ明示的に渡す。
    メソッドごとにセッションを開き、書き込みはその場でコミットする。
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    # ── Items ────────────────────────────────────

    async def insert_item(self, name: str, total_quantity: int) -> Item:
        now = datetime.now(timezone.utc)
        with _database_errors("Failed to create item"):
            async with self._session_factory() as session:
                result = await session.execute(
                    text("""
                        INSERT INTO items (id, name, total_quantity, created_at, updated_at)
                        VALUES (:id, :name, :total_quantity, :now, :now)
                        RETURNING *
                    """),
                    {
                        "id": str(uuid4()),
                        "name": name,
                        "total_quantity": total_quantity,
                        "now": now,
                    },
                )
                row = result.fetchone()
                await session.commit()
        return _to_item(row)

    async def get_item(self, item_id: UUID) -> Item | None:
        with _database_errors("Failed to fetch item"):
            async with self._session_factory() as session:
                result = await session.execute(
                    text("SELECT * FROM items WHERE id = :id"),
                    {"id": str(item_id)},
                )
                row = result.fetchone()
        return _to_item(row) if row else None

    async def item_exists(self, item_id: UUID) -> bool:
        with _database_errors("Failed to check item existence"):
            async with self._session_factory() as session:
                result = await session.execute(
                    text("SELECT 1 FROM items WHERE id = :id"),
                    {"id": str(item_id)},
                )
                return result.fetchone() is not None

    async def list_items(self) -> list[Item]:
        with _database_errors("Failed to fetch items"):
            async with self._session_factory() as session:
                result = await session.execute(
                    text("SELECT * FROM items ORDER BY created_at DESC"),
                )
                rows = result.fetchall()
        return [_to_item(row) for row in rows]

    # ── Reservations ─────────────────────────────

    async def sum_reservation_quantity(
        self,
        item_id: UUID,
        status: ReservationStatus,
        expires_after: datetime | None = None,
    ) -> int:
        """
        指定ステータスの予約数量の合計。

        expires_after を渡すと expires_at がそれより後の行だけを数える。
        """
        sql = """
            SELECT COALESCE(SUM(quantity), 0) AS total
            FROM reservations
            WHERE item_id = :item_id AND status = :status
        """
        params = {"item_id": str(item_id), "status": status.value}
        if expires_after is not None:
            sql += " AND expires_at > :expires_after"
            params["expires_after"] = expires_after

        with _database_errors("Failed to fetch reservations"):
            async with self._session_factory() as session:
                result = await session.execute(text(sql), params)
                total = result.scalar_one()
        return int(total)

    async def insert_reservation(
        self,
        item_id: UUID,
        customer_id: str,
        quantity: int,
        expires_at: datetime,
    ) -> Reservation:
        now = datetime.now(timezone.utc)
        with _database_errors("Failed to create reservation"):
            async with self._session_factory() as session:
                result = await session.execute(
                    text("""
                        INSERT INTO reservations
                            (id, item_id, customer_id, quantity, status, created_at, expires_at)
                        VALUES
                            (:id, :item_id, :customer_id, :quantity, 'PENDING', :now, :expires_at)
                        RETURNING *
                    """),
                    {
                        "id": str(uuid4()),
                        "item_id": str(item_id),
                        "customer_id": customer_id,
                        "quantity": quantity,
                        "now": now,
                        "expires_at": expires_at,
                    },
                )
                row = result.fetchone()
                await session.commit()
        return _to_reservation(row)

    async def get_reservation(self, reservation_id: UUID) -> Reservation | None:
        with _database_errors("Failed to fetch reservation"):
            async with self._session_factory() as session:
                result = await session.execute(
                    text("SELECT * FROM reservations WHERE id = :id"),
                    {"id": str(reservation_id)},
                )
                row = result.fetchone()
        return _to_reservation(row) if row else None

    async def list_reservations(self) -> list[Reservation]:
        with _database_errors("Failed to fetch reservations"):
            async with self._session_factory() as session:
                result = await session.execute(
                    text("SELECT * FROM reservations ORDER BY created_at DESC"),
                )
                rows = result.fetchall()
        return [_to_reservation(row) for row in rows]

    async def transition_reservation(
        self,
        reservation_id: UUID,
        status: ReservationStatus,
        now: datetime,
    ) -> Reservation | None:
        """
        PENDING → CONFIRMED / CANCELLED の条件付き UPDATE。

        書き込み時点で status が PENDING でない、または期限を過ぎていれば
        0 行となり None を返す。競合した 2 リクエストのうち成功するのは 1 つだけ。
        """
        # EXPIRED は mark_expired で一括処理する
        if status not in _TRANSITION_COLUMNS or not can_transition(
            ReservationStatus.PENDING, status
        ):
            raise ValueError(f"Unsupported reservation transition to {status.value}")
        column = _TRANSITION_COLUMNS[status]
        with _database_errors(f"Failed to update reservation to {status.value}"):
            async with self._session_factory() as session:
                result = await session.execute(
                    text(f"""
                        UPDATE reservations
                        SET status = :status, {column} = :now
                        WHERE id = :id AND status = 'PENDING' AND expires_at >= :now
                        RETURNING *
                    """),
                    {"id": str(reservation_id), "status": status.value, "now": now},
                )
                row = result.fetchone()
                await session.commit()
        return _to_reservation(row) if row else None

    async def find_stale_pending_ids(self, now: datetime) -> list[UUID]:
        """期限を過ぎた PENDING 予約の ID 一覧（複合インデックス (status, expires_at) を使う）"""
        with _database_errors("Failed to fetch expired reservations"):
            async with self._session_factory() as session:
                result = await session.execute(
                    text("""
                        SELECT id FROM reservations
                        WHERE status = 'PENDING' AND expires_at < :now
                    """),
                    {"now": now},
                )
                rows = result.fetchall()
        return [UUID(str(row.id)) for row in rows]

    async def mark_expired(self, reservation_ids: list[UUID]) -> list[UUID]:
        """
        一括で EXPIRED にする。まだ PENDING の行だけが対象。

        SELECT から UPDATE までの間に確定・キャンセルされた行は黙って除外される。
        実際に更新した行の ID を返す。
        """
        if not reservation_ids:
            return []
        stmt = text("""
            UPDATE reservations
            SET status = 'EXPIRED'
            WHERE id IN :ids AND status = 'PENDING'
            RETURNING id
        """).bindparams(bindparam("ids", expanding=True))
        with _database_errors("Failed to expire reservations"):
            async with self._session_factory() as session:
                result = await session.execute(
                    stmt, {"ids": [str(rid) for rid in reservation_ids]}
                )
                rows = result.fetchall()
                await session.commit()
        return [UUID(str(row.id)) for row in rows]
