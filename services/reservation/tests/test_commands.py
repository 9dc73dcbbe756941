"""Reservation lifecycle: create, confirm, cancel."""

import asyncio
from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from app import commands, queries
from app.errors import (
    InsufficientQuantity,
    ItemNotFound,
    ReservationCancelled,
    ReservationConfirmed,
    ReservationExpired,
    ReservationNotFound,
    ReservationStateChanged,
)
from app.models import ReservationStatus
from fakes import UnreachableRedis

pytestmark = pytest.mark.asyncio


async def _item(store, redis, total=5, name="Widget"):
    return await commands.create_item(store, redis, name, total)


class TestCreateItem:

    async def test_name_is_trimmed_and_event_published(self, store, redis):
        item = await commands.create_item(store, redis, "  Widget  ", 3)

        assert item.name == "Widget"
        assert item.total_quantity == 3
        assert redis.published[-1][0] == "reservation_events"
        assert redis.event_types() == ["ItemCreated"]


class TestCreateReservation:

    async def test_creates_pending_hold_with_expiry(self, store, redis):
        item = await _item(store, redis)
        before = datetime.now(timezone.utc)

        reservation = await commands.create_reservation(store, redis, item.id, "alice", 2)

        assert reservation.status == ReservationStatus.PENDING
        assert reservation.item_id == item.id
        assert reservation.customer_id == "alice"
        assert reservation.quantity == 2
        assert reservation.confirmed_at is None
        assert reservation.cancelled_at is None
        window = timedelta(minutes=commands.RESERVATION_EXPIRY_MINUTES)
        assert before + window <= reservation.expires_at <= datetime.now(timezone.utc) + window
        assert redis.event_types()[-1] == "ReservationCreated"

    async def test_unknown_item_rejected(self, store, redis):
        with pytest.raises(ItemNotFound):
            await commands.create_reservation(store, redis, uuid4(), "alice", 1)

        assert store.reservations == {}

    async def test_scenario_a_insufficient_quantity(self, store, redis):
        item = await _item(store, redis, total=2)

        first = await commands.create_reservation(store, redis, item.id, "alice", 2)
        assert first.status == ReservationStatus.PENDING

        with pytest.raises(InsufficientQuantity) as exc_info:
            await commands.create_reservation(store, redis, item.id, "bob", 1)

        assert exc_info.value.available == 0
        assert exc_info.value.requested == 1
        assert "Available: 0, Requested: 1" in exc_info.value.message
        assert len(store.reservations) == 1

    async def test_expired_hold_frees_quantity_before_sweep(self, store, redis):
        item = await _item(store, redis, total=2)
        store.add_reservation(item.id, 2, expires_in=timedelta(seconds=-1))

        reservation = await commands.create_reservation(store, redis, item.id, "bob", 2)

        assert reservation.status == ReservationStatus.PENDING


class TestConfirmReservation:

    async def test_scenario_b(self, store, redis):
        item = await _item(store, redis, total=5)
        reservation = await commands.create_reservation(store, redis, item.id, "alice", 1)

        confirmed = await commands.confirm_reservation(store, redis, reservation.id)
        assert confirmed.status == ReservationStatus.CONFIRMED
        assert confirmed.confirmed_at is not None

        again = await commands.confirm_reservation(store, redis, reservation.id)
        assert again.status == ReservationStatus.CONFIRMED
        assert again.confirmed_at == confirmed.confirmed_at

        with pytest.raises(ReservationConfirmed):
            await commands.cancel_reservation(store, redis, reservation.id)

    async def test_repeat_confirm_has_no_second_effect(self, store, redis):
        item = await _item(store, redis, total=5)
        reservation = await commands.create_reservation(store, redis, item.id, "alice", 2)

        await commands.confirm_reservation(store, redis, reservation.id)
        await commands.confirm_reservation(store, redis, reservation.id)

        status = await queries.get_item_status(store, item.id)
        assert status.confirmed_quantity == 2
        assert status.available_quantity == 3
        assert redis.event_types().count("ReservationConfirmed") == 1

    async def test_missing_reservation(self, store, redis):
        with pytest.raises(ReservationNotFound):
            await commands.confirm_reservation(store, redis, uuid4())

    async def test_cancelled_cannot_be_confirmed(self, store, redis):
        item = await _item(store, redis)
        reservation = store.add_reservation(item.id, 1, status=ReservationStatus.CANCELLED)

        with pytest.raises(ReservationCancelled):
            await commands.confirm_reservation(store, redis, reservation.id)

    async def test_expired_cannot_be_confirmed(self, store, redis):
        item = await _item(store, redis)
        reservation = store.add_reservation(item.id, 1, status=ReservationStatus.EXPIRED)

        with pytest.raises(ReservationExpired):
            await commands.confirm_reservation(store, redis, reservation.id)

    async def test_stale_pending_rejected_before_sweep(self, store, redis):
        item = await _item(store, redis)
        reservation = store.add_reservation(item.id, 1, expires_in=timedelta(seconds=-1))

        with pytest.raises(ReservationExpired):
            await commands.confirm_reservation(store, redis, reservation.id)

        assert store.reservations[reservation.id].status == ReservationStatus.PENDING
        assert store.transition_attempts == 0

    async def test_racing_confirms_transition_once(self, store, redis):
        item = await _item(store, redis)
        reservation = store.add_reservation(item.id, 1)

        first, second = await asyncio.gather(
            commands.confirm_reservation(store, redis, reservation.id),
            commands.confirm_reservation(store, redis, reservation.id),
        )

        assert store.transition_attempts == 2
        assert first.status == second.status == ReservationStatus.CONFIRMED
        assert first.confirmed_at == second.confirmed_at
        assert redis.event_types().count("ReservationConfirmed") == 1

    async def test_confirm_losing_to_cancel_is_a_conflict(self, store, redis):
        item = await _item(store, redis)
        reservation = store.add_reservation(item.id, 1)

        cancelled, confirm_result = await asyncio.gather(
            commands.cancel_reservation(store, redis, reservation.id),
            commands.confirm_reservation(store, redis, reservation.id),
            return_exceptions=True,
        )

        assert cancelled.status == ReservationStatus.CANCELLED
        assert isinstance(confirm_result, ReservationStateChanged)
        assert store.reservations[reservation.id].confirmed_at is None


class TestCancelReservation:

    async def test_cancel_releases_quantity(self, store, redis):
        item = await _item(store, redis, total=3)
        reservation = await commands.create_reservation(store, redis, item.id, "alice", 3)

        cancelled = await commands.cancel_reservation(store, redis, reservation.id)

        assert cancelled.status == ReservationStatus.CANCELLED
        assert cancelled.cancelled_at is not None
        assert cancelled.confirmed_at is None
        assert await queries.get_available_quantity(store, item.id) == 3
        assert redis.event_types()[-1] == "ReservationCancelled"

    async def test_cancel_is_idempotent(self, store, redis):
        item = await _item(store, redis)
        reservation = await commands.create_reservation(store, redis, item.id, "alice", 1)

        first = await commands.cancel_reservation(store, redis, reservation.id)
        second = await commands.cancel_reservation(store, redis, reservation.id)

        assert second.cancelled_at == first.cancelled_at
        assert redis.event_types().count("ReservationCancelled") == 1

    async def test_missing_reservation(self, store, redis):
        with pytest.raises(ReservationNotFound):
            await commands.cancel_reservation(store, redis, uuid4())

    async def test_expired_cannot_be_cancelled(self, store, redis):
        item = await _item(store, redis)
        reservation = store.add_reservation(item.id, 1, status=ReservationStatus.EXPIRED)

        with pytest.raises(ReservationExpired):
            await commands.cancel_reservation(store, redis, reservation.id)

    async def test_stale_pending_rejected_before_sweep(self, store, redis):
        item = await _item(store, redis)
        reservation = store.add_reservation(item.id, 1, expires_in=timedelta(seconds=-1))

        with pytest.raises(ReservationExpired):
            await commands.cancel_reservation(store, redis, reservation.id)

    async def test_cancel_losing_to_confirm_is_a_conflict(self, store, redis):
        item = await _item(store, redis)
        reservation = store.add_reservation(item.id, 1)

        confirmed, cancel_result = await asyncio.gather(
            commands.confirm_reservation(store, redis, reservation.id),
            commands.cancel_reservation(store, redis, reservation.id),
            return_exceptions=True,
        )

        assert confirmed.status == ReservationStatus.CONFIRMED
        assert isinstance(cancel_result, ReservationConfirmed)
        assert cancel_result.message == "Reservation state changed"


class TestAccountingInvariant:

    async def test_holds_plus_confirmed_never_exceed_total(self, store, redis):
        item = await _item(store, redis, total=4)

        def check():
            now = datetime.now(timezone.utc)
            live = sum(
                r.quantity for r in store.reservations.values()
                if r.status == ReservationStatus.PENDING and r.expires_at > now
            )
            confirmed = sum(
                r.quantity for r in store.reservations.values()
                if r.status == ReservationStatus.CONFIRMED
            )
            assert live + confirmed <= item.total_quantity

        a = await commands.create_reservation(store, redis, item.id, "a", 2)
        check()
        b = await commands.create_reservation(store, redis, item.id, "b", 2)
        check()
        with pytest.raises(InsufficientQuantity):
            await commands.create_reservation(store, redis, item.id, "c", 1)
        check()

        await asyncio.gather(
            commands.confirm_reservation(store, redis, a.id),
            commands.cancel_reservation(store, redis, b.id),
        )
        check()

        c = await commands.create_reservation(store, redis, item.id, "c", 2)
        check()
        with pytest.raises(InsufficientQuantity):
            await commands.create_reservation(store, redis, item.id, "d", 1)
        await commands.confirm_reservation(store, redis, c.id)
        check()

        status = await queries.get_item_status(store, item.id)
        assert status.confirmed_quantity == 4
        assert status.available_quantity == 0

    async def test_concurrent_creates_within_stock_all_admitted(self, store, redis):
        item = await _item(store, redis, total=3)

        results = await asyncio.gather(*(
            commands.create_reservation(store, redis, item.id, f"c{i}", 1)
            for i in range(3)
        ))

        assert [r.status for r in results] == [ReservationStatus.PENDING] * 3
        assert await queries.get_available_quantity(store, item.id) == 0

    async def test_concurrent_creates_race_the_admission_check(self, store, redis):
        # Availability check and insert are not atomic: creates that read the
        # same snapshot are all admitted.
        item = await _item(store, redis, total=1)

        results = await asyncio.gather(
            *(
                commands.create_reservation(store, redis, item.id, f"c{i}", 1)
                for i in range(3)
            ),
            return_exceptions=True,
        )

        admitted = [r for r in results if not isinstance(r, Exception)]
        assert len(admitted) == 3
        status = await queries.get_item_status(store, item.id)
        assert status.reserved_quantity == 3
        assert status.available_quantity == -2


class TestHoldExpiringMidCommand:

    @pytest.fixture
    def expire_after_first_read(self, store, monkeypatch):
        """Moves expires_at into the past right after the command's first read."""
        original = store.get_reservation
        reads = []

        async def get_reservation(reservation_id):
            reservation = await original(reservation_id)
            reads.append(reservation_id)
            if len(reads) == 1 and reservation is not None:
                store.reservations[reservation_id] = reservation.model_copy(
                    update={"expires_at": datetime.now(timezone.utc) - timedelta(seconds=1)}
                )
            return reservation

        monkeypatch.setattr(store, "get_reservation", get_reservation)

    async def test_confirm_is_rejected(self, store, redis, expire_after_first_read):
        item = await _item(store, redis)
        reservation = store.add_reservation(item.id, 1)

        with pytest.raises(ReservationExpired):
            await commands.confirm_reservation(store, redis, reservation.id)

        assert store.reservations[reservation.id].status == ReservationStatus.PENDING
        assert "ReservationConfirmed" not in redis.event_types()

    async def test_cancel_is_rejected(self, store, redis, expire_after_first_read):
        item = await _item(store, redis)
        reservation = store.add_reservation(item.id, 1)

        with pytest.raises(ReservationExpired):
            await commands.cancel_reservation(store, redis, reservation.id)

        assert store.reservations[reservation.id].cancelled_at is None


class TestPublishFailure:

    async def test_create_keeps_the_hold(self, store, caplog):
        redis = UnreachableRedis()
        item = await store.insert_item("Widget", 1)

        reservation = await commands.create_reservation(store, redis, item.id, "alice", 1)

        assert store.reservations[reservation.id].status == ReservationStatus.PENDING
        assert await queries.get_available_quantity(store, item.id) == 0
        assert "Failed to publish ReservationCreated" in caplog.text

    async def test_confirm_and_cancel_still_succeed(self, store):
        redis = UnreachableRedis()
        item = await store.insert_item("Widget", 2)
        a = store.add_reservation(item.id, 1)
        b = store.add_reservation(item.id, 1)

        confirmed = await commands.confirm_reservation(store, redis, a.id)
        cancelled = await commands.cancel_reservation(store, redis, b.id)

        assert confirmed.status == ReservationStatus.CONFIRMED
        assert cancelled.status == ReservationStatus.CANCELLED
