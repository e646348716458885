"""Tests for the reservation engine: reserve, cancel, fulfill and expire."""
import json
from datetime import timedelta, timezone
from uuid import uuid4

import pytest
from sqlalchemy import select

from shared.events import EventType
from shared.outbox import OutboxMessage
from services.stock_service.exceptions import (
    InsufficientStockError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from services.stock_service.models import MovementReason, ReservationStatus, ReservationType
from services.stock_service.reservation_engine import ReservationEngine, ReservationLine


async def _outbox_types(database):
    async with database.session_factory() as session:
        result = await session.execute(select(OutboxMessage).order_by(OutboxMessage.created_at))
        return [message.event_type for message in result.scalars().all()]


class TestReserve:

    async def test_reserve_holds_stock(self, reservation_engine, make_record, ledger_state):
        record_id = await make_record(total=100)

        reservation_id = await reservation_engine.reserve(
            record_id, 10, fulfillment_ref="PICK-1", reserved_by="alice", notes="rush"
        )

        reservation = await reservation_engine.get_reservation(reservation_id)
        assert reservation.status == ReservationStatus.ACTIVE.value
        assert reservation.requested_quantity == 10
        assert reservation.fulfillment_ref == "PICK-1"
        assert reservation.reserved_by == "alice"
        assert reservation.notes == "rush"
        assert reservation.reserved_at is not None
        assert reservation.expires_at is None
        assert await ledger_state(record_id) == (100, 10, 10)

    async def test_insufficient_stock_reports_shortfall(self, reservation_engine, make_record, ledger_state):
        record_id = await make_record(total=20, reserved=15)

        with pytest.raises(InsufficientStockError) as exc_info:
            await reservation_engine.reserve(record_id, 8)

        assert exc_info.value.requested == 8
        assert exc_info.value.available == 5
        assert exc_info.value.shortfall == 3
        assert await ledger_state(record_id) == (20, 15, 15)

    async def test_reserving_exactly_available_drains_it(self, reservation_engine, make_record, projection):
        record_id = await make_record(total=30, reserved=12)

        await reservation_engine.reserve(record_id, 18)

        availability = await projection.get(record_id)
        assert availability.available == 0
        assert availability.reserved == 30

    async def test_one_over_available_changes_nothing(self, reservation_engine, make_record, ledger_state):
        record_id = await make_record(total=30, reserved=12)

        with pytest.raises(InsufficientStockError):
            await reservation_engine.reserve(record_id, 19)

        assert await ledger_state(record_id) == (30, 12, 12)
        reservations = await reservation_engine.list_reservations(inventory_record_id=record_id)
        assert len(reservations) == 1

    async def test_missing_record(self, reservation_engine):
        with pytest.raises(NotFoundError):
            await reservation_engine.reserve(uuid4(), 1)

    @pytest.mark.parametrize("quantity", [0, -5, True, 2.5, "3"])
    async def test_rejects_bad_quantity(self, reservation_engine, make_record, ledger_state, quantity):
        record_id = await make_record(total=10)

        with pytest.raises(ValidationError):
            await reservation_engine.reserve(record_id, quantity)

        assert await ledger_state(record_id) == (10, 0, 0)

    async def test_rejects_malformed_record_id(self, reservation_engine):
        with pytest.raises(ValidationError, match="Malformed inventory_record_id"):
            await reservation_engine.reserve("not-a-uuid", 1)

    async def test_accepts_string_record_id(self, reservation_engine, make_record):
        record_id = await make_record(total=10)

        reservation_id = await reservation_engine.reserve(str(record_id), 1)

        reservation = await reservation_engine.get_reservation(str(reservation_id))
        assert reservation.inventory_record_id == record_id

    async def test_ttl_sets_expiry(self, reservation_engine, make_record):
        record_id = await make_record(total=10)

        reservation_id = await reservation_engine.reserve(record_id, 1, ttl_seconds=600)

        reservation = await reservation_engine.get_reservation(reservation_id)
        assert reservation.expires_at - reservation.reserved_at == timedelta(seconds=600)

    async def test_default_ttl_applies(self, database, make_record):
        engine = ReservationEngine(database.session_factory, default_ttl_seconds=60)
        record_id = await make_record(total=10)

        reservation = await engine.get_reservation(await engine.reserve(record_id, 1))

        assert reservation.expires_at - reservation.reserved_at == timedelta(seconds=60)

    async def test_rejects_non_positive_ttl(self, reservation_engine, make_record):
        record_id = await make_record(total=10)

        with pytest.raises(ValidationError):
            await reservation_engine.reserve(record_id, 1, ttl_seconds=0)

    async def test_anonymous_reservations_allowed_by_default(self, reservation_engine, make_record):
        record_id = await make_record(total=10)

        reservation = await reservation_engine.get_reservation(
            await reservation_engine.reserve(record_id, 1, reserved_by="  ")
        )

        assert reservation.reserved_by is None

    async def test_require_actor(self, database, make_record):
        engine = ReservationEngine(database.session_factory, require_actor=True)
        record_id = await make_record(total=10)

        with pytest.raises(ValidationError, match="reserved_by is required"):
            await engine.reserve(record_id, 1)

        reservation_id = await engine.reserve(record_id, 1, reserved_by="bob")
        with pytest.raises(ValidationError, match="cancelled_by is required"):
            await engine.cancel(reservation_id)

    async def test_writes_reserved_event(self, reservation_engine, make_record, database):
        record_id = await make_record(total=10)

        reservation_id = await reservation_engine.reserve(record_id, 4, fulfillment_ref="PICK-9")

        async with database.session_factory() as session:
            result = await session.execute(
                select(OutboxMessage).where(OutboxMessage.event_type == EventType.STOCK_RESERVED.value)
            )
            message = result.scalar_one()
        payload = json.loads(message.event_data)
        assert payload["reservation_id"] == str(reservation_id)
        assert payload["quantity"] == 4
        assert payload["fulfillment_ref"] == "PICK-9"
        assert message.aggregate_id == record_id

    async def test_failed_reserve_writes_no_event(self, reservation_engine, make_record, database):
        record_id = await make_record(total=1)

        with pytest.raises(InsufficientStockError):
            await reservation_engine.reserve(record_id, 2)

        assert EventType.STOCK_RESERVED.value not in await _outbox_types(database)

    async def test_dedupe_returns_existing_hold(self, reservation_engine, make_record, ledger_state):
        record_id = await make_record(total=10)

        first = await reservation_engine.reserve(
            record_id, 4, fulfillment_ref="PICK-7", dedupe_on_fulfillment_ref=True
        )
        again = await reservation_engine.reserve(
            record_id, 4, fulfillment_ref="PICK-7", dedupe_on_fulfillment_ref=True
        )

        assert again == first
        assert await ledger_state(record_id) == (10, 4, 4)

    async def test_dedupe_wins_over_insufficient_stock(self, reservation_engine, make_record, ledger_state):
        record_id = await make_record(total=5)
        first = await reservation_engine.reserve(
            record_id, 5, fulfillment_ref="PICK-7", dedupe_on_fulfillment_ref=True
        )

        again = await reservation_engine.reserve(
            record_id, 5, fulfillment_ref="PICK-7", dedupe_on_fulfillment_ref=True
        )

        assert again == first
        assert await ledger_state(record_id) == (5, 5, 5)

    async def test_same_ref_on_another_record_is_not_a_duplicate(
        self, reservation_engine, make_record, ledger_state
    ):
        record_id = await make_record(total=10)
        other_id = await make_record(total=10)

        first = await reservation_engine.reserve(
            record_id, 2, fulfillment_ref="PICK-7", dedupe_on_fulfillment_ref=True
        )
        second = await reservation_engine.reserve(
            other_id, 2, fulfillment_ref="PICK-7", dedupe_on_fulfillment_ref=True
        )

        assert first != second
        assert await ledger_state(other_id) == (10, 2, 2)

    async def test_without_dedupe_same_ref_reserves_twice(self, reservation_engine, make_record, ledger_state):
        record_id = await make_record(total=10)

        await reservation_engine.reserve(record_id, 2, fulfillment_ref="PICK-7")
        await reservation_engine.reserve(record_id, 2, fulfillment_ref="PICK-7")

        assert await ledger_state(record_id) == (10, 4, 4)

    async def test_reservation_type(self, reservation_engine, make_record):
        record_id = await make_record(total=10)

        default = await reservation_engine.get_reservation(await reservation_engine.reserve(record_id, 1))
        transfer = await reservation_engine.get_reservation(
            await reservation_engine.reserve(record_id, 1, reservation_type="transfer")
        )

        assert default.reservation_type == "fulfillment"
        assert transfer.reservation_type == "transfer"
        with pytest.raises(ValidationError, match="Unknown reservation type"):
            await reservation_engine.reserve(record_id, 1, reservation_type="loan")


class TestCancel:

    async def test_round_trip_restores_reserved(self, reservation_engine, make_record, ledger_state):
        record_id = await make_record(total=100, reserved=7)

        reservation_id = await reservation_engine.reserve(record_id, 10)
        assert await ledger_state(record_id) == (100, 17, 17)

        await reservation_engine.cancel(reservation_id, cancelled_by="alice")

        assert await ledger_state(record_id) == (100, 7, 7)
        reservation = await reservation_engine.get_reservation(reservation_id)
        assert reservation.status == ReservationStatus.CANCELLED.value
        assert reservation.cancelled_by == "alice"
        assert reservation.cancelled_at is not None
        assert reservation.fulfilled_at is None

    async def test_double_cancel_fails_second_time(self, reservation_engine, make_record, ledger_state):
        record_id = await make_record(total=10)
        reservation_id = await reservation_engine.reserve(record_id, 3)

        await reservation_engine.cancel(reservation_id)
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            await reservation_engine.cancel(reservation_id)

        assert exc_info.value.current == "cancelled"
        assert exc_info.value.target == "cancelled"
        assert await ledger_state(record_id) == (10, 0, 0)

    async def test_reason_appended_to_notes(self, reservation_engine, make_record):
        record_id = await make_record(total=10)
        reservation_id = await reservation_engine.reserve(record_id, 3, notes="for order 12")

        await reservation_engine.cancel(reservation_id, reason="customer changed mind")

        reservation = await reservation_engine.get_reservation(reservation_id)
        assert reservation.notes == "for order 12\ncustomer changed mind"

    async def test_cancel_unknown_reservation(self, reservation_engine):
        with pytest.raises(NotFoundError):
            await reservation_engine.cancel(uuid4())

    async def test_cancel_after_fulfill_rejected(self, reservation_engine, make_record, ledger_state):
        record_id = await make_record(total=10)
        reservation_id = await reservation_engine.reserve(record_id, 3)
        await reservation_engine.fulfill(reservation_id)

        with pytest.raises(InvalidStateTransitionError):
            await reservation_engine.cancel(reservation_id)

        assert await ledger_state(record_id) == (7, 0, 0)


class TestFulfill:

    async def test_fulfill_commits_deduction(
        self, reservation_engine, make_record, ledger_state, movement_log
    ):
        record_id = await make_record(total=50, reserved=15)
        reservation_id = await reservation_engine.reserve(record_id, 5)
        assert await ledger_state(record_id) == (50, 20, 20)

        movement_id = await reservation_engine.fulfill(reservation_id, fulfilled_by="picker-3")

        assert await ledger_state(record_id) == (45, 15, 15)
        reservation = await reservation_engine.get_reservation(reservation_id)
        assert reservation.status == ReservationStatus.FULFILLED.value
        assert reservation.fulfilled_by == "picker-3"
        assert reservation.fulfilled_at is not None

        movements = await movement_log.list_movements(reservation_id=reservation_id)
        assert len(movements) == 1
        movement = movements[0]
        assert movement.id == movement_id
        assert movement.reason == MovementReason.RESERVATION_FULFILLED.value
        assert movement.quantity_change == -5
        assert (movement.total_before, movement.total_after) == (50, 45)
        assert (movement.reserved_before, movement.reserved_after) == (20, 15)
        assert movement.performed_by == "picker-3"

    async def test_fulfill_after_cancel_rejected(
        self, reservation_engine, make_record, ledger_state, movement_log
    ):
        record_id = await make_record(total=10)
        reservation_id = await reservation_engine.reserve(record_id, 3)
        await reservation_engine.cancel(reservation_id)

        with pytest.raises(InvalidStateTransitionError):
            await reservation_engine.fulfill(reservation_id)

        assert await ledger_state(record_id) == (10, 0, 0)
        assert await movement_log.list_movements(reservation_id=reservation_id) == []

    async def test_double_fulfill_logs_one_movement(
        self, reservation_engine, make_record, ledger_state, movement_log
    ):
        record_id = await make_record(total=10)
        reservation_id = await reservation_engine.reserve(record_id, 3)
        await reservation_engine.fulfill(reservation_id)

        with pytest.raises(InvalidStateTransitionError):
            await reservation_engine.fulfill(reservation_id)

        assert await ledger_state(record_id) == (7, 0, 0)
        assert len(await movement_log.list_movements(reservation_id=reservation_id)) == 1

    async def test_fulfill_writes_event(self, reservation_engine, make_record, database):
        record_id = await make_record(total=10)
        reservation_id = await reservation_engine.reserve(record_id, 3)

        await reservation_engine.fulfill(reservation_id)

        assert await _outbox_types(database) == [
            EventType.STOCK_ADJUSTED.value,  # opening stock
            EventType.STOCK_RESERVED.value,
            EventType.RESERVATION_FULFILLED.value,
        ]


class TestExpire:

    async def test_expire_releases_hold(self, reservation_engine, make_record, ledger_state):
        record_id = await make_record(total=10)
        reservation_id = await reservation_engine.reserve(record_id, 4, ttl_seconds=1)

        await reservation_engine.expire(reservation_id)

        assert await ledger_state(record_id) == (10, 0, 0)
        reservation = await reservation_engine.get_reservation(reservation_id)
        assert reservation.status == ReservationStatus.EXPIRED.value
        assert reservation.expired_at is not None

    async def test_expire_after_fulfill_rejected(self, reservation_engine, make_record, ledger_state):
        record_id = await make_record(total=10)
        reservation_id = await reservation_engine.reserve(record_id, 4)
        await reservation_engine.fulfill(reservation_id)

        with pytest.raises(InvalidStateTransitionError):
            await reservation_engine.expire(reservation_id)

        assert await ledger_state(record_id) == (6, 0, 0)


class TestInvariants:

    async def test_mixed_sequence_preserves_invariants(
        self, reservation_engine, ledger, make_record, assert_invariants
    ):
        record_id = await make_record(total=40)
        held = []

        for quantity in (5, 10, 3, 7):
            held.append(await reservation_engine.reserve(record_id, quantity))
            await assert_invariants(record_id)

        await reservation_engine.cancel(held[1])
        await assert_invariants(record_id)

        await reservation_engine.fulfill(held[0])
        await assert_invariants(record_id)

        with pytest.raises(InsufficientStockError):
            await reservation_engine.reserve(record_id, 26)
        await assert_invariants(record_id)

        await reservation_engine.expire(held[2])
        await ledger.adjust_stock(record_id, -10)
        await reservation_engine.fulfill(held[3])

        total, reserved = await assert_invariants(record_id)
        assert (total, reserved) == (18, 0)


class TestBulk:

    async def test_reserve_many_reports_each_line(self, reservation_engine, make_record, ledger_state):
        first = await make_record(total=10)
        second = await make_record(total=2)

        result = await reservation_engine.reserve_many(
            [
                ReservationLine(inventory_record_id=first, quantity=4),
                ReservationLine(inventory_record_id=second, quantity=5),
                ReservationLine(inventory_record_id=uuid4(), quantity=1),
            ],
            fulfillment_ref="PO-77",
        )

        assert not result.success
        assert len(result.reservation_ids) == 1
        assert result.total_reserved == 4
        assert [failure["code"] for failure in result.failures] == ["insufficient_stock", "not_found"]
        assert result.failures[0]["shortfall"] == 3
        assert await ledger_state(first) == (10, 4, 4)
        assert await ledger_state(second) == (2, 0, 0)

    async def test_fulfill_many(self, reservation_engine, make_record, ledger_state):
        record_id = await make_record(total=10)
        first = await reservation_engine.reserve(record_id, 2)
        second = await reservation_engine.reserve(record_id, 3)
        await reservation_engine.cancel(second)

        result = await reservation_engine.fulfill_many([first, second], fulfilled_by="picker")

        assert result.fulfilled == [first]
        assert result.failures[0]["reservation_id"] == str(second)
        assert result.failures[0]["code"] == "invalid_state_transition"
        assert await ledger_state(record_id) == (8, 0, 0)


class TestQueries:

    async def test_list_filters(self, reservation_engine, make_record):
        record_id = await make_record(total=10)
        other_id = await make_record(total=10)
        active = await reservation_engine.reserve(record_id, 1, fulfillment_ref="A")
        cancelled = await reservation_engine.reserve(record_id, 1, fulfillment_ref="B")
        await reservation_engine.reserve(other_id, 1, fulfillment_ref="A")
        await reservation_engine.cancel(cancelled)

        by_status = await reservation_engine.list_reservations(
            inventory_record_id=record_id, status=ReservationStatus.ACTIVE
        )
        assert [r.id for r in by_status] == [active]

        by_ref = await reservation_engine.list_reservations(fulfillment_ref="A")
        assert len(by_ref) == 2

        found = await reservation_engine.find_by_fulfillment_ref(record_id, "B")
        assert found.id == cancelled
        assert await reservation_engine.find_by_fulfillment_ref(record_id, "C") is None

    async def test_list_filters_by_record_location(self, reservation_engine, ledger, make_record):
        here = await make_record(total=10)
        elsewhere = await ledger.create_record("SKU-X", "C-09-01", "WH-2", total_quantity=10)
        near = await reservation_engine.reserve(here, 1, reserved_by="alice")
        far = await reservation_engine.reserve(elsewhere.id, 1, reserved_by="bob")

        by_warehouse = await reservation_engine.list_reservations(warehouse_id="WH-2")
        assert [r.id for r in by_warehouse] == [far]

        by_location = await reservation_engine.list_reservations(location="A-01-01")
        assert [r.id for r in by_location] == [near]

        both = await reservation_engine.list_reservations(warehouse_id="WH-2", location="A-01-01")
        assert both == []

        by_actor = await reservation_engine.list_reservations(reserved_by="alice")
        assert [r.id for r in by_actor] == [near]

    async def test_list_filters_by_type(self, reservation_engine, make_record):
        record_id = await make_record(total=10)
        picking = await reservation_engine.reserve(record_id, 1)
        moving = await reservation_engine.reserve(record_id, 2, reservation_type=ReservationType.TRANSFER)

        transfers = await reservation_engine.list_reservations(reservation_type="transfer")
        assert [r.id for r in transfers] == [moving]
        assert transfers[0].reservation_type == ReservationType.TRANSFER.value

        fulfillment = await reservation_engine.list_reservations(reservation_type=ReservationType.FULFILLMENT)
        assert [r.id for r in fulfillment] == [picking]

        with pytest.raises(ValidationError):
            await reservation_engine.list_reservations(reservation_type="loan")

    async def test_list_filters_by_reserved_at_range(self, reservation_engine, make_record):
        record_id = await make_record(total=10)
        ids = [await reservation_engine.reserve(record_id, 1) for _ in range(3)]
        first, middle, last = [await reservation_engine.get_reservation(i) for i in ids]

        only_middle = await reservation_engine.list_reservations(
            date_from=middle.reserved_at, date_to=middle.reserved_at
        )
        assert [r.id for r in only_middle] == [middle.id]

        from_middle = await reservation_engine.list_reservations(
            date_from=middle.reserved_at.replace(tzinfo=timezone.utc)
        )
        assert [r.id for r in from_middle] == [last.id, middle.id]

        until_middle = await reservation_engine.list_reservations(date_to=middle.reserved_at)
        assert [r.id for r in until_middle] == [middle.id, first.id]

    @pytest.mark.parametrize("limit", [0, -1, 1001])
    async def test_list_rejects_out_of_range_limit(self, reservation_engine, movement_log, ledger, limit):
        with pytest.raises(ValidationError):
            await reservation_engine.list_reservations(limit=limit)
        with pytest.raises(ValidationError):
            await movement_log.list_movements(limit=limit)
        with pytest.raises(ValidationError):
            await ledger.list_records(limit=limit)

    async def test_get_unknown_reservation(self, reservation_engine):
        with pytest.raises(NotFoundError):
            await reservation_engine.get_reservation(uuid4())
