"""Tests for the sync orchestrator."""

from datetime import datetime, timedelta

import pytest
import pytz

from calsync_reconcile.database import DatabaseManager
from calsync_reconcile.identity import IdentityStore
from calsync_reconcile.models import (
    RecurrenceException, RecurrenceFrequency, RecurrenceRule, RecurrenceState,
    Side, SyncDirection
)
from calsync_reconcile.prompts import ConfirmationGate, ScriptedGate
from calsync_reconcile.recurrence import classify
from calsync_reconcile.services import (
    CalendarServiceError, ConnectionUnavailableError, SnapshotCalendarService
)
from calsync_reconcile.sync_engine import SyncEngine

from conftest import BASE_TIME


class FailingDeleteService(SnapshotCalendarService):
    """Snapshot provider whose deletions always fail."""

    async def delete_event(self, event):
        raise CalendarServiceError(f"Cannot delete {event.id}")


class CancellingService(SnapshotCalendarService):
    """Snapshot provider that requests cancellation after its first creation."""

    engine = None

    async def create_event(self, event):
        created = await super().create_event(event)
        self.engine.cancel()
        return created


def services(left_events=(), right_events=(), left_cls=SnapshotCalendarService):
    left = left_cls(Side.LEFT, 'left-cal', events=list(left_events))
    right = SnapshotCalendarService(Side.RIGHT, 'right-cal', events=list(right_events))
    return left, right


def recent(minutes=1):
    return datetime.now(pytz.UTC) + timedelta(minutes=minutes)


@pytest.fixture
def store():
    return IdentityStore()


@pytest.mark.asyncio
async def test_right_to_left_creates_linked_copies(make_settings, make_event, store):
    left, right = services(right_events=[
        make_event("r0", side=Side.RIGHT, summary="One"),
        make_event("r1", side=Side.RIGHT, summary="Two", start=BASE_TIME + timedelta(days=1)),
    ])

    async with SyncEngine(make_settings(), left, right, gate=ConfirmationGate(auto_answer=True)) as engine:
        report = await engine.sync()

    assert report.created == 2
    assert sorted(e.summary for e in left.events.values()) == ["One", "Two"]
    assert sorted(store.get_foreign_event_id(e) for e in left.events.values()) == ["r0", "r1"]
    assert sorted(left.released) == sorted(left.events)


@pytest.mark.asyncio
async def test_second_sync_is_quiet(make_settings, make_event):
    left, right = services(right_events=[make_event("r0", side=Side.RIGHT)])

    async with SyncEngine(make_settings(), left, right) as engine:
        await engine.sync()
        report = await engine.sync()

    assert report.total_operations == 0
    assert len(left.events) == 1


@pytest.mark.asyncio
async def test_updates_and_deletions_follow_the_right(make_settings, make_event):
    left, right = services(right_events=[
        make_event("r0", side=Side.RIGHT, summary="Keep"),
        make_event("r1", side=Side.RIGHT, summary="Drop", start=BASE_TIME + timedelta(days=1)),
    ])

    async with SyncEngine(make_settings(), left, right) as engine:
        await engine.sync()
        right.events["r0"].summary = "Renamed"
        right.events["r0"].updated = recent()
        del right.events["r1"]
        report = await engine.sync()

    assert report.updated == 1
    assert report.deleted == 1
    assert [e.summary for e in left.events.values()] == ["Renamed"]


@pytest.mark.asyncio
async def test_orphans_are_reclaimed_then_compared(make_settings, make_event, store):
    left, right = services(
        left_events=[make_event("l0", summary="Lunch")],
        right_events=[make_event("r0", side=Side.RIGHT, summary="Lunch", location="Cafe")],
    )

    async with SyncEngine(make_settings(), left, right) as engine:
        first = await engine.sync()
        assert first.reclaimed == 1
        assert first.created == 0 and first.deleted == 0
        assert store.get_foreign_event_id(left.events["l0"]) == "r0"

        second = await engine.sync()

    assert second.updated == 1
    assert left.events["l0"].location == "Cafe"
    assert not store.is_force_resync(left.events["l0"])


@pytest.mark.asyncio
async def test_unreadable_source_does_not_wipe_its_copy(make_settings, make_event, store):
    left_item = make_event("l0", summary="Lunch")
    store.set_link(left_item, "r0", "right-cal")
    broken = make_event("r0", side=Side.RIGHT, summary="Lunch", start=None, updated=recent())
    left, right = services(left_events=[left_item], right_events=[broken])

    async with SyncEngine(make_settings(), left, right) as engine:
        report = await engine.sync()

    kept = left.events["l0"]
    assert kept.start == BASE_TIME
    assert kept.end == BASE_TIME + timedelta(minutes=60)
    assert report.updated == 0
    assert report.deleted == 0
    assert report.skipped == 1


@pytest.mark.asyncio
async def test_dry_run_writes_nothing(make_settings, make_event):
    left, right = services(right_events=[make_event("r0", side=Side.RIGHT)])

    async with SyncEngine(make_settings(), left, right) as engine:
        report = await engine.sync(dry_run=True)

    assert report.created == 1
    assert report.changes[0].startswith("[DRY RUN]")
    assert left.events == {}


@pytest.mark.asyncio
async def test_series_is_created_with_its_exceptions(make_settings, make_event):
    week = timedelta(days=7)
    master = make_event(
        "r0",
        side=Side.RIGHT,
        summary="Standup",
        recurrence=RecurrenceRule(frequency=RecurrenceFrequency.WEEKLY, by_day=["MO"], count=6),
        exceptions=[
            RecurrenceException(original_start=BASE_TIME + week, cancelled=True),
            RecurrenceException(
                original_start=BASE_TIME + 2 * week,
                override=make_event("r0_2", side=Side.RIGHT, summary="Standup (late)",
                                    start=BASE_TIME + 2 * week + timedelta(hours=3),
                                    recurring_event_id="r0"),
            ),
        ],
    )
    left, right = services(right_events=[master])

    async with SyncEngine(make_settings(), left, right) as engine:
        report = await engine.sync()

    (copy,) = left.events.values()
    assert report.created == 1
    assert classify(copy) is RecurrenceState.SERIES_MASTER
    assert [e.original_start for e in copy.exceptions] == [BASE_TIME + week, BASE_TIME + 2 * week]
    assert copy.exceptions[1].override.summary == "Standup (late)"


class TestBidirectional:
    """Tests for two-way sync."""

    @pytest.mark.asyncio
    async def test_creates_both_ways_with_reverse_links(self, make_settings, make_event, store):
        settings = make_settings(direction=SyncDirection.BIDIRECTIONAL)
        left, right = services(
            left_events=[make_event("l0", summary="From left")],
            right_events=[make_event("r0", side=Side.RIGHT, summary="From right",
                                     start=BASE_TIME + timedelta(days=1))],
        )

        async with SyncEngine(settings, left, right, db_manager=DatabaseManager(settings)) as engine:
            first = await engine.sync()
            second = await engine.sync()

        assert first.created == 2
        assert second.total_operations == 0
        assert len(left.events) == 2 and len(right.events) == 2
        for item in right.events.values():
            assert store.get_foreign_collection_id(item) == "left-cal"
            assert store.get_foreign_event_id(item) in left.events
        for item in left.events.values():
            assert store.get_foreign_event_id(item) in right.events

    @pytest.mark.asyncio
    async def test_deleted_on_right_is_deleted_on_left(self, make_settings, make_event):
        settings = make_settings(direction=SyncDirection.BIDIRECTIONAL)
        left, right = services(left_events=[make_event("l0", summary="Shared")])

        async with SyncEngine(settings, left, right, db_manager=DatabaseManager(settings)) as engine:
            await engine.sync()
            (copy_id,) = right.events
            del right.events[copy_id]
            # Linked during the last run, so not yet known to be in sync
            kept = await engine.sync()
            report = await engine.sync()

        assert kept.deleted == 0
        assert kept.suppressed_deletions == 1
        assert report.deleted == 1
        assert left.events == {}

    @pytest.mark.asyncio
    async def test_engine_write_echo_is_skipped(self, make_settings, make_event, store):
        settings = make_settings(direction=SyncDirection.BIDIRECTIONAL)
        t = BASE_TIME
        left_item = make_event("l0", summary="Mine", updated=t - timedelta(seconds=20))
        right_item = make_event("r0", side=Side.RIGHT, summary="Theirs", updated=t - timedelta(seconds=10))
        store.set_link(left_item, "r0", "right-cal")
        store.set_engine_last_modified(right_item, t - timedelta(seconds=12))
        left, right = services()

        result = SyncEngine(settings, left, right).diff_pair(left_item, right_item, SyncDirection.RIGHT_TO_LEFT)

        assert not result.compared
        assert result.mutations == 0
        assert left_item.summary == "Mine"


class TestErrorsAndCancellation:
    """Tests for the error gate and cooperative cancellation."""

    def linked_left(self, make_event, store):
        items = []
        for i in range(2):
            item = make_event(f"l{i}", start=BASE_TIME + timedelta(days=i))
            store.set_link(item, f"gone{i}", "right-cal")
            items.append(item)
        return items

    @pytest.mark.asyncio
    async def test_declining_to_continue_aborts_the_pass(self, make_settings, make_event, store):
        left, right = services(left_events=self.linked_left(make_event, store), left_cls=FailingDeleteService)
        gate = ScriptedGate([False])

        async with SyncEngine(make_settings(), left, right, gate=gate) as engine:
            report = await engine.sync()

        assert report.cancelled
        assert len(report.errors) == 1
        assert len(gate.asked) == 1
        # The handle was released even though the pass was aborted
        assert len(left.released) == 1
        assert len(left.events) == 2

    @pytest.mark.asyncio
    async def test_continuing_records_every_error(self, make_settings, make_event, store):
        left, right = services(left_events=self.linked_left(make_event, store), left_cls=FailingDeleteService)

        async with SyncEngine(make_settings(), left, right, gate=ScriptedGate([True, True])) as engine:
            report = await engine.sync()

        assert not report.cancelled
        assert len(report.errors) == 2
        assert report.deleted == 0

    @pytest.mark.asyncio
    async def test_cancel_stops_between_items(self, make_settings, make_event):
        settings = make_settings()
        db_manager = DatabaseManager(settings)
        right_events = [
            make_event(f"r{i}", side=Side.RIGHT, summary=f"Item {i}", start=BASE_TIME + timedelta(days=i))
            for i in range(3)
        ]
        left, right = services(right_events=right_events, left_cls=CancellingService)

        async with SyncEngine(settings, left, right, db_manager=db_manager) as engine:
            left.engine = engine
            report = await engine.sync()

        assert report.cancelled
        assert report.created == 1
        assert len(left.events) == 1
        with db_manager.get_session() as session:
            (last,) = db_manager.get_recent_sync_sessions(session)
            assert last.status == 'cancelled'
            assert db_manager.get_last_successful_sync(session, 'left-cal', 'right-cal') is None

    @pytest.mark.asyncio
    async def test_unavailable_provider_fails_the_pass(self, make_settings):
        settings = make_settings()
        db_manager = DatabaseManager(settings)
        db_manager.init_db()
        left, right = services()

        engine = SyncEngine(settings, left, right, db_manager=db_manager)
        with pytest.raises(ConnectionUnavailableError):
            await engine.sync()

        with db_manager.get_session() as session:
            (last,) = db_manager.get_recent_sync_sessions(session)
            assert last.status == 'failed'


@pytest.mark.asyncio
async def test_history_records_last_successful_sync(make_settings, make_event):
    settings = make_settings()
    db_manager = DatabaseManager(settings)
    left, right = services(right_events=[make_event("r0", side=Side.RIGHT)])

    async with SyncEngine(settings, left, right, db_manager=db_manager) as engine:
        report = await engine.sync()

    with db_manager.get_session() as session:
        (last,) = db_manager.get_recent_sync_sessions(session)
        assert last.status == 'completed'
        assert last.created == 1
        assert db_manager.get_last_successful_sync(session, 'left-cal', 'right-cal') is not None
        assert last.id == report.sync_id
