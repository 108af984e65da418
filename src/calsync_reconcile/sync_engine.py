"""Sync orchestrator: runs matching, diffing and recurrence reconciliation passes."""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import pytz

from .config import Settings
from .database import DatabaseManager, SyncSessionDB
from .differ import AttributeDiffer, orient
from .identity import IdentityStore
from .matcher import Matcher
from .models import (
    CalendarEvent,
    DiffResult,
    MatchSet,
    RecurrenceState,
    Side,
    SyncContext,
    SyncDirection,
    SyncReport,
)
from .prompts import ConfirmationGate
from .recurrence import classify
from .services import BaseCalendarService, CalendarServiceError, ConnectionUnavailableError

logger = logging.getLogger(__name__)


class CalendarSyncError(Exception):
    """Base exception for sync engine errors."""
    pass


class UserCancelledSyncError(CalendarSyncError):
    """The user chose to abort the pass; propagates through every loop."""
    pass


class ItemSkippedError(CalendarSyncError):
    """An item is deliberately not created; no prompt needed."""
    pass


class SyncEngine:
    """Runs one-way passes between the left and right collections.

    Work is strictly sequential. ``cancel()`` may be called from another
    task; it is honoured at the top of every item loop and already applied
    changes are kept.
    """

    def __init__(
        self,
        settings: Settings,
        left_service: BaseCalendarService,
        right_service: BaseCalendarService,
        gate: Optional[ConfirmationGate] = None,
        db_manager: Optional[DatabaseManager] = None,
        identity: Optional[IdentityStore] = None,
    ):
        """Initialize sync engine.

        Args:
            settings: Application settings
            left_service: Provider of the left collection
            right_service: Provider of the right collection
            gate: Confirmation gate consulted on item errors and deletions
            db_manager: Sync history store; without one every bidirectional
                run behaves as a first run
            identity: Link metadata store
        """
        self.settings = settings
        self.policy = settings.sync_policy
        self.services: Dict[Side, BaseCalendarService] = {
            Side.LEFT: left_service,
            Side.RIGHT: right_service,
        }
        if gate is None:
            gate = ConfirmationGate(auto_answer=True if settings.enable_auto_retry else None)
        self.gate = gate
        self.db_manager = db_manager
        self.identity = identity or IdentityStore()

        self.context = SyncContext(
            policy=self.policy,
            left_calendar_id=settings.left_calendar_id or left_service.calendar_id,
            right_calendar_id=settings.right_calendar_id or right_service.calendar_id,
            owner_email=settings.owner_email,
        )
        self.matcher = Matcher(self.context, self.identity, self.gate)
        self.differ = AttributeDiffer(self.context, self.identity)
        self.reconciler = self.differ.recurrence
        self.logger = logger.getChild('sync_engine')
        self._cancel_requested = False

    async def __aenter__(self):
        """Async context manager entry."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        self.logger.debug("Sync engine closed")

    async def initialize(self) -> None:
        """Initialize the history store and open both provider connections.

        Raises:
            ConnectionUnavailableError: If either collection cannot be reached
        """
        if self.db_manager is not None:
            self.db_manager.init_db()
        for service in self.services.values():
            await service.connect()
        self.logger.info("Sync engine initialized successfully")

    # Cancellation

    def cancel(self) -> None:
        """Request cooperative cancellation of the running pass."""
        self.logger.info("Cancellation requested")
        self._cancel_requested = True

    @property
    def cancellation_pending(self) -> bool:
        return self._cancel_requested

    # Core operations

    def match_events(
        self,
        left: List[CalendarEvent],
        right: List[CalendarEvent],
        direction: Optional[SyncDirection] = None,
    ) -> MatchSet:
        return self.matcher.match_events(left, right, direction)

    def diff_pair(
        self,
        left: CalendarEvent,
        right: CalendarEvent,
        direction: SyncDirection,
        force_compare: bool = False,
    ) -> DiffResult:
        return self.differ.diff(left, right, direction, force_compare)

    def reconcile_recurrence(
        self,
        pair: Tuple[CalendarEvent, CalendarEvent],
        direction: SyncDirection,
    ) -> int:
        """Reconcile the pattern and exceptions of a ``(left, right)`` master pair."""
        source, target = orient(pair[0], pair[1], direction)
        return self.reconciler.reconcile_recurrence(target, source, direction)

    # Sync run

    def _sync_window(self) -> Tuple[datetime, datetime]:
        now = datetime.now(pytz.UTC)
        return (
            now - timedelta(days=self.settings.sync_past_days),
            now + timedelta(days=self.settings.sync_future_days),
        )

    def _start_session(self, dry_run: bool) -> Optional[SyncSessionDB]:
        if self.db_manager is None:
            return None
        with self.db_manager.get_session() as session:
            self.context.last_sync_at = self.db_manager.get_last_successful_sync(
                session, self.context.left_calendar_id, self.context.right_calendar_id
            )
            return self.db_manager.create_sync_session(
                session,
                direction=self.policy.direction.value,
                left_calendar_id=self.context.left_calendar_id,
                right_calendar_id=self.context.right_calendar_id,
                dry_run=dry_run,
            )

    def _finish_session(
        self,
        sync_session: Optional[SyncSessionDB],
        report: SyncReport,
        status: str,
        error_message: Optional[str] = None,
    ) -> None:
        if sync_session is None:
            return
        with self.db_manager.get_session() as session:
            self.db_manager.complete_sync_session(
                session, sync_session, report=report, status=status, error_message=error_message
            )

    async def sync(self, dry_run: bool = False) -> SyncReport:
        """Run one sync: a pass per write direction.

        Args:
            dry_run: If True, report what would change without writing

        Returns:
            Sync report with detailed results

        Raises:
            CalendarServiceError: If a provider cannot list its collection
        """
        self._cancel_requested = False
        sync_session = self._start_session(dry_run)
        report = SyncReport(direction=self.policy.direction, dry_run=dry_run)
        if sync_session is not None:
            report.sync_id = sync_session.id
        self.logger.info(f"Starting sync {report.sync_id} ({self.policy.direction.value}, dry_run={dry_run})")

        status = 'completed'
        try:
            for direction in self.policy.direction.write_directions():
                if self.cancellation_pending:
                    break
                await self._sync_direction(direction, report, dry_run)
        except UserCancelledSyncError as e:
            self.logger.warning(f"Sync aborted: {e}")
            report.cancelled = True
        except CalendarServiceError as e:
            report.errors.append(str(e))
            report.completed_at = datetime.now(pytz.UTC)
            self._finish_session(sync_session, report, 'failed', error_message=str(e))
            self.logger.error(f"Sync {report.sync_id} failed: {e}")
            raise

        if self.cancellation_pending:
            report.cancelled = True
        if report.cancelled:
            status = 'cancelled'

        report.completed_at = datetime.now(pytz.UTC)
        self._finish_session(sync_session, report, status)
        self.logger.info(
            f"Sync {report.sync_id} {status}: {report.created} created, {report.updated} updated, "
            f"{report.deleted} deleted, {report.skipped} skipped, {len(report.errors)} errors"
        )
        return report

    async def _sync_direction(self, direction: SyncDirection, report: SyncReport, dry_run: bool) -> None:
        destination = self.services[direction.destination]
        self.context.default_reminder_minutes = destination.default_reminder_minutes

        time_min, time_max = self._sync_window()
        left_items = await self.services[Side.LEFT].list_events(time_min, time_max)
        right_items = await self.services[Side.RIGHT].list_events(time_min, time_max)
        self.logger.info(
            f"Pass {direction.value}: {len(left_items)} left items, {len(right_items)} right items"
        )

        match = self.match_events(left_items, right_items, direction)
        report.skipped += len(match.skipped)
        report.metadata_enhanced += match.metadata_enhanced
        report.suppressed_deletions += match.suppressed_deletions

        await self._save_reclaimed(match.reclaimed, report, dry_run)
        await self._delete_items(match.delete_candidates(direction), direction, report, dry_run)
        await self._create_items(match.create_candidates(direction), direction, report, dry_run)
        await self._update_items(match.paired, direction, report, dry_run)

    # Error gate

    def _item_failed(self, report: SyncReport, message: str, error: Exception) -> None:
        """Record a transient item error and ask whether to carry on.

        Raises:
            UserCancelledSyncError: If the gate declines to continue
        """
        report.errors.append(f"{message}: {error}")
        self.logger.error(f"{message}: {error}")
        if not self.gate.confirm(f"{message}.\n{error}\n\nContinue with sync?", default=True):
            raise UserCancelledSyncError("User chose not to continue sync.")

    async def _save(self, service: BaseCalendarService, item: CalendarEvent, clear_force: bool = True) -> None:
        if self.policy.is_bidirectional:
            self.identity.set_engine_last_modified(item)
        if clear_force:
            self.identity.clear_force_resync(item)
        await service.save_event(item)

    # Passes

    async def _save_reclaimed(
        self,
        reclaimed: List[Tuple[CalendarEvent, CalendarEvent]],
        report: SyncReport,
        dry_run: bool,
    ) -> None:
        left_service = self.services[Side.LEFT]
        right_service = self.services[Side.RIGHT]
        for left, right in reclaimed:
            if self.cancellation_pending:
                return
            report.reclaimed += 1
            if dry_run:
                report.changes.append(f"[DRY RUN] Would reclaim {left.summary_line()}")
                continue

            async with left_service.item_scope(left) as left_item, right_service.item_scope(right) as right_item:
                try:
                    await self._save(left_service, left_item, clear_force=False)
                    if self.policy.is_bidirectional:
                        await self._save(right_service, right_item, clear_force=False)
                except ConnectionUnavailableError:
                    raise
                except CalendarServiceError as e:
                    self._item_failed(report, f"Unable to save reclaimed item {left_item.summary_line()}", e)
                    continue
            report.changes.append(f"Reclaimed {left.summary_line()}")

    async def _delete_items(
        self,
        items: List[CalendarEvent],
        direction: SyncDirection,
        report: SyncReport,
        dry_run: bool,
    ) -> None:
        service = self.services[direction.destination]
        if items:
            self.logger.info(f"Deleting {len(items)} {direction.destination.value} items...")

        for item in items:
            if self.cancellation_pending:
                self.logger.info("Sync cancelled, no further deletions")
                return

            async with service.item_scope(item) as handle:
                if self.policy.confirm_on_delete and not self.gate.confirm(
                    f"Delete {handle.summary_line()}?", default=False
                ):
                    self.logger.info(f"Not deleted: {handle.summary_line()}")
                    continue

                if dry_run:
                    report.deleted += 1
                    report.changes.append(f"[DRY RUN] Would delete {handle.summary_line()}")
                    continue

                try:
                    await service.delete_event(handle)
                except ConnectionUnavailableError:
                    raise
                except CalendarServiceError as e:
                    self._item_failed(report, f"Unable to delete {handle.summary_line()}", e)
                    continue

            report.deleted += 1
            report.changes.append(f"Deleted {item.summary_line()}")

    def _prepare_new(self, source: CalendarEvent, direction: SyncDirection) -> CalendarEvent:
        """Build the destination copy of ``source``, linked back to it.

        Raises:
            ItemSkippedError: If the source should not be created
        """
        if not source.has_core_fields():
            raise ItemSkippedError(f"Item {source.id!r} has no readable start/end")
        if classify(source) is RecurrenceState.GENERATED_OCCURRENCE:
            raise ItemSkippedError(f"{source.summary_line()} is an occurrence of a series")

        new_item = self.differ.build_new(source, direction)
        if direction.destination is Side.LEFT:
            self.identity.set_link(new_item, source.id, self.context.right_calendar_id)
        else:
            self.identity.set_link(new_item, source.id, self.context.left_calendar_id)
        if self.policy.is_bidirectional:
            self.identity.set_engine_last_modified(new_item)
        return new_item

    async def _create_items(
        self,
        items: List[CalendarEvent],
        direction: SyncDirection,
        report: SyncReport,
        dry_run: bool,
    ) -> None:
        source_service = self.services[direction.source]
        dest_service = self.services[direction.destination]
        if items:
            self.logger.info(f"Creating {len(items)} {direction.destination.value} items...")

        for item in items:
            if self.cancellation_pending:
                self.logger.info("Sync cancelled, no further creations")
                return

            async with source_service.item_scope(item) as source:
                try:
                    new_item = self._prepare_new(source, direction)
                except ItemSkippedError as e:
                    self.logger.info(f"Skipping creation: {e}")
                    report.skipped += 1
                    continue

                if dry_run:
                    report.created += 1
                    report.changes.append(f"[DRY RUN] Would create {new_item.summary_line()}")
                    continue

                try:
                    created = await dest_service.create_event(new_item)
                    await self._finish_created(created, source, direction)
                except ConnectionUnavailableError:
                    raise
                except CalendarServiceError as e:
                    self._item_failed(report, f"New {direction.destination.value} item failed to save", e)
                    continue

            report.created += 1
            report.changes.append(f"Created {new_item.summary_line()}")

    async def _finish_created(self, created: CalendarEvent, source: CalendarEvent, direction: SyncDirection) -> None:
        """Reconcile the new series' exceptions and link the source to its copy."""
        dest_service = self.services[direction.destination]
        async with dest_service.item_scope(created) as target:
            if self.reconciler.reconcile_exceptions(target, source, direction):
                await self._save(dest_service, target)

        source_service = self.services[direction.source]
        if direction.destination is Side.RIGHT:
            if self.identity.set_link(source, created.id, self.context.right_calendar_id):
                await self._save(source_service, source)
        elif self.policy.is_bidirectional:
            if self.identity.set_link(source, created.id, self.context.left_calendar_id):
                await self._save(source_service, source)

    async def _update_items(
        self,
        paired: List[Tuple[CalendarEvent, CalendarEvent]],
        direction: SyncDirection,
        report: SyncReport,
        dry_run: bool,
    ) -> None:
        left_service = self.services[Side.LEFT]
        right_service = self.services[Side.RIGHT]
        self.logger.debug(f"Comparing {len(paired)} matched items...")

        for left, right in paired:
            if self.cancellation_pending:
                self.logger.info("Sync cancelled, no further updates")
                return

            async with left_service.item_scope(left) as left_item, right_service.item_scope(right) as right_item:
                try:
                    await self._update_pair(left_item, right_item, direction, report, dry_run)
                except ConnectionUnavailableError:
                    raise
                except CalendarServiceError as e:
                    self._item_failed(report, f"Unable to update {left_item.summary_line()}", e)

    async def _update_pair(
        self,
        left: CalendarEvent,
        right: CalendarEvent,
        direction: SyncDirection,
        report: SyncReport,
        dry_run: bool,
    ) -> None:
        source, target = orient(left, right, direction)
        dest_service = self.services[direction.destination]

        if not source.has_core_fields():
            self.logger.warning(
                f"Skipping update of {target.summary_line()}: item {source.id!r} has no readable start/end"
            )
            report.skipped += 1
            return

        result = self.diff_pair(left, right, direction)
        if not result.compared:
            return

        exception_changes = self.reconciler.reconcile_exceptions(target, source, direction)
        if dry_run:
            if result.mutations or exception_changes:
                report.updated += 1
                report.changes.append(f"[DRY RUN] Would update {target.summary_line()}")
                report.changes.extend(result.change_log)
            return

        if result.mutations or exception_changes or result.needs_touch:
            await self._save(dest_service, target)

        # Force-resync flag left on the source side of this pass
        if direction.destination is Side.RIGHT and self.identity.clear_force_resync(left):
            await self._save(self.services[Side.LEFT], left)

        if result.mutations or exception_changes:
            report.updated += 1
            report.changes.append(f"Updated {target.summary_line()}")
            report.changes.extend(result.change_log)
