"""Database models and operations for sync history."""

from datetime import datetime
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import create_engine, Column, String, DateTime, Boolean, Text, Integer, Index
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.dialects.postgresql import UUID as PostgresUUID
from sqlalchemy.types import TypeDecorator, CHAR
import pytz

from .config import Settings
from .models import SyncReport
from .timeutils import ensure_timezone_aware

Base = declarative_base()


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(PostgresUUID())
        return dialect.type_descriptor(CHAR(32))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if dialect.name == 'postgresql':
            return str(value)
        if not isinstance(value, UUID):
            value = UUID(value)
        return "%.32x" % value.int

    def process_result_value(self, value, dialect):
        if value is None or isinstance(value, UUID):
            return value
        return UUID(value)


class SyncSessionDB(Base):
    """Database model for sync sessions."""

    __tablename__ = 'sync_sessions'

    id = Column(GUID(), primary_key=True, default=uuid4)
    started_at = Column(DateTime, nullable=False, default=lambda: datetime.now(pytz.UTC))
    completed_at = Column(DateTime, nullable=True)
    dry_run = Column(Boolean, nullable=False, default=False)

    left_calendar_id = Column(String(500), nullable=True)
    right_calendar_id = Column(String(500), nullable=True)
    direction = Column(String(20), nullable=False)

    # Counters
    created = Column(Integer, default=0)
    updated = Column(Integer, default=0)
    deleted = Column(Integer, default=0)
    skipped = Column(Integer, default=0)
    reclaimed = Column(Integer, default=0)
    error_count = Column(Integer, default=0)

    # Status
    status = Column(String(20), nullable=False, default='running')  # 'running', 'completed', 'cancelled', 'failed'
    error_message = Column(Text, nullable=True)

    __table_args__ = (
        Index('idx_sync_session_started', 'started_at'),
        Index('idx_sync_session_status', 'status'),
        Index('idx_sync_session_pair', 'left_calendar_id', 'right_calendar_id'),
    )


class DatabaseManager:
    """Database manager for sync history."""

    def __init__(self, settings: Settings):
        """Initialize database manager.

        Args:
            settings: Application settings
        """
        self.settings = settings
        self.engine = create_engine(
            settings.database_url,
            echo=settings.debug,
            pool_pre_ping=True
        )
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def init_db(self) -> None:
        """Initialize database tables."""
        Base.metadata.create_all(bind=self.engine)

    def get_session(self) -> Session:
        """Get database session."""
        return self.SessionLocal()

    def create_sync_session(
        self,
        session: Session,
        direction: str,
        left_calendar_id: Optional[str] = None,
        right_calendar_id: Optional[str] = None,
        dry_run: bool = False
    ) -> SyncSessionDB:
        """Create new sync session.

        Args:
            session: Database session
            direction: Configured sync direction
            left_calendar_id: Left collection of the run
            right_calendar_id: Right collection of the run
            dry_run: Whether this is a dry run

        Returns:
            Created sync session
        """
        sync_session = SyncSessionDB(
            direction=direction,
            left_calendar_id=left_calendar_id,
            right_calendar_id=right_calendar_id,
            dry_run=dry_run,
        )
        session.add(sync_session)
        session.commit()
        return sync_session

    def complete_sync_session(
        self,
        session: Session,
        sync_session: SyncSessionDB,
        report: Optional[SyncReport] = None,
        status: str = 'completed',
        error_message: Optional[str] = None
    ) -> SyncSessionDB:
        """Complete sync session.

        Args:
            session: Database session
            sync_session: Sync session to complete
            report: Report whose counters are recorded
            status: Final status
            error_message: Error message if failed

        Returns:
            Updated sync session
        """
        sync_session = session.merge(sync_session)
        sync_session.completed_at = datetime.now(pytz.UTC)
        sync_session.status = status
        if report is not None:
            sync_session.created = report.created
            sync_session.updated = report.updated
            sync_session.deleted = report.deleted
            sync_session.skipped = report.skipped
            sync_session.reclaimed = report.reclaimed
            sync_session.error_count = len(report.errors)
        if error_message:
            sync_session.error_message = error_message

        session.commit()
        return sync_session

    def get_last_successful_sync(
        self,
        session: Session,
        left_calendar_id: Optional[str] = None,
        right_calendar_id: Optional[str] = None
    ) -> Optional[datetime]:
        """Start time of the latest completed, non dry-run session for a pair.

        Returns:
            Timezone-aware UTC instant, or None if the pair never synced
        """
        last = session.query(SyncSessionDB).filter(
            SyncSessionDB.status == 'completed',
            SyncSessionDB.dry_run.is_(False),
            SyncSessionDB.left_calendar_id == left_calendar_id,
            SyncSessionDB.right_calendar_id == right_calendar_id,
        ).order_by(SyncSessionDB.started_at.desc()).first()

        if last is None:
            return None
        return ensure_timezone_aware(last.started_at)

    def get_recent_sync_sessions(
        self,
        session: Session,
        limit: int = 10
    ) -> List[SyncSessionDB]:
        """Get recent sync sessions.

        Args:
            session: Database session
            limit: Number of sessions to return

        Returns:
            List of sync sessions
        """
        return session.query(SyncSessionDB).order_by(
            SyncSessionDB.started_at.desc()
        ).limit(limit).all()
