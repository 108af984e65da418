"""Shared fixtures."""

from datetime import datetime, timedelta

import pytest
import pytz
from pydantic_settings import SettingsConfigDict

from calsync_reconcile.config import Settings, SyncPolicy
from calsync_reconcile.identity import IdentityStore
from calsync_reconcile.models import CalendarEvent, Side, SyncContext

BASE_TIME = datetime(2024, 3, 4, 9, 0, tzinfo=pytz.UTC)


class TestSettings(Settings):
    """Test-specific settings that don't read from .env files."""
    model_config = SettingsConfigDict(
        env_file=None,
        case_sensitive=False,
        extra="ignore",
        secrets_dir=None
    )


@pytest.fixture
def make_settings(tmp_path):
    def _make(**policy):
        return TestSettings(
            data_dir=tmp_path,
            database_url=f'sqlite:///{tmp_path}/test.db',
            left_calendar_id='left-cal',
            right_calendar_id='right-cal',
            owner_email='me@example.com',
            sync_past_days=3650,
            sync_future_days=3650,
            sync_policy=SyncPolicy(**policy),
        )
    return _make


@pytest.fixture
def make_event():
    def _make(id, side=Side.LEFT, summary="Meeting", start=BASE_TIME, minutes=60, **kwargs):
        kwargs.setdefault('updated', BASE_TIME)
        return CalendarEvent(
            id=id,
            source=side,
            summary=summary,
            start=start,
            end=start + timedelta(minutes=minutes) if start is not None else None,
            **kwargs
        )
    return _make


@pytest.fixture
def make_context():
    def _make(**policy):
        return SyncContext(
            policy=SyncPolicy(**policy),
            left_calendar_id='left-cal',
            right_calendar_id='right-cal',
            owner_email='me@example.com',
        )
    return _make


@pytest.fixture
def identity():
    return IdentityStore(clock=lambda: BASE_TIME)
