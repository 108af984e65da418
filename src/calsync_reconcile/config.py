# src/calsync_reconcile/config.py
"""Configuration management using Pydantic Settings."""

import os
from datetime import time
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .models import SyncDirection


class ObfuscationRule(BaseModel):
    """Regex find/replace applied to subjects written in one direction."""

    find: str = Field(..., description="Regular expression to search for")
    replace: str = Field("", description="Replacement text")


class SyncPolicy(BaseModel):
    """Reconciliation policy flags."""

    direction: SyncDirection = Field(SyncDirection.RIGHT_TO_LEFT)

    # Matching / deletion
    merge_items: bool = Field(False, description="Keep linkless destination items")
    disable_delete: bool = Field(False, description="Never delete destination items")
    confirm_on_delete: bool = Field(False, description="Ask before every deletion")

    # Field toggles
    add_description: bool = Field(True)
    description_one_way: Optional[SyncDirection] = Field(
        None, description="In bidirectional sync, only sync descriptions in this write direction"
    )
    add_attendees: bool = Field(True)
    add_reminders: bool = Field(True)
    max_attendees: int = Field(150, ge=1, description="Recipient count above which attendee teardown is refused")

    # Enforcement
    set_entries_private: bool = Field(False)
    privacy_direction: SyncDirection = Field(
        SyncDirection.LEFT_TO_RIGHT, description="Write direction whose items are forced private"
    )
    set_entries_available: bool = Field(False)
    availability_direction: SyncDirection = Field(
        SyncDirection.LEFT_TO_RIGHT, description="Write direction whose items are forced free"
    )
    created_items_only: bool = Field(
        True, description="Only enforce privacy/availability on items the engine creates"
    )

    # Reminders do-not-disturb window
    reminder_dnd: bool = Field(False)
    reminder_dnd_start: time = Field(time(22, 0))
    reminder_dnd_end: time = Field(time(6, 0))
    use_default_reminder: bool = Field(False, description="Check DND against the destination's default reminder")

    # Subject obfuscation
    obfuscate_subjects: bool = Field(False)
    obfuscation_direction: SyncDirection = Field(SyncDirection.LEFT_TO_RIGHT)
    obfuscation_rules: List[ObfuscationRule] = Field(default_factory=list)

    # Change-loop protection
    engine_write_grace_seconds: int = Field(5, ge=0)

    @field_validator("privacy_direction", "availability_direction", "obfuscation_direction")
    @classmethod
    def must_be_write_direction(cls, v):
        if v == SyncDirection.BIDIRECTIONAL:
            raise ValueError("Enforcement and obfuscation need a single write direction")
        return v

    @field_validator("description_one_way")
    @classmethod
    def validate_description_direction(cls, v):
        if v == SyncDirection.BIDIRECTIONAL:
            raise ValueError("description_one_way must be a single write direction")
        return v

    @property
    def is_bidirectional(self) -> bool:
        return self.direction == SyncDirection.BIDIRECTIONAL


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Application Configuration
    app_name: str = Field(default="calsync-reconcile", description="Application name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Storage Configuration
    data_dir: Path = Field(
        default_factory=lambda: Path.home() / ".calsync-reconcile",
        description="Application data directory"
    )
    database_url: str = Field(
        default="",
        description="Database URL (defaults to SQLite in data_dir)"
    )

    # Collections
    left_calendar_id: Optional[str] = Field(default=None, description="Left collection ID")
    right_calendar_id: Optional[str] = Field(default=None, description="Right collection ID")
    owner_email: Optional[str] = Field(default=None, description="Account owner, never added as attendee")

    # Sync window
    sync_past_days: int = Field(default=30, ge=0)
    sync_future_days: int = Field(default=365, ge=0)

    # Answer every "continue?" question with yes instead of prompting
    enable_auto_retry: bool = Field(default=False)

    sync_policy: SyncPolicy = Field(
        default_factory=SyncPolicy,
        description="Reconciliation policy"
    )

    @field_validator('data_dir', mode='before')
    @classmethod
    def expand_path(cls, v):
        """Expand user paths and convert to Path objects."""
        if isinstance(v, str):
            return Path(v).expanduser().absolute()
        return v.expanduser().absolute()

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v.upper()

    @model_validator(mode='after')
    def set_default_database_url(self):
        """Set default SQLite database URL if not provided."""
        if not self.database_url:
            self.database_url = f"sqlite:///{self.data_dir}/calsync.db"
        return self

    def ensure_directories(self):
        """Create the data directory with owner-only permissions."""
        self.data_dir.mkdir(parents=True, exist_ok=True, mode=0o700)


def load_settings(config_file: Optional[str] = None) -> Settings:
    """Load application settings.

    Args:
        config_file: Optional path to a .env style configuration file

    Returns:
        Settings instance
    """
    if config_file:
        settings = Settings(_env_file=config_file)
    else:
        settings = Settings()
    settings.ensure_directories()
    return settings


def create_example_config(path: Path) -> None:
    """Create an example configuration file.

    Args:
        path: Path to create the example config file
    """
    example_content = '''# CalSync Reconcile Configuration
# Copy this file to .env and adjust

# Application Configuration
DEBUG=false
LOG_LEVEL=INFO
# DATA_DIR=~/.calsync-reconcile
# DATABASE_URL=sqlite:///~/.calsync-reconcile/calsync.db

# Collections
LEFT_CALENDAR_ID=work
RIGHT_CALENDAR_ID=personal
# OWNER_EMAIL=me@example.com

SYNC_PAST_DAYS=30
SYNC_FUTURE_DAYS=365
ENABLE_AUTO_RETRY=false

# Policy: direction is one of left_to_right, right_to_left, bidirectional
SYNC_POLICY__DIRECTION=right_to_left
SYNC_POLICY__MERGE_ITEMS=false
SYNC_POLICY__DISABLE_DELETE=false
SYNC_POLICY__CONFIRM_ON_DELETE=false
SYNC_POLICY__ADD_DESCRIPTION=true
SYNC_POLICY__ADD_ATTENDEES=true
SYNC_POLICY__ADD_REMINDERS=true

# Enforcement
SYNC_POLICY__SET_ENTRIES_PRIVATE=false
SYNC_POLICY__PRIVACY_DIRECTION=left_to_right
SYNC_POLICY__SET_ENTRIES_AVAILABLE=false
SYNC_POLICY__AVAILABILITY_DIRECTION=left_to_right
SYNC_POLICY__CREATED_ITEMS_ONLY=true

# Reminder do-not-disturb window
SYNC_POLICY__REMINDER_DND=false
SYNC_POLICY__REMINDER_DND_START=22:00
SYNC_POLICY__REMINDER_DND_END=06:00

# Subject obfuscation, JSON list of {"find": ..., "replace": ...}
SYNC_POLICY__OBFUSCATE_SUBJECTS=false
SYNC_POLICY__OBFUSCATION_RULES=[]
'''

    with open(path, 'w') as f:
        f.write(example_content)
