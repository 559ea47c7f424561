"""
Calendar connection model.

A connection links one user to one external calendar account and carries
the OAuth credentials, sync toggles, last-sync outcome and the push
notification channel registered for that calendar.
"""

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from calendar_sync.models.base import BaseModel, as_utc, utcnow

# Tokens expiring within this window are treated as expired
TOKEN_REFRESH_MARGIN = timedelta(minutes=5)


class CalendarConnection(BaseModel):
    """
    One user's authorized link to an external calendar.

    Attributes:
        user_id: Owner of the connection (from frontend auth)
        provider: External provider (currently only 'google')
        account_email: Account the grant was made from
        calendar_id: Provider calendar the engine writes to
        sync_enabled: Master switch; disabled connections are skipped
        sync_lms_events / sync_study_sessions / sync_external_events:
            Per-direction toggles
        access_token_encrypted / refresh_token_encrypted: Fernet ciphertext
        last_sync_status: 'success', 'partial' or 'error'
        webhook_channel_id / webhook_resource_id / webhook_expiration:
            The single active push channel; set and cleared together
    """

    __tablename__ = "calendar_connections"

    user_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        doc="External user ID from frontend authentication"
    )

    provider: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="google",
        doc="External calendar provider"
    )

    account_email: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        doc="Email of the authorized provider account"
    )

    calendar_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="primary",
        doc="Provider calendar ID"
    )

    calendar_timezone: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        default="UTC",
        doc="IANA timezone used when writing timed events"
    )

    # Toggles
    sync_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sync_lms_events: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sync_study_sessions: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sync_external_events: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    # Credentials
    access_token_encrypted: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Encrypted OAuth access token"
    )

    refresh_token_encrypted: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Encrypted OAuth refresh token"
    )

    token_expiry: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="When the access token expires"
    )

    scopes: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="Granted OAuth scopes (space-separated)"
    )

    # Last sync outcome
    last_sync_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    last_sync_status: Mapped[Optional[str]] = mapped_column(
        String(20),
        nullable=True,
        doc="Outcome of the last sync: 'success', 'partial', 'error'"
    )

    last_sync_error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        doc="User-facing message for the last failure"
    )

    # Push notification channel
    webhook_channel_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        unique=True,
        doc="Active watch channel ID"
    )

    webhook_resource_id: Mapped[Optional[str]] = mapped_column(
        String(255),
        nullable=True,
        doc="Provider resource ID of the watched calendar"
    )

    webhook_expiration: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        doc="When the watch channel expires"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "account_email", "calendar_id", name="uq_connection_account_calendar"),
        Index("ix_calendar_connections_webhook_expiration", "webhook_expiration"),
        Index("ix_calendar_connections_deleted", "deleted_at"),
    )

    @property
    def is_active(self) -> bool:
        """Connection participates in sync runs."""
        return self.sync_enabled and not self.is_deleted

    @property
    def is_token_expired(self) -> bool:
        """Access token is past (or within the refresh margin of) its expiry."""
        if self.token_expiry is None:
            return False
        return utcnow() >= as_utc(self.token_expiry) - TOKEN_REFRESH_MARGIN

    @property
    def has_webhook(self) -> bool:
        return self.webhook_channel_id is not None

    def set_webhook(self, channel_id: str, resource_id: str, expiration: Optional[datetime]) -> None:
        self.webhook_channel_id = channel_id
        self.webhook_resource_id = resource_id
        self.webhook_expiration = expiration

    def clear_webhook(self) -> None:
        self.webhook_channel_id = None
        self.webhook_resource_id = None
        self.webhook_expiration = None

    def __repr__(self) -> str:
        return f"<CalendarConnection(user_id='{self.user_id}', calendar_id='{self.calendar_id}')>"
