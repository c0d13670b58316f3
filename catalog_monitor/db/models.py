"""SQLAlchemy database models."""

from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the naive DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class ScanStatus:
    PENDING = "pending"
    SCANNING = "scanning"
    COMPLETED = "completed"
    FAILED = "failed"

    CLAIMABLE = (PENDING, COMPLETED, FAILED)


class DisabledReason:
    AUTH = "auth"
    FAILURES = "failures"
    MANUAL = "manual"


class ReleaseStatus:
    UNCONFIRMED = "unconfirmed"
    AUTO_CONFIRMED = "auto_confirmed"
    CONFIRMED = "confirmed"
    DISPUTED = "disputed"
    DISMISSED = "dismissed"

    INITIAL = (UNCONFIRMED, AUTO_CONFIRMED)
    TERMINAL = (CONFIRMED, DISPUTED, DISMISSED)


class MatchConfidence:
    EXACT_ID = "exact_id"
    UPC = "upc"
    ISRC = "isrc"
    TITLE_DATE = "title_date"
    NONE = "none"


class AlertStatus:
    PENDING = "pending"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"

    OUTSTANDING = (PENDING, SENDING)


class AlertType:
    NEW_RELEASE = "new_release"
    REMINDER = "reminder"


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class ScanState(Base):
    """Scan scheduling state and last-known catalog snapshot per creator/provider."""

    __tablename__ = "scan_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    creator_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_id: Mapped[str] = mapped_column(String(32), nullable=False)
    credential_ref: Mapped[str] = mapped_column(String(256), nullable=False)  # e.g. provider artist id

    last_scan_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    next_scan_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    scan_interval_hours: Mapped[int] = mapped_column(Integer, default=24, nullable=False)

    # Ordered list of ReleaseRef dicts
    last_snapshot: Mapped[Optional[list]] = mapped_column(JSONType, nullable=True)
    last_snapshot_hash: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), default=ScanStatus.PENDING, nullable=False
    )  # pending, scanning, completed, failed
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    consecutive_failures: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Disabled rows are never selected until manually re-enabled
    disabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    disabled_reason: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)  # auth, failures, manual
    disabled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("creator_id", "provider_id", name="uq_scan_state_creator_provider"),
        Index("ix_scan_states_due", "disabled", "next_scan_at"),
    )


class CatalogRelease(Base):
    """A release in the creator's own discography (read-only for this service)."""

    __tablename__ = "catalog_releases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    creator_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    release_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    release_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    upc: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)

    # Set when the release is already linked to a DSP listing
    provider_id: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    external_release_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    tracks: Mapped[list["CatalogTrack"]] = relationship(
        "CatalogTrack", back_populates="release", cascade="all, delete-orphan"
    )


class CatalogTrack(Base):
    """A track on a catalog release."""

    __tablename__ = "catalog_tracks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    release_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("catalog_releases.id", ondelete="CASCADE"), nullable=False
    )
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    isrc: Mapped[Optional[str]] = mapped_column(String(16), nullable=True, index=True)
    track_number: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    release: Mapped["CatalogRelease"] = relationship("CatalogRelease", back_populates="tracks")


class DetectedRelease(Base):
    """Every release ever observed on a provider catalog. Never deleted."""

    __tablename__ = "detected_releases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    creator_id: Mapped[str] = mapped_column(String(64), nullable=False)
    provider_id: Mapped[str] = mapped_column(String(32), nullable=False)
    external_release_id: Mapped[str] = mapped_column(String(128), nullable=False)

    title: Mapped[str] = mapped_column(Text, nullable=False)
    release_type: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    release_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    artwork_ref: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    track_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    upc: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    lead_isrc: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)

    matched_catalog_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("catalog_releases.id", ondelete="SET NULL"), nullable=True
    )
    match_confidence: Mapped[str] = mapped_column(
        String(16), default=MatchConfidence.NONE, nullable=False
    )  # exact_id, upc, isrc, title_date, none
    status: Mapped[str] = mapped_column(
        String(20), default=ReleaseStatus.UNCONFIRMED, nullable=False
    )  # unconfirmed, auto_confirmed, confirmed, disputed, dismissed
    dispute_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    first_detected_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    was_removed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "creator_id",
            "provider_id",
            "external_release_id",
            name="uq_detected_release_creator_provider_external",
        ),
        Index("ix_detected_releases_creator_status", "creator_id", "status"),
    )


class Alert(Base):
    """A notification attempt about a detected release."""

    __tablename__ = "alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    detected_release_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("detected_releases.id"), nullable=False, index=True
    )
    alert_type: Mapped[str] = mapped_column(String(32), nullable=False)  # new_release, reminder
    channel: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=AlertStatus.PENDING, nullable=False
    )  # pending, sending, sent, failed, cancelled
    scheduled_for: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    dedup_key: Mapped[str] = mapped_column(String(64), nullable=False)

    # Nonce shared by the confirm/dispute tokens issued for this alert
    action_token: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action_token_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    action_taken_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    delivery_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    detected_release: Mapped["DetectedRelease"] = relationship("DetectedRelease")

    __table_args__ = (
        UniqueConstraint("dedup_key", name="uq_alert_dedup_key"),
        Index("ix_alerts_due", "status", "scheduled_for"),
    )
