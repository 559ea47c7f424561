"""
Source event tables owned by other subsystems.

The LMS importer and the study planner write these tables; the sync engine
only reads them. Keys are the owning subsystem's string IDs.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, DateTime, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from calendar_sync.models.base import Base


class LmsCalendarEvent(Base):
    """Assignment, quiz or course event imported from the LMS."""

    __tablename__ = "lms_calendar_events"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    lms_id: Mapped[str] = mapped_column(String(255), nullable=False, doc="ID in the LMS itself")
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    all_day: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    event_type: Mapped[str] = mapped_column(
        String(50),
        nullable=False,
        default="event",
        doc="Type: 'assignment', 'quiz', 'event'"
    )
    location_name: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    course_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_lms_calendar_events_user_start", "user_id", "start_at"),
    )


class StudySession(Base):
    """Study block scheduled by the internal planner."""

    __tablename__ = "study_sessions"

    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    start_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    session_type: Mapped[str] = mapped_column(String(50), nullable=False, default="study")
    course_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    course_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    assignment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_study_sessions_user_start", "user_id", "start_time"),
    )
