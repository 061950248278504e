from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.schoolerp.models import SchoolBase


class AttendanceRecord(SchoolBase):
    __tablename__ = "attendance_records"
    __table_args__ = (
        UniqueConstraint("student_id", "date", "session", name="uq_attendance_student_date_session"),
        Index("idx_attendance_class_date", "class_name", "section", "date"),
        Index("idx_attendance_date", "date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    student_id: Mapped[int] = mapped_column(ForeignKey("school_users.id", ondelete="CASCADE"), nullable=False)
    class_name: Mapped[str] = mapped_column(String(16), nullable=False)
    section: Mapped[str] = mapped_column(String(8), nullable=False)
    attendance_date: Mapped[date] = mapped_column("date", Date, nullable=False)
    session: Mapped[str] = mapped_column(String(16), nullable=False, default="daily")  # daily, morning, afternoon
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    locked_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    marked_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    student = relationship("SchoolUser", lazy="joined")


class AttendanceSession(SchoolBase):
    """A class/section session that has been marked in bulk. Once present, it is frozen."""

    __tablename__ = "attendance_sessions"
    __table_args__ = (
        UniqueConstraint("date", "class_name", "section", "session", name="uq_attendance_session"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    attendance_date: Mapped[date] = mapped_column("date", Date, nullable=False)
    class_name: Mapped[str] = mapped_column(String(16), nullable=False)
    section: Mapped[str] = mapped_column(String(8), nullable=False)
    session: Mapped[str] = mapped_column(String(16), nullable=False)

    marked_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    total_students: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    present_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    absent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
