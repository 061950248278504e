from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Date, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.schoolerp.models import SchoolBase


class Timetable(SchoolBase):
    """Weekly schedule for one class/section in one academic year."""

    __tablename__ = "timetables"
    __table_args__ = (
        UniqueConstraint("class_name", "section", "academic_year", name="uq_timetable_class_year"),
        Index("idx_timetables_status", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    class_name: Mapped[str] = mapped_column(String(16), nullable=False)
    section: Mapped[str] = mapped_column(String(8), nullable=False)
    academic_year: Mapped[str] = mapped_column(String(16), nullable=False)
    effective_from: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="draft")  # draft, active, archived

    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    periods: Mapped[list["TimetablePeriod"]] = relationship(
        "TimetablePeriod",
        back_populates="timetable",
        cascade="all, delete-orphan",
        order_by="TimetablePeriod.id",
    )


class TimetablePeriod(SchoolBase):
    __tablename__ = "timetable_periods"
    __table_args__ = (
        UniqueConstraint("timetable_id", "day_of_week", "period_number", name="uq_timetable_period"),
        Index("idx_timetable_periods_teacher", "teacher_id", "day_of_week"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    timetable_id: Mapped[int] = mapped_column(ForeignKey("timetables.id", ondelete="CASCADE"), nullable=False, index=True)
    day_of_week: Mapped[str] = mapped_column(String(16), nullable=False)  # monday .. saturday
    day_number: Mapped[int] = mapped_column(Integer, nullable=False)  # 1 = monday
    period_number: Mapped[int] = mapped_column(Integer, nullable=False)
    start_time: Mapped[str] = mapped_column(String(5), nullable=False)  # HH:MM
    end_time: Mapped[str] = mapped_column(String(5), nullable=False)
    period_type: Mapped[str] = mapped_column(String(16), nullable=False, default="regular")
    subject: Mapped[str | None] = mapped_column(String(128), nullable=True)
    teacher_id: Mapped[int | None] = mapped_column(ForeignKey("school_users.id", ondelete="SET NULL"), nullable=True)
    room: Mapped[str | None] = mapped_column(String(64), nullable=True)

    timetable: Mapped["Timetable"] = relationship("Timetable", back_populates="periods")
    teacher = relationship("SchoolUser", foreign_keys=[teacher_id], lazy="joined")
