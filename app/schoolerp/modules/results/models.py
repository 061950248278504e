from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.schoolerp.models import SchoolBase


class Result(SchoolBase):
    __tablename__ = "results"
    __table_args__ = (
        UniqueConstraint("student_id", "academic_year", "exam_type", name="uq_result_student_year_exam"),
        Index("idx_results_class", "class_name", "section", "exam_type", "academic_year"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    student_id: Mapped[int] = mapped_column(ForeignKey("school_users.id", ondelete="CASCADE"), nullable=False, index=True)
    class_name: Mapped[str] = mapped_column(String(16), nullable=False)
    section: Mapped[str] = mapped_column(String(8), nullable=False)
    academic_year: Mapped[str] = mapped_column(String(16), nullable=False)
    exam_type: Mapped[str] = mapped_column(String(64), nullable=False)

    total_marks: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    max_marks: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    grade: Mapped[str] = mapped_column(String(32), nullable=False)
    grade_point: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(8), nullable=False)  # pass, fail
    rank: Mapped[int | None] = mapped_column(Integer, nullable=True)
    class_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    published_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    updated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    student = relationship("SchoolUser", foreign_keys=[student_id], lazy="joined")
    subjects: Mapped[list["ResultSubject"]] = relationship(
        "ResultSubject",
        back_populates="result",
        cascade="all, delete-orphan",
        order_by="ResultSubject.id",
    )


class ResultSubject(SchoolBase):
    __tablename__ = "result_subjects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    result_id: Mapped[int] = mapped_column(ForeignKey("results.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False)
    marks_obtained: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    max_marks: Mapped[float] = mapped_column(Float, nullable=False, default=100)
    practical_marks: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    max_practical_marks: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    percentage: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    grade: Mapped[str] = mapped_column(String(32), nullable=False)
    grade_point: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str] = mapped_column(String(8), nullable=False)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)

    result: Mapped["Result"] = relationship("Result", back_populates="subjects")
