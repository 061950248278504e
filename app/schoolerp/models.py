from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import Boolean, Date, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Central database: school registry, superadmins, platform audit trail."""


class SchoolBase(DeclarativeBase):
    """Tenant database: one physical database per school."""


class _AuditEventColumns:
    """
    Append-only audit trail event.
    The same shape is kept in the central database and in every school database.
    """

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)  # user_id or superadmin email
    actor_role: Mapped[str | None] = mapped_column(String(32), nullable=True)

    action: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "attendance.mark"
    entity_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)


# ---------- Central ----------


class School(Base):
    __tablename__ = "schools"
    __table_args__ = (
        Index("idx_schools_active", "is_active"),
        Index("idx_schools_name", "name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    code: Mapped[str] = mapped_column(String(16), nullable=False, unique=True)  # e.g. "NPS"

    school_type: Mapped[str] = mapped_column(String(32), nullable=False)  # Public, Private, International
    affiliation_board: Mapped[str] = mapped_column(String(32), nullable=False)  # CBSE, ICSE, State Board, IB
    established_year: Mapped[int] = mapped_column(Integer, nullable=False)

    principal_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    principal_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(32), nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    website: Mapped[str | None] = mapped_column(String(255), nullable=True)

    street: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    state: Mapped[str | None] = mapped_column(String(128), nullable=True)
    pincode: Mapped[str | None] = mapped_column(String(16), nullable=True)
    country: Mapped[str] = mapped_column(String(64), nullable=False, default="India")

    current_academic_year: Mapped[str | None] = mapped_column(String(16), nullable=True)  # "2024-25"
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    database_name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    database_created: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    database_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class SuperAdmin(Base):
    __tablename__ = "super_admins"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    last_login: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    role = "superadmin"
    school_code = None

    @property
    def actor_id(self) -> str:
        return self.email

    @property
    def display_name(self) -> str:
        return self.email


class AuditEvent(_AuditEventColumns, Base):
    __tablename__ = "audit_events"

    school_code: Mapped[str | None] = mapped_column(String(16), nullable=True)


# ---------- Tenant ----------


class StudentGuardian(SchoolBase):
    __tablename__ = "student_guardians"
    student_id: Mapped[int] = mapped_column(ForeignKey("school_users.id", ondelete="CASCADE"), primary_key=True)
    parent_id: Mapped[int] = mapped_column(ForeignKey("school_users.id", ondelete="CASCADE"), primary_key=True)
    relationship_type: Mapped[str | None] = mapped_column(String(32), nullable=True)  # father, mother, guardian
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class SchoolUser(SchoolBase):
    __tablename__ = "school_users"
    __table_args__ = (
        Index("idx_school_users_role", "role"),
        Index("idx_school_users_class", "class_name", "section"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)  # e.g. "NPS_TEA001", "NPS0001"
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(16), nullable=False)  # admin, teacher, student, parent

    first_name: Mapped[str] = mapped_column(String(50), nullable=False)
    middle_name: Mapped[str | None] = mapped_column(String(50), nullable=True)
    last_name: Mapped[str] = mapped_column(String(50), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(16), nullable=True)
    date_of_birth: Mapped[date | None] = mapped_column(Date, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(16), nullable=True)

    # students
    class_name: Mapped[str | None] = mapped_column(String(16), nullable=True)
    section: Mapped[str | None] = mapped_column(String(8), nullable=True)
    roll_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    admission_number: Mapped[str | None] = mapped_column(String(32), nullable=True)

    # teachers
    subjects: Mapped[str | None] = mapped_column(Text, nullable=True)  # comma separated
    qualification: Mapped[str | None] = mapped_column(String(255), nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    password_change_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    login_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_login: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    created_by: Mapped[str | None] = mapped_column(String(64), nullable=True)

    children: Mapped[list["SchoolUser"]] = relationship(
        "SchoolUser",
        secondary="student_guardians",
        primaryjoin="SchoolUser.id == StudentGuardian.parent_id",
        secondaryjoin="SchoolUser.id == StudentGuardian.student_id",
        back_populates="guardians",
        viewonly=True,
    )
    guardians: Mapped[list["SchoolUser"]] = relationship(
        "SchoolUser",
        secondary="student_guardians",
        primaryjoin="SchoolUser.id == StudentGuardian.student_id",
        secondaryjoin="SchoolUser.id == StudentGuardian.parent_id",
        back_populates="children",
        viewonly=True,
    )

    # set by the auth loader; not persisted
    school_code = None

    @property
    def actor_id(self) -> str:
        return self.user_id

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class AccessRule(SchoolBase):
    """One cell of the school's access matrix."""

    __tablename__ = "access_rules"

    role: Mapped[str] = mapped_column(String(16), primary_key=True)
    feature: Mapped[str] = mapped_column(String(64), primary_key=True)
    level: Mapped[str] = mapped_column(String(16), nullable=False)  # all, none, limited, own, self
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_by: Mapped[str | None] = mapped_column(String(64), nullable=True)


class IdSequence(SchoolBase):
    __tablename__ = "id_sequences"

    key: Mapped[str] = mapped_column(String(32), primary_key=True)  # role name
    value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class SchoolAuditEvent(_AuditEventColumns, SchoolBase):
    __tablename__ = "audit_events"


# Ensure module models are imported so SchoolBase.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.schoolerp.modules.attendance.models import AttendanceRecord, AttendanceSession  # noqa: E402,F401
from app.schoolerp.modules.assignments.models import (  # noqa: E402,F401
    Assignment,
    AssignmentAttachment,
    Submission,
    SubmissionAttachment,
)
from app.schoolerp.modules.results.models import Result, ResultSubject  # noqa: E402,F401
from app.schoolerp.modules.timetable.models import Timetable, TimetablePeriod  # noqa: E402,F401
from app.schoolerp.modules.messages.models import Message  # noqa: E402,F401
