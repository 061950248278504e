"""
Central constants for the school ERP.
"""
from __future__ import annotations

ROLE_SUPERADMIN = "superadmin"
ROLE_ADMIN = "admin"
ROLE_TEACHER = "teacher"
ROLE_STUDENT = "student"
ROLE_PARENT = "parent"

ALL_ROLES = (ROLE_SUPERADMIN, ROLE_ADMIN, ROLE_TEACHER, ROLE_STUDENT, ROLE_PARENT)
SCHOOL_ROLES = (ROLE_ADMIN, ROLE_TEACHER, ROLE_STUDENT, ROLE_PARENT)
STAFF_ROLES = (ROLE_ADMIN, ROLE_TEACHER)

# Generated user id prefixes (students get no prefix: "<CODE>0001")
ROLE_ID_PREFIXES = {
    ROLE_ADMIN: "ADM",
    ROLE_TEACHER: "TEA",
    ROLE_PARENT: "PAR",
}

SCHOOL_TYPES = ("Public", "Private", "International")
AFFILIATION_BOARDS = ("CBSE", "ICSE", "State Board", "IB")

ATTENDANCE_STATUSES = ("present", "absent", "late", "half_day", "medical_leave", "authorized_leave")
ATTENDANCE_SESSIONS = ("daily", "morning", "afternoon")

ASSIGNMENT_STATUSES = ("draft", "active", "completed", "archived")
SUBMISSION_STATUSES = ("submitted", "graded", "returned")

ALLOWED_ATTACHMENT_EXTENSIONS = frozenset(
    {"jpeg", "jpg", "png", "gif", "pdf", "doc", "docx", "xls", "xlsx", "ppt", "pptx", "txt", "zip", "rar"}
)

# Ordered as promotion runs: Nursery -> 12
GRADE_ORDER = ("Nursery", "LKG", "UKG", "1", "2", "3", "4", "5", "6", "7", "8", "9", "10", "11", "12")
