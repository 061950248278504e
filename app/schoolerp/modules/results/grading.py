"""
Grade scales by school level.

Elementary classes get a descriptive grade with no points; middle school uses
A+..E; high and higher secondary use the board pattern A1..E2. Pass/fail is
decided by percentage alone so every scale agrees on it.
"""
from __future__ import annotations

from dataclasses import dataclass

LEVEL_ELEMENTARY = "elementary"
LEVEL_MIDDLE = "middle"
LEVEL_HIGH = "high"
LEVEL_HIGHER_SECONDARY = "higher_secondary"

PASS_PERCENTAGE = 33.0

CLASS_LEVELS: dict[str, str] = {
    **{c: LEVEL_ELEMENTARY for c in ("Nursery", "LKG", "UKG", "1", "2", "3", "4", "5")},
    **{c: LEVEL_MIDDLE for c in ("6", "7", "8")},
    **{c: LEVEL_HIGH for c in ("9", "10")},
    **{c: LEVEL_HIGHER_SECONDARY for c in ("11", "12")},
}

# (min percentage, grade, points), highest first
_MIDDLE_SCALE = (
    (91, "A+", 10),
    (81, "A", 9),
    (71, "B+", 8),
    (61, "B", 7),
    (51, "C+", 6),
    (41, "C", 5),
    (33, "D", 4),
    (0, "E", 0),
)
_BOARD_SCALE = (
    (91, "A1", 10),
    (81, "A2", 9),
    (71, "B1", 8),
    (61, "B2", 7),
    (51, "C1", 6),
    (41, "C2", 5),
    (33, "D1", 4),
    (21, "D2", 3),
    (0, "E2", 1),
)
_DESCRIPTIVE_SCALE = (
    (90, "Excellent"),
    (75, "Very Good"),
    (60, "Good"),
    (40, "Satisfactory"),
    (0, "Needs Improvement"),
)

SCALES = {
    LEVEL_MIDDLE: _MIDDLE_SCALE,
    LEVEL_HIGH: _BOARD_SCALE,
    LEVEL_HIGHER_SECONDARY: _BOARD_SCALE,
}


@dataclass(frozen=True)
class GradeInfo:
    grade: str
    grade_point: float | None
    status: str  # pass, fail


def level_for_class(class_name: str) -> str | None:
    return CLASS_LEVELS.get((class_name or "").strip())


def percentage_of(obtained: float, maximum: float) -> float:
    if maximum <= 0:
        return 0.0
    return round(obtained / maximum * 100, 2)


def grade_for(percentage: float, class_name: str) -> GradeInfo:
    level = level_for_class(class_name)
    if level is None:
        raise ValueError(f"Unknown class: {class_name}")
    status = "pass" if percentage >= PASS_PERCENTAGE else "fail"

    if level == LEVEL_ELEMENTARY:
        for minimum, label in _DESCRIPTIVE_SCALE:
            if percentage >= minimum:
                return GradeInfo(label, None, status)
    for minimum, label, points in SCALES[level]:
        if percentage >= minimum:
            return GradeInfo(label, float(points), status)
    # negative percentages cannot come from validated marks
    raise ValueError(f"Percentage out of range: {percentage}")
