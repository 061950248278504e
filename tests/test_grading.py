import pytest

from app.schoolerp.modules.results.grading import (
    LEVEL_ELEMENTARY,
    LEVEL_HIGH,
    LEVEL_HIGHER_SECONDARY,
    LEVEL_MIDDLE,
    grade_for,
    level_for_class,
    percentage_of,
)


@pytest.mark.parametrize(
    "class_name,level",
    [
        ("Nursery", LEVEL_ELEMENTARY),
        ("UKG", LEVEL_ELEMENTARY),
        ("5", LEVEL_ELEMENTARY),
        ("6", LEVEL_MIDDLE),
        ("8", LEVEL_MIDDLE),
        ("9", LEVEL_HIGH),
        ("10", LEVEL_HIGH),
        ("11", LEVEL_HIGHER_SECONDARY),
        ("12", LEVEL_HIGHER_SECONDARY),
        ("13", None),
    ],
)
def test_level_for_class(class_name, level):
    assert level_for_class(class_name) == level


@pytest.mark.parametrize(
    "pct,grade,points",
    [(100, "A+", 10), (91, "A+", 10), (90.5, "A", 9), (81, "A", 9), (55, "C+", 6), (33, "D", 4), (32.99, "E", 0), (0, "E", 0)],
)
def test_middle_scale(pct, grade, points):
    info = grade_for(pct, "7")
    assert (info.grade, info.grade_point) == (grade, points)


@pytest.mark.parametrize(
    "pct,grade,points",
    [(95, "A1", 10), (85, "A2", 9), (72, "B1", 8), (61, "B2", 7), (41, "C2", 5), (33, "D1", 4), (25, "D2", 3), (20, "E2", 1)],
)
def test_board_scale(pct, grade, points):
    for class_name in ("10", "12"):
        info = grade_for(pct, class_name)
        assert (info.grade, info.grade_point) == (grade, points)


def test_elementary_is_descriptive():
    assert grade_for(92, "3").grade == "Excellent"
    assert grade_for(75, "3").grade == "Very Good"
    assert grade_for(60, "LKG").grade == "Good"
    assert grade_for(40, "1").grade == "Satisfactory"
    info = grade_for(10, "2")
    assert info.grade == "Needs Improvement"
    assert info.grade_point is None


def test_pass_mark_is_33_percent_everywhere():
    for class_name in ("2", "7", "10", "12"):
        assert grade_for(33, class_name).status == "pass"
        assert grade_for(32.5, class_name).status == "fail"


def test_percentage_rounding():
    assert percentage_of(2, 3) == 66.67
    assert percentage_of(5, 0) == 0.0


def test_unknown_class_raises():
    with pytest.raises(ValueError):
        grade_for(50, "PhD")
