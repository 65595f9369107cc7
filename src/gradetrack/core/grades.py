from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

from gradetrack.core.errors import ConfigurationError, ValidationError
from gradetrack.core.models import ManualOverride, Subject


GRADE_POINTS: Dict[str, int] = {
    "A+": 10,
    "A": 9,
    "B+": 8,
    "B": 7,
    "C": 6,
    "P": 5,
    "P-": 4,
    "F": 0,
}

# Pass/fail labels may be picked as overrides but never come out of a scheme.
PASS_FAIL_POINTS: Dict[str, int] = {
    "S": 0,
    "U": 0,
}

DEFAULT_CUTOFFS: Dict[str, float] = {
    "A+": 85,
    "A": 75,
    "B+": 65,
    "B": 55,
    "C": 50,
    "P": 45,
    "P-": 40,
    "F": 0,
}

PASS_MARK = 40
SATISFACTORY = "S"
UNSATISFACTORY = "U"


def validate_cutoffs(cutoffs: Mapping[str, float]) -> Dict[str, float]:
    if not cutoffs:
        raise ConfigurationError("Grading scheme has no cutoffs")

    normalized: Dict[str, float] = {}
    for grade, minimum in cutoffs.items():
        if grade not in GRADE_POINTS:
            raise ConfigurationError(f"Unsupported grade in scheme: {grade}")
        try:
            value = float(minimum)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"Cutoff for {grade} must be a number") from exc
        if value < 0:
            raise ConfigurationError(f"Cutoff for {grade} cannot be negative")
        normalized[grade] = value

    if 0 not in normalized.values():
        raise ConfigurationError("Grading scheme needs a fallback grade with cutoff 0")
    return normalized


@dataclass(frozen=True)
class GradingScheme:
    name: str
    cutoffs: Mapping[str, float] = field(compare=True, hash=False)
    is_default: bool = False
    id: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "cutoffs", validate_cutoffs(self.cutoffs))

    def ordered_cutoffs(self) -> List[Tuple[str, float]]:
        """Highest cutoff first; equal cutoffs keep their declared order."""
        return sorted(self.cutoffs.items(), key=lambda item: item[1], reverse=True)

    @property
    def fallback_grade(self) -> str:
        return self.ordered_cutoffs()[-1][0]


DEFAULT_SCHEME = GradingScheme(name="Default", cutoffs=DEFAULT_CUTOFFS, is_default=True)


def grade_point(grade: str) -> int:
    try:
        return GRADE_POINTS[grade]
    except KeyError as exc:
        raise ConfigurationError(f"Unsupported letter grade: {grade}") from exc


def resolve_grade(scheme: GradingScheme, mark: float) -> Tuple[str, int]:
    for grade, minimum in scheme.ordered_cutoffs():
        if mark >= minimum:
            return grade, grade_point(grade)
    fallback = scheme.fallback_grade
    return fallback, grade_point(fallback)


def override_for_grade(grade: str) -> ManualOverride:
    label = grade.strip().upper()
    if label in GRADE_POINTS:
        return ManualOverride(grade=label, points=GRADE_POINTS[label])
    if label in PASS_FAIL_POINTS:
        return ManualOverride(grade=label, points=PASS_FAIL_POINTS[label])
    raise ValidationError(f"Unsupported override grade: {grade}")


def pass_fail_band(total: float) -> str:
    return SATISFACTORY if total >= PASS_MARK else UNSATISFACTORY


@dataclass(frozen=True)
class SubjectEvaluation:
    total: float
    grade: str
    points: float
    is_graded: bool
    is_overridden: bool = False

    @property
    def display_grade(self) -> str:
        return f"{self.grade}*" if self.is_overridden else self.grade


def evaluate_subject(subject: Subject, scheme: GradingScheme) -> SubjectEvaluation:
    total = subject.total

    if not subject.is_graded:
        return SubjectEvaluation(
            total=total,
            grade=pass_fail_band(total),
            points=0,
            is_graded=False,
        )

    if subject.override is not None:
        return SubjectEvaluation(
            total=total,
            grade=subject.override.grade,
            points=subject.override.points,
            is_graded=True,
            is_overridden=True,
        )

    grade, points = resolve_grade(scheme, total)
    return SubjectEvaluation(total=total, grade=grade, points=points, is_graded=True)
