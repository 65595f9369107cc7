from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Optional

from gradetrack.core.errors import ValidationError


COMPONENTS = ("continuous", "midterm", "final")

# Nominal maxima per component; the three add up to a total out of 100.
COMPONENT_MAX: Dict[str, float] = {
    "continuous": 30,
    "midterm": 30,
    "final": 40,
}
FINAL_COMPONENT_MAX = COMPONENT_MAX["final"]

DEFAULT_BRANCH = "CSE"

TERMS_BY_YEAR: Dict[int, List[int]] = {
    1: [1, 2],
    2: [3, 4],
    3: [5, 6],
    4: [7, 8],
}


@dataclass(frozen=True)
class ManualOverride:
    grade: str
    points: float


@dataclass(frozen=True)
class Subject:
    name: str
    credits: int
    continuous: Optional[float] = None
    midterm: Optional[float] = None
    final: Optional[float] = None
    assumed: FrozenSet[str] = frozenset()
    is_graded: bool = True
    override: Optional[ManualOverride] = None
    id: Optional[str] = None

    def __post_init__(self) -> None:
        if self.credits < 0:
            raise ValidationError(f"Credits for {self.name or 'subject'} cannot be negative")
        for name in COMPONENTS:
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValidationError(f"{name} mark for {self.name or 'subject'} cannot be negative")
        unknown = set(self.assumed) - set(COMPONENTS)
        if unknown:
            raise ValidationError(f"Unknown assumed components: {', '.join(sorted(unknown))}")
        object.__setattr__(self, "assumed", frozenset(self.assumed))

    @property
    def total(self) -> float:
        """Sum of the entered components; missing components count as 0."""
        return sum(value or 0 for value in (self.continuous, self.midterm, self.final))

    @property
    def internal_total(self) -> float:
        return (self.continuous or 0) + (self.midterm or 0)

    @property
    def is_complete(self) -> bool:
        return all(getattr(self, name) is not None for name in COMPONENTS)

    @property
    def awaiting_final(self) -> bool:
        # A recorded 0 on the final is indistinguishable from "not taken yet".
        return self.final is None or self.final == 0

    @property
    def has_assumed_marks(self) -> bool:
        return bool(self.assumed)

    def marks(self) -> Dict[str, Optional[float]]:
        return {name: getattr(self, name) for name in COMPONENTS}

    def with_changes(self, **changes) -> "Subject":
        return replace(self, **changes)


@dataclass
class Semester:
    title: str
    year: int
    term: int
    branch: str = DEFAULT_BRANCH
    subjects: List[Subject] = field(default_factory=list)
    id: Optional[str] = None
    sgpa: Optional[float] = None
    total_credits: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class SubjectTemplate:
    subject_name: str
    default_credits: int
    year: int
    term: int
    branch: str = DEFAULT_BRANCH
    grading_scheme_id: Optional[str] = None
    id: Optional[str] = None

    def to_subject(self) -> Subject:
        return Subject(name=self.subject_name, credits=self.default_credits)


def semester_options(year: int) -> List[int]:
    return list(TERMS_BY_YEAR.get(year, []))


def default_semester_title(year: int, term: int) -> str:
    return f"Year {year} - Semester {term}"


def validate_year_term(year: int, term: int) -> None:
    options = semester_options(year)
    if not options:
        raise ValidationError(f"Unsupported year: {year}. Use 1 to {max(TERMS_BY_YEAR)}.")
    if term not in options:
        raise ValidationError(f"Semester {term} is not offered in year {year}")


def subjects_from_templates(templates: Iterable[SubjectTemplate]) -> List[Subject]:
    return [template.to_subject() for template in templates]
