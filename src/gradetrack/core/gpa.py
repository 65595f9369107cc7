import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from gradetrack.core.grades import GradingScheme, SubjectEvaluation, evaluate_subject
from gradetrack.core.models import Subject

logger = logging.getLogger(__name__)


def calculate_sgpa(course_results: Iterable[Tuple[int, float]]) -> float:
    """
    course_results: iterable of (credits, grade_point) for graded subjects
    SGPA = Σ(credits * grade_point) / Σ(credits), 0 when there are no credits
    """
    weighted_sum = 0.0
    total_credits = 0

    for credits, points in course_results:
        weighted_sum += credits * points
        total_credits += credits

    if total_credits == 0:
        return 0.0
    return weighted_sum / total_credits


def calculate_cgpa(semester_results: Iterable[Tuple[float, int]]) -> float:
    """
    semester_results: iterable of (sgpa, semester_total_credits)
    CGPA = Σ(sgpa * semester_credits) / Σ(semester_credits), 0 when there are no credits
    """
    weighted_sum = 0.0
    total_credits = 0

    for sgpa, credits in semester_results:
        weighted_sum += sgpa * credits
        total_credits += credits

    if total_credits == 0:
        return 0.0
    return weighted_sum / total_credits


def round_gpa(value: float, round_to: int = 2) -> float:
    return round(value, round_to)


@dataclass(frozen=True)
class SemesterSummary:
    sgpa: float
    credits_for_gpa: int
    total_credits: int
    evaluations: Tuple[SubjectEvaluation, ...] = ()

    @property
    def sgpa_display(self) -> float:
        return round_gpa(self.sgpa)


def summarize_evaluations(subjects: Sequence[Subject], evaluations: Sequence[SubjectEvaluation]) -> SemesterSummary:
    course_results: List[Tuple[int, float]] = []
    credits_for_gpa = 0
    total_credits = 0

    for subject, evaluation in zip(subjects, evaluations):
        total_credits += subject.credits
        if not subject.is_graded:
            continue
        credits_for_gpa += subject.credits
        course_results.append((subject.credits, evaluation.points))

    return SemesterSummary(
        sgpa=calculate_sgpa(course_results),
        credits_for_gpa=credits_for_gpa,
        total_credits=total_credits,
        evaluations=tuple(evaluations),
    )


def summarize_semester(subjects: Sequence[Subject], scheme: GradingScheme) -> SemesterSummary:
    evaluations = [evaluate_subject(subject, scheme) for subject in subjects]
    summary = summarize_evaluations(subjects, evaluations)
    logger.debug(
        "Semester of %d subjects: sgpa=%.4f gpa_credits=%d total_credits=%d",
        len(subjects),
        summary.sgpa,
        summary.credits_for_gpa,
        summary.total_credits,
    )
    return summary


@dataclass(frozen=True)
class RecordSummary:
    cgpa: float
    total_credits: int
    latest_sgpa: float
    semester_count: int

    @property
    def cgpa_display(self) -> float:
        return round_gpa(self.cgpa)

    @property
    def latest_sgpa_display(self) -> float:
        return round_gpa(self.latest_sgpa)


def summarize_record(
    semester_results: Sequence[Tuple[float, int]],
    latest_sgpa: Optional[float] = None,
) -> RecordSummary:
    """
    semester_results: (sgpa, total_credits) per semester, newest first
    latest_sgpa defaults to the SGPA of the first entry.
    """
    if latest_sgpa is None:
        latest_sgpa = semester_results[0][0] if semester_results else 0.0
    return RecordSummary(
        cgpa=calculate_cgpa(semester_results),
        total_credits=sum(credits for _, credits in semester_results),
        latest_sgpa=latest_sgpa,
        semester_count=len(semester_results),
    )
