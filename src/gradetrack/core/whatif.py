"""What-if projection for a target SGPA.

Subjects with every component entered are "complete" and their grade points are
treated as secured. Subjects whose final is missing or zero are "incomplete" and
receive a required final mark. A recorded final of 0 cannot be told apart from
an exam not taken yet, so such a subject is both: its current points count as
secured and it still gets a required final.

The reverse mapping from an average grade point to a mark is a coarse
staircase: many marks produce the same grade point, so the required mark is
an estimate and not an exact inversion of the scheme.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from gradetrack.core.errors import ValidationError
from gradetrack.core.grades import GradingScheme, resolve_grade
from gradetrack.core.models import FINAL_COMPONENT_MAX, Subject

logger = logging.getLogger(__name__)

MAX_SGPA = 10.0
MAX_TOTAL_MARK = 100.0

# (minimum average grade point, approximate mark)
POINTS_TO_MARK: List[Tuple[float, float]] = [
    (9.5, 90),
    (8.5, 80),
    (7.5, 70),
    (6.5, 60),
    (5.5, 52),
    (4.5, 47),
    (3.5, 42),
]


def mark_for_points(points: float) -> float:
    for minimum, mark in POINTS_TO_MARK:
        if points >= minimum:
            return mark
    return max(0.0, points * 10)


@dataclass(frozen=True)
class SubjectTarget:
    subject_name: str
    credits: int
    required_final: float
    unclamped_required_final: float

    @property
    def feasible(self) -> bool:
        return self.unclamped_required_final <= FINAL_COMPONENT_MAX


@dataclass(frozen=True)
class WhatIfResult:
    target_sgpa: float
    required_average_points: float
    required_mark: float
    is_achievable: bool
    secured_points: float
    secured_credits: int
    total_credits: int
    remaining_credits: int
    targets: Tuple[SubjectTarget, ...] = ()

    @property
    def required_average(self) -> float:
        return self.required_mark

    @property
    def infeasible_subjects(self) -> List[str]:
        return [target.subject_name for target in self.targets if not target.feasible]


def solve_target(target_sgpa: float, subjects: Sequence[Subject], scheme: GradingScheme) -> WhatIfResult:
    if not subjects:
        raise ValidationError("At least one subject is required for a prediction")
    if math.isnan(target_sgpa) or not 0 <= target_sgpa <= MAX_SGPA:
        raise ValidationError("Target SGPA must be between 0 and 10")

    secured_points = 0.0
    secured_credits = 0
    for subject in subjects:
        if subject.is_complete:
            _, points = resolve_grade(scheme, subject.total)
            secured_points += points * subject.credits
            secured_credits += subject.credits

    total_credits = sum(subject.credits for subject in subjects)
    remaining_credits = total_credits - secured_credits

    if remaining_credits == 0:
        return WhatIfResult(
            target_sgpa=target_sgpa,
            required_average_points=0.0,
            required_mark=0.0,
            is_achievable=True,
            secured_points=secured_points,
            secured_credits=secured_credits,
            total_credits=total_credits,
            remaining_credits=0,
        )

    required_total_points = target_sgpa * total_credits
    remaining_points_needed = required_total_points - secured_points
    required_average_points = remaining_points_needed / remaining_credits
    required_mark = mark_for_points(required_average_points)

    targets = []
    for subject in subjects:
        if not subject.awaiting_final:
            continue
        unclamped = required_mark - subject.internal_total
        targets.append(
            SubjectTarget(
                subject_name=subject.name,
                credits=subject.credits,
                required_final=min(FINAL_COMPONENT_MAX, max(0.0, unclamped)),
                unclamped_required_final=unclamped,
            )
        )

    is_achievable = required_average_points <= MAX_SGPA and required_mark <= MAX_TOTAL_MARK
    logger.debug(
        "Target %.2f: secured %.2f points over %d credits, need %.4f average points (~%s marks) over %d credits",
        target_sgpa,
        secured_points,
        secured_credits,
        required_average_points,
        required_mark,
        remaining_credits,
    )

    return WhatIfResult(
        target_sgpa=target_sgpa,
        required_average_points=required_average_points,
        required_mark=required_mark,
        is_achievable=is_achievable,
        secured_points=secured_points,
        secured_credits=secured_credits,
        total_credits=total_credits,
        remaining_credits=remaining_credits,
        targets=tuple(targets),
    )
