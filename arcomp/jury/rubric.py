"""Jury marking scheme (100 points)."""

from __future__ import annotations

import math
from dataclasses import dataclass
from numbers import Real
from typing import Any, Mapping

from ..errors import ValidationError


@dataclass(frozen=True)
class Criterion:
    """One rubric line.

    Attributes
    ----------
    field : str
        Column on :class:`~arcomp.models.JuryScore` and key in score payloads.
    label : str
        Human-readable name used in error messages.
    max_score : float
        Inclusive upper bound; the lower bound is 0.
    group : str
        Marking-scheme section the criterion belongs to.
    """

    field: str
    label: str
    max_score: float
    group: str


RUBRIC: tuple[Criterion, ...] = (
    Criterion("concept_score", "Concept", 10, "Concept"),
    Criterion("relevance_score", "Relevance", 15, "Relevance to Competition Theme"),
    Criterion("composition_score", "Composition", 10, "Design & Aesthetics"),
    Criterion("balance_score", "Balance", 10, "Design & Aesthetics"),
    Criterion("colour_score", "Colour", 10, "Design & Aesthetics"),
    Criterion("design_relativity_score", "Design Relativity", 10, "Design & Aesthetics"),
    Criterion("aesthetic_appeal_score", "Aesthetic Appeal", 20, "Design & Aesthetics"),
    Criterion(
        "unconventional_materials_score",
        "Unconventional Materials",
        10,
        "Innovative Usage of Materials",
    ),
    Criterion(
        "overall_material_score", "Overall Material", 5, "Innovative Usage of Materials"
    ),
)

SCORE_FIELDS: tuple[str, ...] = tuple(c.field for c in RUBRIC)
MAX_TOTAL: float = float(sum(c.max_score for c in RUBRIC))


def validate_scores(scores: Mapping[str, Any]) -> dict[str, float]:
    """Check every rubric score and return them as floats.

    Keys outside the rubric (such as a client-computed ``total_score``) are
    ignored.

    Raises
    ------
    ValidationError
        If a score is missing, not a real number, not finite or out of range.
    """

    cleaned: dict[str, float] = {}
    for criterion in RUBRIC:
        value = scores.get(criterion.field)
        if value is None:
            raise ValidationError(f"{criterion.label} score is required")
        if isinstance(value, bool) or not isinstance(value, Real):
            raise ValidationError(f"{criterion.label} score must be a number")
        value = float(value)
        if not math.isfinite(value):
            raise ValidationError(f"{criterion.label} score must be a finite number")
        if value < 0 or value > criterion.max_score:
            raise ValidationError(
                f"{criterion.label} score must be between 0-{criterion.max_score:g}"
            )
        cleaned[criterion.field] = value
    return cleaned


def total_score(scores: Mapping[str, float]) -> float:
    """Exact sum of the nine rubric scores."""

    return float(sum(scores[field] for field in SCORE_FIELDS))
