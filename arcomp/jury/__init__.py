from .engine import JuryProgress, JuryScoringEngine, ScoreSummary
from .rubric import MAX_TOTAL, RUBRIC, SCORE_FIELDS, Criterion, total_score, validate_scores

__all__ = [
    "Criterion",
    "JuryProgress",
    "JuryScoringEngine",
    "MAX_TOTAL",
    "RUBRIC",
    "SCORE_FIELDS",
    "ScoreSummary",
    "total_score",
    "validate_scores",
]
