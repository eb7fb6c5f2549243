"""
Module to turn a model assessment into a recommendation
"""

from core.schemas import RelevanceAssessment


def normalize_score(score: float) -> float:
    """
    Clamps to the 0-10 scale and keeps one decimal.
    """
    return round(min(10.0, max(0.0, float(score))), 1)


def passes_threshold(
    assessment: RelevanceAssessment,
    threshold: float,
) -> bool:
    """
    Determines whether an assessed candidate should get a reply draft.
    The model must recommend it and its overall score must reach the threshold.
    """
    if not assessment.should_reply:
        return False
    return normalize_score(assessment.overall_score) >= threshold
