"""Pure scoring of candidate/opportunity pairs."""

from .computer import (
    ACADEMIC_WEIGHT,
    EXPERIENCE_WEIGHT,
    NEUTRAL_SCORE,
    PREFERENCE_WEIGHT,
    SKILL_WEIGHT,
    ScoreComputer,
    combine,
    proficiency_factor,
)
from .insights import MatchInsights, build_insights

__all__ = [
    "ScoreComputer",
    "combine",
    "proficiency_factor",
    "SKILL_WEIGHT",
    "ACADEMIC_WEIGHT",
    "EXPERIENCE_WEIGHT",
    "PREFERENCE_WEIGHT",
    "NEUTRAL_SCORE",
    "MatchInsights",
    "build_insights",
]
