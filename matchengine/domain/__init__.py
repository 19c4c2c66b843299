"""Domain models for the match engine."""

from .models import (
    ALGORITHM_VERSION,
    AcademicRecord,
    CandidateSnapshot,
    EntityType,
    ExperienceEntry,
    ExperienceKind,
    MatchScore,
    MatchScoreComponents,
    OpportunitySnapshot,
    PreferenceKind,
    PreferenceTag,
    SkillProficiency,
    SkillRequirement,
)

__all__ = [
    "ALGORITHM_VERSION",
    "AcademicRecord",
    "CandidateSnapshot",
    "EntityType",
    "ExperienceEntry",
    "ExperienceKind",
    "MatchScore",
    "MatchScoreComponents",
    "OpportunitySnapshot",
    "PreferenceKind",
    "PreferenceTag",
    "SkillProficiency",
    "SkillRequirement",
]
