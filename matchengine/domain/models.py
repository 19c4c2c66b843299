"""Core domain models for candidates, opportunities and match scores.

This module defines the values that flow through the engine:
- CandidateSnapshot / OpportunitySnapshot: read-only projections supplied by
  the data layer at compute time
- MatchScoreComponents: the pure output of the score computer
- MatchScore: the cached, versioned score for one (student, opportunity) pair

Snapshot fields are deliberately lenient: out-of-range proficiencies or gpas
are accepted here and clamped by the score computer, so an incomplete
profile lowers a score instead of failing a recompute.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from matchengine.utils.timestamps import ensure_utc, months_between

ALGORITHM_VERSION = "1.0"


class EntityType(str, Enum):
    """Kinds of entity that carry a data-version."""

    STUDENT = "STUDENT"
    OPPORTUNITY = "OPPORTUNITY"


class ExperienceKind(str, Enum):
    """Kinds of experience entry on a candidate profile."""

    EMPLOYMENT = "EMPLOYMENT"
    INTERNSHIP = "INTERNSHIP"
    PROJECT = "PROJECT"


class PreferenceKind(str, Enum):
    """Dimensions that preference tags are grouped by."""

    INDUSTRY = "INDUSTRY"
    LOCATION = "LOCATION"
    JOB_TYPE = "JOB_TYPE"
    WORK_ENVIRONMENT = "WORK_ENVIRONMENT"


class PreferenceTag(BaseModel):
    """A (kind, value) preference such as (LOCATION, "berlin")."""

    kind: PreferenceKind
    value: str

    @field_validator("value")
    @classmethod
    def normalize_value(cls, v: str) -> str:
        """Compare tags case- and whitespace-insensitively."""
        return " ".join(v.split()).lower()

    model_config = {"frozen": True}


class SkillProficiency(BaseModel):
    """A skill the candidate has, with self-reported level and years."""

    skill_id: str
    proficiency: int = 0
    years_of_experience: float = 0.0

    model_config = {"frozen": True}


class AcademicRecord(BaseModel):
    """Academic summary of a candidate."""

    gpa: Optional[float] = Field(None, description="Grade point average on a 0.0-4.0 scale")
    graduation_date: Optional[date] = None
    major: Optional[str] = None

    model_config = {"frozen": True}


class ExperienceEntry(BaseModel):
    """One employment, internship or project entry."""

    kind: ExperienceKind = ExperienceKind.EMPLOYMENT
    title: Optional[str] = None
    duration_months: float = 0.0
    skill_ids: FrozenSet[str] = Field(default_factory=frozenset)

    model_config = {"frozen": True}

    @classmethod
    def from_dates(
        cls,
        kind: ExperienceKind,
        start: date,
        end: Optional[date] = None,
        skill_ids=(),
        title: Optional[str] = None,
    ) -> "ExperienceEntry":
        """Build an entry from a start/end date range (open-ended runs until today)."""
        return cls(
            kind=kind,
            title=title,
            duration_months=months_between(start, end),
            skill_ids=frozenset(skill_ids),
        )


class CandidateSnapshot(BaseModel):
    """Read-only projection of a student profile used as computation input."""

    student_id: str
    skills: Tuple[SkillProficiency, ...] = ()
    academic: AcademicRecord = Field(default_factory=AcademicRecord)
    experiences: Tuple[ExperienceEntry, ...] = ()
    preferences: FrozenSet[PreferenceTag] = Field(default_factory=frozenset)

    model_config = {"frozen": True}

    @field_validator("skills")
    @classmethod
    def unique_skills(cls, v: Tuple[SkillProficiency, ...]) -> Tuple[SkillProficiency, ...]:
        """Keep one entry per skill id, the strongest one when duplicated."""
        best: Dict[str, SkillProficiency] = {}
        for skill in v:
            current = best.get(skill.skill_id)
            if current is None or (skill.proficiency, skill.years_of_experience) > (
                current.proficiency,
                current.years_of_experience,
            ):
                best[skill.skill_id] = skill
        return tuple(best[skill_id] for skill_id in dict.fromkeys(s.skill_id for s in v))

    def skill_index(self) -> Dict[str, SkillProficiency]:
        """Skills keyed by skill id."""
        return {skill.skill_id: skill for skill in self.skills}


class SkillRequirement(BaseModel):
    """A skill the opportunity asks for, weighted 1-5."""

    skill_id: str
    weight: float = 1.0
    required: bool = False

    model_config = {"frozen": True}


class OpportunitySnapshot(BaseModel):
    """Read-only projection of a posted opportunity used as computation input."""

    opportunity_id: str
    skills: Tuple[SkillRequirement, ...] = ()
    gpa_threshold: Optional[float] = None
    job_types: FrozenSet[str] = Field(default_factory=frozenset)
    preferences: FrozenSet[PreferenceTag] = Field(default_factory=frozenset)
    is_technical: bool = False

    model_config = {"frozen": True}

    def skill_ids(self) -> FrozenSet[str]:
        """Ids of every skill the opportunity lists, required or optional.

        Experience relevance is measured against this whole set.
        """
        return frozenset(requirement.skill_id for requirement in self.skills)

    def preference_tags(self) -> FrozenSet[PreferenceTag]:
        """All tags a candidate's preferences are compared against.

        Job types are folded in as JOB_TYPE tags.
        """
        job_type_tags = {
            PreferenceTag(kind=PreferenceKind.JOB_TYPE, value=job_type) for job_type in self.job_types
        }
        return frozenset(self.preferences) | frozenset(job_type_tags)


class MatchScoreComponents(BaseModel):
    """Output of the score computer for one pair: four components plus overall."""

    skill: float
    academic: float
    experience: float
    preference: float
    overall: float
    breakdown: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}


class MatchScore(BaseModel):
    """Cached score for a (student, opportunity) pair.

    Created on first compute and replaced wholesale on every recompute. The
    recorded data-versions say which snapshot of each side the score reflects.
    """

    student_id: str
    opportunity_id: str
    skill_score: float
    academic_score: float
    experience_score: float
    preference_score: float
    overall_score: float
    student_version: int
    opportunity_version: int
    computed_at: datetime
    algorithm_version: str = ALGORITHM_VERSION
    breakdown: Dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @field_validator("computed_at")
    @classmethod
    def computed_at_utc(cls, v: datetime) -> datetime:
        """Store timestamps as aware UTC."""
        return ensure_utc(v)

    @property
    def pair(self) -> Tuple[str, str]:
        """The (student_id, opportunity_id) key."""
        return (self.student_id, self.opportunity_id)

    @classmethod
    def from_components(
        cls,
        student_id: str,
        opportunity_id: str,
        components: MatchScoreComponents,
        student_version: int,
        opportunity_version: int,
        computed_at: datetime,
    ) -> "MatchScore":
        """Bind computed components to a pair and the versions they were computed from."""
        return cls(
            student_id=student_id,
            opportunity_id=opportunity_id,
            skill_score=components.skill,
            academic_score=components.academic,
            experience_score=components.experience,
            preference_score=components.preference,
            overall_score=components.overall,
            student_version=student_version,
            opportunity_version=opportunity_version,
            computed_at=computed_at,
            breakdown=dict(components.breakdown),
        )

    def is_current(self, student_version: int, opportunity_version: int) -> bool:
        """True when both sides match the given versions and the algorithm is unchanged."""
        return (
            self.student_version == student_version
            and self.opportunity_version == opportunity_version
            and self.algorithm_version == ALGORITHM_VERSION
        )

    def covers(self, student_version: int, opportunity_version: int) -> bool:
        """True when this score reflects data at least as new as the given versions on both sides."""
        return (
            self.algorithm_version == ALGORITHM_VERSION
            and self.student_version >= student_version
            and self.opportunity_version >= opportunity_version
        )
