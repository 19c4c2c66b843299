"""Score computer: rates how well a candidate fits an opportunity.

The computer is a pure function of its two snapshots. It never raises on
incomplete or out-of-range input; such values are clamped or replaced by the
documented neutral defaults so that a sparse profile yields a lower (or
neutral) score rather than a failed recompute.
"""

import math
from typing import Any, Dict, Optional, Tuple

from matchengine.domain.models import (
    CandidateSnapshot,
    ExperienceKind,
    MatchScoreComponents,
    OpportunitySnapshot,
)

# Fixed product weights for the overall score; they sum to 1.0
SKILL_WEIGHT = 0.40
ACADEMIC_WEIGHT = 0.25
EXPERIENCE_WEIGHT = 0.25
PREFERENCE_WEIGHT = 0.10

# Missing gpa, missing preferences or an opportunity without skill requirements
NEUTRAL_SCORE = 0.5

# Skill factor blend
PROFICIENCY_SHARE = 0.7
YEARS_SHARE = 0.3
YEARS_FOR_FULL_CREDIT = 3.0
MAX_PROFICIENCY = 5
MIN_WEIGHT, MAX_WEIGHT = 1.0, 5.0

# Academic curve
MAX_GPA = 4.0
AT_THRESHOLD_SCORE = 0.8
BELOW_THRESHOLD_PENALTY = 0.2
TECHNICAL_MAJOR_BONUS = 0.1
TECHNICAL_MAJORS = (
    "computer science",
    "software engineering",
    "computer engineering",
    "information systems",
    "data science",
    "information technology",
)

# Experience
KIND_WEIGHTS = {
    ExperienceKind.EMPLOYMENT: 1.0,
    ExperienceKind.INTERNSHIP: 0.6,
    ExperienceKind.PROJECT: 0.5,
}
RELEVANCE_FLOOR = 0.25
AT_TARGET_SCORE = 0.8


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    """Clamp value into [low, high]; NaN collapses to low."""
    if value is None or math.isnan(value):
        return low
    return max(low, min(high, value))


def combine(skill: float, academic: float, experience: float, preference: float) -> float:
    """Weighted overall score from the four components."""
    return clamp(
        SKILL_WEIGHT * skill
        + ACADEMIC_WEIGHT * academic
        + EXPERIENCE_WEIGHT * experience
        + PREFERENCE_WEIGHT * preference
    )


class ScoreComputer:
    """Computes the four-dimension compatibility score for a pair.

    Dimensions:
    - skill: proficiency and years against weighted skill requirements
    - academic: gpa against the opportunity's threshold
    - experience: relevant months of work, internships and projects
    - preference: overlap of preference tags
    """

    def __init__(self, experience_target_months: float = 12.0):
        """Initialize ScoreComputer.

        Args:
            experience_target_months: Relevant months that earn the at-target
                score; time beyond it earns diminishing returns
        """
        self.experience_target_months = experience_target_months if experience_target_months > 0 else 12.0

    def compute(self, candidate: CandidateSnapshot, opportunity: OpportunitySnapshot) -> MatchScoreComponents:
        """Score a candidate against an opportunity.

        Args:
            candidate: Candidate snapshot
            opportunity: Opportunity snapshot

        Returns:
            MatchScoreComponents with every value in [0, 1]
        """
        skill, skill_details = self.skill_score(candidate, opportunity)
        academic, academic_details = self.academic_score(candidate, opportunity)
        experience, experience_details = self.experience_score(candidate, opportunity)
        preference, preference_details = self.preference_score(candidate, opportunity)

        return MatchScoreComponents(
            skill=skill,
            academic=academic,
            experience=experience,
            preference=preference,
            overall=combine(skill, academic, experience, preference),
            breakdown={
                "skill": skill_details,
                "academic": academic_details,
                "experience": experience_details,
                "preference": preference_details,
            },
        )

    def skill_score(
        self, candidate: CandidateSnapshot, opportunity: OpportunitySnapshot
    ) -> Tuple[float, Dict[str, Any]]:
        """Weighted average of per-requirement proficiency factors.

        A missing skill contributes 0 whether it is required or optional, so a
        missing required skill of weight w caps the score at 1 - w / sum(weights).
        """
        if not opportunity.skills:
            return NEUTRAL_SCORE, {"reason": "no skill requirements"}

        held = candidate.skill_index()
        total_weight = 0.0
        earned = 0.0
        matched = []
        missing_required = []
        missing_optional = []

        for requirement in opportunity.skills:
            weight = _requirement_weight(requirement.weight)
            total_weight += weight

            skill = held.get(requirement.skill_id)
            if skill is None:
                if requirement.required:
                    missing_required.append(requirement.skill_id)
                else:
                    missing_optional.append(requirement.skill_id)
                continue

            factor = proficiency_factor(skill.proficiency, skill.years_of_experience)
            earned += weight * factor
            matched.append({"skill_id": requirement.skill_id, "weight": weight, "factor": factor})

        score = clamp(earned / total_weight) if total_weight > 0 else 0.0
        return score, {
            "matched": matched,
            "missing_required": missing_required,
            "missing_optional": missing_optional,
            "total_weight": total_weight,
        }

    def academic_score(
        self, candidate: CandidateSnapshot, opportunity: OpportunitySnapshot
    ) -> Tuple[float, Dict[str, Any]]:
        """Gpa fit against the opportunity threshold.

        No gpa scores the neutral 0.5 so an incomplete profile is not
        punished; a technical major adds a bonus on technical roles.
        """
        gpa = candidate.academic.gpa
        if gpa is None or math.isnan(gpa):
            return NEUTRAL_SCORE, {"reason": "gpa not provided"}

        gpa = clamp(gpa, 0.0, MAX_GPA)
        threshold = _usable_threshold(opportunity.gpa_threshold)
        details: Dict[str, Any] = {"gpa": gpa, "threshold": threshold}

        if threshold is None:
            score = gpa / MAX_GPA
        elif gpa >= threshold:
            headroom = MAX_GPA - threshold
            progress = (gpa - threshold) / headroom if headroom > 0 else 1.0
            score = AT_THRESHOLD_SCORE + (1.0 - AT_THRESHOLD_SCORE) * progress
            details["meets_threshold"] = True
        else:
            score = max(0.0, gpa / threshold - BELOW_THRESHOLD_PENALTY)
            details["meets_threshold"] = False

        if opportunity.is_technical and is_technical_major(candidate.academic.major):
            score += TECHNICAL_MAJOR_BONUS
            details["technical_major_bonus"] = TECHNICAL_MAJOR_BONUS

        return clamp(score), details

    def experience_score(
        self, candidate: CandidateSnapshot, opportunity: OpportunitySnapshot
    ) -> Tuple[float, Dict[str, Any]]:
        """Relevant experience months against the target duration.

        Each entry counts duration x kind weight x relevance, where relevance
        grows with the share of the opportunity's skills the entry used.
        """
        wanted = opportunity.skill_ids()
        effective_months = 0.0

        for entry in candidate.experiences:
            months = entry.duration_months if entry.duration_months and entry.duration_months > 0 else 0.0
            if months == 0.0 or math.isinf(months):
                continue
            kind_weight = KIND_WEIGHTS.get(entry.kind, KIND_WEIGHTS[ExperienceKind.PROJECT])
            effective_months += months * kind_weight * _relevance(entry.skill_ids, wanted)

        target = self.experience_target_months
        if effective_months <= target:
            score = AT_TARGET_SCORE * effective_months / target
        else:
            # Past the target each extra target-length adds less than the last
            overflow = (effective_months - target) / target
            score = AT_TARGET_SCORE + (1.0 - AT_TARGET_SCORE) * (1.0 - math.exp(-overflow))

        return clamp(score), {
            "entries": len(candidate.experiences),
            "effective_months": round(effective_months, 4),
            "target_months": target,
        }

    def preference_score(
        self, candidate: CandidateSnapshot, opportunity: OpportunitySnapshot
    ) -> Tuple[float, Dict[str, Any]]:
        """Share of the opportunity's tags found among the candidate's preferences."""
        if not candidate.preferences:
            return NEUTRAL_SCORE, {"reason": "candidate has no preferences"}

        offered = opportunity.preference_tags()
        if not offered:
            return NEUTRAL_SCORE, {"reason": "opportunity has no preference tags"}

        matched = offered & candidate.preferences
        return clamp(len(matched) / len(offered)), {
            "matched": sorted(f"{tag.kind.value}:{tag.value}" for tag in matched),
            "offered": len(offered),
        }


def proficiency_factor(proficiency: Optional[float], years: Optional[float]) -> float:
    """Blend of normalized proficiency and capped years of experience.

    Example:
        >>> round(proficiency_factor(4, 2), 4)
        0.76
    """
    level = clamp((proficiency or 0) / MAX_PROFICIENCY)
    seasoning = clamp((years or 0) / YEARS_FOR_FULL_CREDIT)
    return PROFICIENCY_SHARE * level + YEARS_SHARE * seasoning


def is_technical_major(major: Optional[str]) -> bool:
    """True when the major names one of the recognised technical fields."""
    if not major:
        return False
    name = major.lower()
    return any(field in name for field in TECHNICAL_MAJORS)


def _requirement_weight(weight: Optional[float]) -> float:
    if weight is None or math.isnan(weight) or weight <= 0:
        return MIN_WEIGHT
    return clamp(weight, MIN_WEIGHT, MAX_WEIGHT)


def _usable_threshold(threshold: Optional[float]) -> Optional[float]:
    if threshold is None or math.isnan(threshold) or threshold <= 0:
        return None
    return min(threshold, MAX_GPA)


def _relevance(entry_skills, wanted) -> float:
    if not wanted:
        return 1.0
    overlap = len(set(entry_skills) & wanted) / len(wanted)
    return RELEVANCE_FLOOR + (1.0 - RELEVANCE_FLOOR) * overlap
