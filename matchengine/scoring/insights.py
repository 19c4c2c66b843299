"""Readable insights derived from a stored match score.

Insights are computed on read from the four components and the skill
breakdown; nothing here is persisted.
"""

from dataclasses import dataclass, field
from typing import Dict, List

from matchengine.domain.models import MatchScore

# Component levels above which a dimension counts as a strength
STRENGTH_THRESHOLDS = {
    "skill": 0.8,
    "academic": 0.8,
    "experience": 0.7,
    "preference": 0.8,
}

# Component levels below which a dimension needs work
IMPROVEMENT_THRESHOLDS = {
    "skill": 0.6,
    "academic": 0.5,
    "experience": 0.4,
}

STRENGTH_MESSAGES = {
    "skill": "Strong technical skill alignment",
    "academic": "Excellent academic background",
    "experience": "Relevant work experience",
    "preference": "Strong preference alignment",
}

IMPROVEMENT_MESSAGES = {
    "skill": "Consider developing additional technical skills",
    "academic": "Academic performance could be strengthened",
    "experience": "More relevant work experience would be beneficial",
}


@dataclass(frozen=True)
class MatchInsights:
    """
    Explanation of one pair's score for both sides of the match.

    Attributes:
        strengths: Dimensions where the student stands out
        improvements: Dimensions that pull the score down
        skill_gaps: Required skills the student does not have
        fit: Label per dimension ("Excellent", "Good", ...)
        recommendations: Suggested next steps for the student
    """

    student_id: str
    opportunity_id: str
    overall_score: float
    strengths: List[str] = field(default_factory=list)
    improvements: List[str] = field(default_factory=list)
    skill_gaps: List[str] = field(default_factory=list)
    fit: Dict[str, str] = field(default_factory=dict)
    recommendations: List[str] = field(default_factory=list)


def build_insights(score: MatchScore) -> MatchInsights:
    """Derive insights from a stored score."""
    components = _components(score)
    skill_gaps = missing_required_skills(score)

    strengths = [
        STRENGTH_MESSAGES[name]
        for name, threshold in STRENGTH_THRESHOLDS.items()
        if components[name] > threshold
    ]
    improvements = [
        IMPROVEMENT_MESSAGES[name]
        for name, threshold in IMPROVEMENT_THRESHOLDS.items()
        if components[name] < threshold
    ]

    return MatchInsights(
        student_id=score.student_id,
        opportunity_id=score.opportunity_id,
        overall_score=score.overall_score,
        strengths=strengths,
        improvements=improvements,
        skill_gaps=skill_gaps,
        fit=fit_labels(score),
        recommendations=recommendations(score, skill_gaps),
    )


def fit_labels(score: MatchScore) -> Dict[str, str]:
    return {
        "overall": _label(score.overall_score, (0.7, "Excellent"), (0.5, "Good"), default="Fair"),
        "skill": _label(score.skill_score, (0.8, "Excellent"), (0.6, "Good"), default="Needs Improvement"),
        "academic": _label(score.academic_score, (0.8, "Excellent"), (0.6, "Good"), default="Fair"),
        "experience": _label(score.experience_score, (0.7, "Strong"), (0.4, "Moderate"), default="Limited"),
    }


def recommendations(score: MatchScore, skill_gaps: List[str]) -> List[str]:
    advice = []

    if score.overall_score > 0.8:
        advice.append("Excellent match, strongly consider applying")
    elif score.overall_score > 0.6:
        advice.append("Good match with some areas for improvement")
    else:
        advice.append("Consider developing skills before applying")

    if skill_gaps:
        advice.append("Focus on acquiring the missing required skills: " + ", ".join(skill_gaps))
    elif score.skill_score < IMPROVEMENT_THRESHOLDS["skill"]:
        advice.append("Focus on building technical skills relevant to this role")

    if score.experience_score < 0.5:
        advice.append("Gain more relevant experience through projects or internships")

    return advice


def missing_required_skills(score: MatchScore) -> List[str]:
    """Required skill ids recorded as missing in the score's breakdown."""
    skill_details = score.breakdown.get("skill") or {}
    return sorted(str(skill_id) for skill_id in skill_details.get("missing_required") or [])


def _components(score: MatchScore) -> Dict[str, float]:
    return {
        "skill": score.skill_score,
        "academic": score.academic_score,
        "experience": score.experience_score,
        "preference": score.preference_score,
    }


def _label(value: float, *bands, default: str) -> str:
    for threshold, label in bands:
        if value > threshold:
            return label
    return default
