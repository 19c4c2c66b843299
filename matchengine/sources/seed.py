"""Load students and opportunities from a YAML seed file.

Expected layout:

    students:
      - student_id: s-1
        skills:
          - {skill_id: python, proficiency: 4, years_of_experience: 2}
        academic: {gpa: 3.6, major: Computer Science}
        experiences:
          - {kind: INTERNSHIP, duration_months: 6, skill_ids: [python]}
          - {kind: PROJECT, start_date: 2024-01-01, end_date: 2024-07-01}
        preferences:
          - {kind: LOCATION, value: Berlin}
    opportunities:
      - opportunity_id: o-1
        skills:
          - {skill_id: python, weight: 5, required: true}
        gpa_threshold: 3.0
        job_types: [internship]
        is_technical: true
"""

from datetime import date
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml
from pydantic import ValidationError

from matchengine.config.exceptions import ConfigurationError
from matchengine.domain.models import (
    CandidateSnapshot,
    ExperienceEntry,
    ExperienceKind,
    OpportunitySnapshot,
)
from matchengine.logging import get_logger

from .memory import InMemoryDataSource

logger = get_logger(__name__, component="sources")


def load_seed_file(path: Path) -> InMemoryDataSource:
    """
    Build an InMemoryDataSource from a YAML seed file.

    Raises:
        ConfigurationError: If the file cannot be read or an entry is invalid
    """
    path = Path(path)
    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(
            f"Failed to parse seed file {path}: {e}",
            suggestions=["Check YAML syntax in the seed file"],
        ) from e
    except OSError as e:
        raise ConfigurationError(
            f"Failed to read seed file: {e}",
            suggestions=[f"Ensure {path} exists and is readable"],
        ) from e

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Seed file root must be a mapping, got {type(raw).__name__}")

    candidates, opportunities = parse_seed_dict(raw)
    source = InMemoryDataSource(candidates, opportunities)

    logger.info(
        f"Loaded {len(candidates)} students and {len(opportunities)} opportunities from {path}",
        extra={
            "event": "source.seed_loaded",
            "students": len(candidates),
            "opportunities": len(opportunities),
            "seed_file": str(path),
        },
    )
    return source


def parse_seed_dict(raw: Dict[str, Any]) -> Tuple[List[CandidateSnapshot], List[OpportunitySnapshot]]:
    """Validate the `students` and `opportunities` sections of a seed mapping."""
    errors: List[str] = []
    candidates: List[CandidateSnapshot] = []
    opportunities: List[OpportunitySnapshot] = []

    for index, entry in enumerate(raw.get("students") or []):
        try:
            candidates.append(CandidateSnapshot.model_validate(_expand_experiences(entry)))
        except (ValidationError, TypeError, ValueError) as e:
            errors.append(f"students[{index}]: {_describe(e)}")

    for index, entry in enumerate(raw.get("opportunities") or []):
        try:
            opportunities.append(OpportunitySnapshot.model_validate(entry))
        except ValidationError as e:
            errors.append(f"opportunities[{index}]: {_describe(e)}")

    if errors:
        raise ConfigurationError(
            "Seed file validation failed",
            errors=errors,
            suggestions=["Compare entries against the layout in matchengine/sources/seed.py"],
        )

    return candidates, opportunities


def _expand_experiences(entry: Any) -> Any:
    # Entries given as start_date/end_date are converted to a month count
    if not isinstance(entry, dict) or not entry.get("experiences"):
        return entry

    expanded = []
    for item in entry["experiences"]:
        if isinstance(item, dict) and "start_date" in item and "duration_months" not in item:
            start = _as_date(item["start_date"])
            end = _as_date(item["end_date"]) if item.get("end_date") else None
            expanded.append(
                ExperienceEntry.from_dates(
                    ExperienceKind(item.get("kind", ExperienceKind.EMPLOYMENT)),
                    start,
                    end,
                    skill_ids=item.get("skill_ids") or (),
                    title=item.get("title"),
                )
            )
        else:
            expanded.append(item)
    return {**entry, "experiences": expanded}


def _as_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def _describe(error: Exception) -> str:
    if isinstance(error, ValidationError):
        return "; ".join(
            f"{'.'.join(str(loc) for loc in item['loc']) or '(root)'}: {item['msg']}"
            for item in error.errors()
        )
    return str(error)
