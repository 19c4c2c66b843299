"""Read-only interface the engine needs from the profile and opportunity stores.

The engine never writes through this interface. Implementations wrap whatever
actually holds student profiles and opportunity postings.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from matchengine.domain.models import CandidateSnapshot, EntityType, OpportunitySnapshot


class DataSource(ABC):
    """Base class for all data sources.

    Error contract for every method:
    - SubjectGone: the entity does not exist (deleted or never created)
    - DataUnavailable: transient trouble; the caller may retry later

    Any other exception is treated by the worker as DataUnavailable.
    """

    @abstractmethod
    def fetch_candidate_snapshot(self, student_id: str) -> CandidateSnapshot:
        """Return the current read-only projection of a student profile."""

    @abstractmethod
    def fetch_opportunity_snapshot(self, opportunity_id: str) -> OpportunitySnapshot:
        """Return the current read-only projection of an opportunity."""

    @abstractmethod
    def list_active_opportunity_ids(self) -> List[str]:
        """Ids of opportunities currently open for matching."""

    @abstractmethod
    def list_eligible_student_ids(self, opportunity_id: Optional[str] = None) -> List[str]:
        """Ids of students eligible for matching, optionally against one opportunity.

        With no opportunity_id, every student eligible for any matching.
        """

    @abstractmethod
    def current_data_version(self, entity_type: EntityType, entity_id: str) -> int:
        """Monotonic version of an entity; bumps on every mutation that affects scoring."""
