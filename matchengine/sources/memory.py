"""Thread-safe in-memory data source.

Used by the CLI (seeded from YAML) and by tests. Every mutation bumps the
entity's data-version, mirroring what a real profile store does on write.
"""

import threading
from typing import Dict, Iterable, List, Optional, Tuple

from matchengine.domain.models import CandidateSnapshot, EntityType, OpportunitySnapshot
from matchengine.exceptions import SubjectGone
from matchengine.logging import get_logger

from .base import DataSource

logger = get_logger(__name__, component="sources")


class InMemoryDataSource(DataSource):
    """
    Dict-backed DataSource.

    Versions survive deletion, so a deleted-then-recreated entity continues
    from its last version rather than restarting at 1.
    """

    def __init__(
        self,
        candidates: Optional[Iterable[CandidateSnapshot]] = None,
        opportunities: Optional[Iterable[OpportunitySnapshot]] = None,
    ):
        self._lock = threading.RLock()
        self._candidates: Dict[str, CandidateSnapshot] = {}
        self._opportunities: Dict[str, OpportunitySnapshot] = {}
        self._inactive: Dict[EntityType, set] = {EntityType.STUDENT: set(), EntityType.OPPORTUNITY: set()}
        self._versions: Dict[Tuple[EntityType, str], int] = {}

        for candidate in candidates or ():
            self.upsert_candidate(candidate)
        for opportunity in opportunities or ():
            self.upsert_opportunity(opportunity)

    # -- DataSource ----------------------------------------------------

    def fetch_candidate_snapshot(self, student_id: str) -> CandidateSnapshot:
        with self._lock:
            snapshot = self._candidates.get(student_id)
        if snapshot is None:
            raise SubjectGone(EntityType.STUDENT, student_id)
        return snapshot

    def fetch_opportunity_snapshot(self, opportunity_id: str) -> OpportunitySnapshot:
        with self._lock:
            snapshot = self._opportunities.get(opportunity_id)
        if snapshot is None:
            raise SubjectGone(EntityType.OPPORTUNITY, opportunity_id)
        return snapshot

    def list_active_opportunity_ids(self) -> List[str]:
        with self._lock:
            inactive = self._inactive[EntityType.OPPORTUNITY]
            return sorted(oid for oid in self._opportunities if oid not in inactive)

    def list_eligible_student_ids(self, opportunity_id: Optional[str] = None) -> List[str]:
        # Eligibility does not depend on the opportunity here
        with self._lock:
            inactive = self._inactive[EntityType.STUDENT]
            return sorted(sid for sid in self._candidates if sid not in inactive)

    def current_data_version(self, entity_type: EntityType, entity_id: str) -> int:
        entity_type = EntityType(entity_type)
        with self._lock:
            if not self._exists(entity_type, entity_id):
                raise SubjectGone(entity_type, entity_id)
            return self._versions[(entity_type, entity_id)]

    # -- mutators ------------------------------------------------------

    def upsert_candidate(self, snapshot: CandidateSnapshot) -> int:
        """Insert or replace a student profile; returns the new data-version."""
        with self._lock:
            self._candidates[snapshot.student_id] = snapshot
            return self._bump(EntityType.STUDENT, snapshot.student_id)

    def upsert_opportunity(self, snapshot: OpportunitySnapshot) -> int:
        """Insert or replace an opportunity; returns the new data-version."""
        with self._lock:
            self._opportunities[snapshot.opportunity_id] = snapshot
            return self._bump(EntityType.OPPORTUNITY, snapshot.opportunity_id)

    def delete_candidate(self, student_id: str) -> bool:
        """Remove a student; returns False if it did not exist."""
        with self._lock:
            removed = self._candidates.pop(student_id, None) is not None
            self._inactive[EntityType.STUDENT].discard(student_id)
            if removed:
                self._bump(EntityType.STUDENT, student_id)
        return removed

    def delete_opportunity(self, opportunity_id: str) -> bool:
        """Remove an opportunity; returns False if it did not exist."""
        with self._lock:
            removed = self._opportunities.pop(opportunity_id, None) is not None
            self._inactive[EntityType.OPPORTUNITY].discard(opportunity_id)
            if removed:
                self._bump(EntityType.OPPORTUNITY, opportunity_id)
        return removed

    def set_active(self, entity_type: EntityType, entity_id: str, active: bool) -> None:
        """
        Include or exclude an entity from the active/eligible listings.

        Inactive entities can still be fetched; they are only left out of fan-out.

        Raises:
            SubjectGone: If the entity does not exist
        """
        entity_type = EntityType(entity_type)
        with self._lock:
            if not self._exists(entity_type, entity_id):
                raise SubjectGone(entity_type, entity_id)
            if active:
                self._inactive[entity_type].discard(entity_id)
            else:
                self._inactive[entity_type].add(entity_id)

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return {"students": len(self._candidates), "opportunities": len(self._opportunities)}

    def _exists(self, entity_type: EntityType, entity_id: str) -> bool:
        if entity_type is EntityType.STUDENT:
            return entity_id in self._candidates
        return entity_id in self._opportunities

    def _bump(self, entity_type: EntityType, entity_id: str) -> int:
        key = (entity_type, entity_id)
        version = self._versions.get(key, 0) + 1
        self._versions[key] = version
        logger.debug(
            f"{entity_type.value} {entity_id} now at version {version}",
            extra={"event": "source.version_bumped", "entity_type": entity_type.value,
                   "entity_id": entity_id, "data_version": version},
        )
        return version
