from typing import Any, List, Mapping, Optional, Protocol, Sequence

from app.models.schemas import (
    DoseSpecification,
    DrugIdentity,
    PackageCandidate,
    QuantityRequirement,
)


class DoseParser(Protocol):
    def parse(self, free_text: str) -> DoseSpecification:
        ...


class IdentityNormalizer(Protocol):
    def normalize(self, name: str) -> DrugIdentity:
        ...

    def validate_known_package(self, identifier: str) -> Optional[PackageCandidate]:
        ...


class CandidateCatalog(Protocol):
    def fetch_candidates(self, canonical_id: str) -> List[PackageCandidate]:
        ...


class AdvisoryOverrideService(Protocol):
    def advise(
        self,
        requirement: QuantityRequirement,
        candidates: Sequence[PackageCandidate],
    ) -> Mapping[str, Any]:
        ...
