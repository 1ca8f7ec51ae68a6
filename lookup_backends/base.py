"""
Abstract base for drug lookup backends.

Every backend answers one LookupQuery with the first matching raw record (or
None) — drug_lookup.py maps it into the normalised DrugRecord and decides
what counts as "not found".
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class LookupQuery:
    endpoint: str       # "ndc" | "label"
    search: str         # already URL-encoded search expression
    reason: str         # ndc | barcode | name: which precedence rule produced it


@dataclass
class Source:
    name: str
    url: str


@dataclass
class DrugRecord:
    """Normalised drug record. Label sections keep openFDA's list-of-text form."""
    brand_name: Optional[str] = None
    generic_name: Optional[str] = None
    ndc: Optional[str] = None
    route: Optional[str] = None
    dosage_form: Optional[str] = None
    active_ingredients: Any = None
    indications: Any = None
    dosage: Any = None
    warnings: Any = None
    adverse_reactions: Any = None
    information_for_patients: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Only the fields that are present."""
        return {k: v for k, v in asdict(self).items() if v is not None}

    @property
    def display_name(self) -> str:
        return self.brand_name or self.generic_name or self.ndc or "Unknown drug"


@dataclass
class LookupResult:
    status: str                                   # "OK" | "Not_Found"
    drug: Optional[DrugRecord] = None
    sources: list[Source] = field(default_factory=list)

    @classmethod
    def found(cls, drug: DrugRecord, sources: list[Source]) -> "LookupResult":
        return cls(status="OK", drug=drug, sources=sources)

    @classmethod
    def not_found(cls) -> "LookupResult":
        return cls(status="Not_Found")

    @property
    def is_found(self) -> bool:
        return self.status == "OK" and self.drug is not None

    def to_response(self) -> dict[str, Any]:
        """JSON body of POST /api/identify."""
        if not self.is_found:
            return {"status": "Not_Found"}
        return {
            "status": "OK",
            "drug": self.drug.to_dict(),
            "sources": [asdict(s) for s in self.sources],
        }


class LookupBackend(ABC):
    """All backends must implement this interface."""

    @abstractmethod
    def url_for(self, query: LookupQuery) -> str:
        """Full request URL for query (also reported as the provenance source)."""
        ...

    @abstractmethod
    async def fetch_first(self, query: LookupQuery) -> Optional[dict]:
        """
        Issue exactly one request and return the first raw result, or None
        when the backend has no match. Raises LookupTransportError on
        network failure or an unexpected HTTP status.
        """
        ...

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name for logs / source lists."""
        ...
