"""Wire models exchanged with the classification collaborator and API clients.

Field names are snake_case in Python and camelCase on the wire.
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .config import TermStatus, settings


class WireModel(BaseModel):
    """Base for outbound entity shapes."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CategoryOut(WireModel):
    id: str
    label: str
    description: str | None = None


class SubkeywordOut(WireModel):
    id: str
    keyword_id: str
    label: str
    synonyms: list[str] = Field(default_factory=list)
    description: str | None = None
    status: TermStatus


class KeywordOut(WireModel):
    id: str
    category_id: str
    label: str
    synonyms: list[str] = Field(default_factory=list)
    description: str | None = None
    status: TermStatus
    subkeywords: list[SubkeywordOut] = Field(default_factory=list)


class CategorySnapshot(CategoryOut):
    """One category's keyword/subkeyword/synonym subtree, as given to the classifier."""
    keywords: list[KeywordOut] = Field(default_factory=list)


class DocumentTermOut(WireModel):
    document_id: str
    keyword_id: str
    subkeyword_id: str | None = None


class EvidenceOut(WireModel):
    document_id: str
    keyword_id: str
    subkeyword_id: str | None = None
    snippet: str


class DocumentTermsOut(WireModel):
    document_id: str
    terms: list[DocumentTermOut] = Field(default_factory=list)
    evidence: list[EvidenceOut] = Field(default_factory=list)


class FacetCount(WireModel):
    """Distinct documents tagged with a keyword (subkeyword_id None) or a subkeyword."""
    keyword_id: str
    subkeyword_id: str | None = None
    label: str
    document_count: int


# Proposal (inbound, untrusted)

class ProposalModel(BaseModel):
    """Base for inbound proposal shapes: unknown fields are refused."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="forbid",
        str_strip_whitespace=True,
    )


class NewTerm(ProposalModel):
    label: str = Field(min_length=1, max_length=255)
    synonyms: list[str] = Field(default_factory=list, max_length=200)


class _MatchBase(ProposalModel):
    observed_synonyms: list[str] = Field(default_factory=list, max_length=200)
    added_synonyms: list[str] = Field(default_factory=list, max_length=200)
    evidence: list[str] = Field(default_factory=list, max_length=50)

    @field_validator("evidence")
    @classmethod
    def trim_evidence(cls, v: list[str]) -> list[str]:
        limit = settings.reconcile.max_snippet_length
        return [s[:limit] for s in v if s.strip()]


class SubkeywordMatch(_MatchBase):
    subkeyword_id: str | None = Field(default=None, max_length=255)
    new_subkeyword: NewTerm | None = None

    @field_validator("subkeyword_id", mode="before")
    @classmethod
    def blank_id_is_none(cls, v):
        return v if not isinstance(v, str) or v.strip() else None

    @model_validator(mode="after")
    def exactly_one_target(self) -> SubkeywordMatch:
        if (self.subkeyword_id is None) == (self.new_subkeyword is None):
            raise ValueError("exactly one of subkeywordId or newSubkeyword is required")
        return self


class KeywordMatch(_MatchBase):
    keyword_id: str | None = Field(default=None, max_length=255)
    new_keyword: NewTerm | None = None
    subkeyword_matches: list[SubkeywordMatch] = Field(
        default_factory=list,
        max_length=settings.reconcile.max_subkeyword_matches,
    )

    @field_validator("keyword_id", mode="before")
    @classmethod
    def blank_id_is_none(cls, v):
        return v if not isinstance(v, str) or v.strip() else None

    @model_validator(mode="after")
    def exactly_one_target(self) -> KeywordMatch:
        if (self.keyword_id is None) == (self.new_keyword is None):
            raise ValueError("exactly one of keywordId or newKeyword is required")
        return self


class Proposal(ProposalModel):
    """Classifier output for one category and one document."""
    category_id: str = Field(min_length=1, max_length=128)
    document_id: str = Field(min_length=1, max_length=128)
    keyword_matches: list[KeywordMatch] = Field(
        default_factory=list,
        max_length=settings.reconcile.max_keyword_matches,
    )


# Reconciliation result

class AcceptedItem(WireModel):
    action: str
    keyword_id: str | None = None
    subkeyword_id: str | None = None
    value: str | None = None


class RejectedItem(WireModel):
    item: dict[str, Any]
    reason: str


class ReconciliationResult(WireModel):
    category_id: str
    document_id: str
    accepted: list[AcceptedItem] = Field(default_factory=list)
    rejected: list[RejectedItem] = Field(default_factory=list)
    associations_written: list[DocumentTermOut] = Field(default_factory=list)


# Integrity report

class ViolationOut(WireModel):
    kind: str
    value: str
    owners: list[str]


class NearDuplicateOut(WireModel):
    left: str
    left_owner: str
    right: str
    right_owner: str
    score: float


class IntegrityReport(WireModel):
    category_id: str | None = None
    valid: bool
    violations: list[ViolationOut] = Field(default_factory=list)
    near_duplicates: list[NearDuplicateOut] = Field(default_factory=list)
