"""In-memory view of the taxonomy used for validation and simulation.

The store loads rows into a `TaxonomyState`; the integrity checker is a pure
function over it, and batches are simulated on a copy before anything is
written.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Iterable

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from . import models
from .pipelines.normalization import normalize_label, normalize_synonym


@dataclass
class CategoryRecord:
    id: str
    label: str
    description: str | None = None
    integrity_hold: bool = False
    hold_reason: str | None = None


@dataclass
class KeywordRecord:
    id: str
    category_id: str
    label: str
    synonyms: list[str] = field(default_factory=list)
    description: str | None = None
    status: str = "review"


@dataclass
class SubkeywordRecord:
    id: str
    keyword_id: str
    label: str
    synonyms: list[str] = field(default_factory=list)
    description: str | None = None
    status: str = "review"


@dataclass(frozen=True)
class TermRecord:
    document_id: str
    keyword_id: str
    subkeyword_id: str | None = None


@dataclass
class EvidenceRecord:
    document_id: str
    keyword_id: str
    subkeyword_id: str | None
    snippet: str
    id: int | None = None


@dataclass
class TaxonomyState:
    """Flat snapshot of categories, terms and the document associations loaded so far."""
    categories: dict[str, CategoryRecord] = field(default_factory=dict)
    keywords: dict[str, KeywordRecord] = field(default_factory=dict)
    subkeywords: dict[str, SubkeywordRecord] = field(default_factory=dict)
    terms: list[TermRecord] = field(default_factory=list)
    evidence: list[EvidenceRecord] = field(default_factory=list)

    def copy(self) -> TaxonomyState:
        return copy.deepcopy(self)

    def keywords_in(self, category_id: str) -> list[KeywordRecord]:
        return sorted(
            (kw for kw in self.keywords.values() if kw.category_id == category_id),
            key=lambda kw: kw.id,
        )

    def subkeywords_of(self, keyword_id: str) -> list[SubkeywordRecord]:
        return sorted(
            (sk for sk in self.subkeywords.values() if sk.keyword_id == keyword_id),
            key=lambda sk: sk.id,
        )

    def category_of_keyword(self, keyword_id: str | None) -> str | None:
        kw = self.keywords.get(keyword_id) if keyword_id else None
        return kw.category_id if kw else None

    def category_of_subkeyword(self, subkeyword_id: str | None) -> str | None:
        sk = self.subkeywords.get(subkeyword_id) if subkeyword_id else None
        return self.category_of_keyword(sk.keyword_id) if sk else None

    def keyword_synonym_owner(self, synonym: str, *, exclude: str | None = None) -> str | None:
        """Id of the keyword (anywhere in the taxonomy) owning `synonym`, other than `exclude`."""
        key = normalize_synonym(synonym)
        for kw in sorted(self.keywords.values(), key=lambda k: k.id):
            if kw.id == exclude:
                continue
            if any(normalize_synonym(s) == key for s in kw.synonyms):
                return kw.id
        return None

    def sibling_synonym_owner(
        self,
        keyword_id: str,
        synonym: str,
        *,
        exclude: str | None = None,
    ) -> str | None:
        """Id of the subkeyword under `keyword_id` owning `synonym`, other than `exclude`."""
        key = normalize_synonym(synonym)
        for sk in self.subkeywords_of(keyword_id):
            if sk.id == exclude:
                continue
            if any(normalize_synonym(s) == key for s in sk.synonyms):
                return sk.id
        return None

    def keyword_with_label(self, category_id: str, label: str) -> str | None:
        key = normalize_label(label)
        for kw in self.keywords_in(category_id):
            if normalize_label(kw.label) == key:
                return kw.id
        return None

    def subkeyword_with_label(self, keyword_id: str, label: str) -> str | None:
        key = normalize_label(label)
        for sk in self.subkeywords_of(keyword_id):
            if normalize_label(sk.label) == key:
                return sk.id
        return None

    def has_term(self, document_id: str, keyword_id: str, subkeyword_id: str | None) -> bool:
        return TermRecord(document_id, keyword_id, subkeyword_id) in self.terms

    def documents_for_keyword(self, keyword_id: str) -> set[str]:
        return {t.document_id for t in self.terms if t.keyword_id == keyword_id}


def _to_category(row: models.Category) -> CategoryRecord:
    return CategoryRecord(
        id=row.id,
        label=row.label,
        description=row.description,
        integrity_hold=row.integrity_hold,
        hold_reason=row.hold_reason,
    )


def _to_keyword(row: models.Keyword) -> KeywordRecord:
    return KeywordRecord(
        id=row.id,
        category_id=row.category_id,
        label=row.label,
        synonyms=[s for s in (row.synonyms or []) if isinstance(s, str)],
        description=row.description,
        status=row.status,
    )


def _to_subkeyword(row: models.Subkeyword) -> SubkeywordRecord:
    return SubkeywordRecord(
        id=row.id,
        keyword_id=row.keyword_id,
        label=row.label,
        synonyms=[s for s in (row.synonyms or []) if isinstance(s, str)],
        description=row.description,
        status=row.status,
    )


async def load_taxonomy_state(session: AsyncSession) -> TaxonomyState:
    """Load categories, keywords and subkeywords (no document rows)."""
    # populate_existing: bulk UPDATEs earlier in the transaction bypass the identity map
    refresh = {"populate_existing": True}
    categories = (await session.execute(select(models.Category).execution_options(**refresh))).scalars().all()
    keywords = (await session.execute(select(models.Keyword).execution_options(**refresh))).scalars().all()
    subkeywords = (await session.execute(select(models.Subkeyword).execution_options(**refresh))).scalars().all()

    return TaxonomyState(
        categories={c.id: _to_category(c) for c in categories},
        keywords={k.id: _to_keyword(k) for k in keywords},
        subkeywords={s.id: _to_subkeyword(s) for s in subkeywords},
    )


async def load_document_rows(
    session: AsyncSession,
    state: TaxonomyState,
    document_ids: Iterable[str] | None = None,
) -> None:
    """Load document terms and evidence into `state`, all of them or for some documents."""
    term_query = select(models.DocumentTerm).order_by(models.DocumentTerm.id).execution_options(populate_existing=True)
    evidence_query = select(models.DocumentTermEvidence).order_by(models.DocumentTermEvidence.id).execution_options(
        populate_existing=True
    )
    if document_ids is not None:
        ids = sorted(set(document_ids))
        if not ids:
            return
        term_query = term_query.where(models.DocumentTerm.document_id.in_(ids))
        evidence_query = evidence_query.where(models.DocumentTermEvidence.document_id.in_(ids))

    for row in (await session.execute(term_query)).scalars().all():
        state.terms.append(TermRecord(row.document_id, row.keyword_id, row.subkeyword_id))

    for row in (await session.execute(evidence_query)).scalars().all():
        state.evidence.append(
            EvidenceRecord(
                document_id=row.document_id,
                keyword_id=row.keyword_id,
                subkeyword_id=row.subkeyword_id,
                snippet=row.snippet,
                id=row.id,
            )
        )


async def load_full_state(session: AsyncSession) -> TaxonomyState:
    """Whole taxonomy plus every document association (integrity audits, migrations)."""
    state = await load_taxonomy_state(session)
    await load_document_rows(session, state)
    return state
