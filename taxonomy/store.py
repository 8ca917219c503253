"""Durable taxonomy store with write-time invariant enforcement.

All writes go through a `CategoryTransaction`: one category lock, one
database transaction, a live state loaded inside the lock, and additive
operations simulated on a copy of that state before anything is written.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Iterable, Union

from sqlalchemy import delete, distinct, func, select, text, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from . import models, schemas
from .config import TermStatus
from .integrity import check_integrity
from .locks import CategoryBusyError, CategoryLockManager
from .pipelines.normalization import clean_synonyms, normalize_synonym
from .state import (
    CategoryRecord,
    EvidenceRecord,
    KeywordRecord,
    SubkeywordRecord,
    TaxonomyState,
    TermRecord,
    load_document_rows,
    load_full_state,
    load_taxonomy_state,
)

logger = logging.getLogger(__name__)

# PostgreSQL SQLSTATE for lock_not_available
_PG_LOCK_NOT_AVAILABLE = "55P03"


class CategoryNotFoundError(Exception):
    """Raised when an operation names a category that was never bootstrapped."""

    def __init__(self, category_id: str):
        self.category_id = category_id
        super().__init__(f"Unknown category: {category_id}")


class CategoryOnHoldError(Exception):
    """Raised when writing to a category held after a failed integrity post-check."""

    def __init__(self, category_id: str, reason: str | None):
        self.category_id = category_id
        self.reason = reason
        super().__init__(f"Category {category_id} is on integrity hold: {reason or 'no reason recorded'}")


class BatchRejectedError(Exception):
    """Raised in strict mode when any operation of a batch is rejected."""

    def __init__(self, category_id: str, rejected: list[tuple[Operation, str]]):
        self.category_id = category_id
        self.rejected = rejected
        reasons = ", ".join(reason for _, reason in rejected)
        super().__init__(f"Batch for category {category_id} rejected: {reasons}")


class EntityInUseError(Exception):
    """Raised when retiring an entity that is still referenced."""
    pass


# Additive operations

@dataclass(frozen=True)
class CreateKeyword:
    id: str
    label: str
    synonyms: tuple[str, ...] = ()
    description: str | None = None
    status: str = TermStatus.REVIEW.value

    def describe(self) -> dict:
        return {"action": "create_keyword", "keywordId": self.id, "label": self.label,
                "synonyms": list(self.synonyms)}


@dataclass(frozen=True)
class CreateSubkeyword:
    id: str
    keyword_id: str
    label: str
    synonyms: tuple[str, ...] = ()
    description: str | None = None
    status: str = TermStatus.REVIEW.value

    def describe(self) -> dict:
        return {"action": "create_subkeyword", "keywordId": self.keyword_id, "subkeywordId": self.id,
                "label": self.label, "synonyms": list(self.synonyms)}


@dataclass(frozen=True)
class AppendKeywordSynonym:
    keyword_id: str
    synonym: str

    def describe(self) -> dict:
        return {"action": "append_keyword_synonym", "keywordId": self.keyword_id, "synonym": self.synonym}


@dataclass(frozen=True)
class AppendSubkeywordSynonym:
    subkeyword_id: str
    synonym: str

    def describe(self) -> dict:
        return {"action": "append_subkeyword_synonym", "subkeywordId": self.subkeyword_id,
                "synonym": self.synonym}


@dataclass(frozen=True)
class CreateDocumentTerm:
    document_id: str
    keyword_id: str
    subkeyword_id: str | None = None

    def describe(self) -> dict:
        return {"action": "create_document_term", "documentId": self.document_id,
                "keywordId": self.keyword_id, "subkeywordId": self.subkeyword_id}


@dataclass(frozen=True)
class CreateEvidence:
    document_id: str
    keyword_id: str
    subkeyword_id: str | None
    snippet: str

    def describe(self) -> dict:
        return {"action": "create_evidence", "documentId": self.document_id, "keywordId": self.keyword_id,
                "subkeywordId": self.subkeyword_id, "snippet": self.snippet}


Operation = Union[
    CreateKeyword,
    CreateSubkeyword,
    AppendKeywordSynonym,
    AppendSubkeywordSynonym,
    CreateDocumentTerm,
    CreateEvidence,
]


@dataclass
class BatchResult:
    """Outcome of `apply`: written, idempotent no-ops, and refused operations."""
    category_id: str
    accepted: list[Operation] = field(default_factory=list)
    skipped: list[Operation] = field(default_factory=list)
    rejected: list[tuple[Operation, str]] = field(default_factory=list)


@dataclass
class RepointResult:
    terms_repointed: int = 0
    terms_collapsed: int = 0
    evidence_repointed: int = 0


ACCEPT = "accept"
SKIP = "skip"
REJECT = "reject"


def _check_keyword_ref(state: TaxonomyState, category_id: str, keyword_id: str) -> str | None:
    kw = state.keywords.get(keyword_id)
    if kw is None:
        return f"unknown_keyword:{keyword_id}"
    if kw.category_id != category_id:
        return f"category_mismatch:{kw.category_id}"
    return None


def _check_pair_ref(
    state: TaxonomyState,
    category_id: str,
    keyword_id: str,
    subkeyword_id: str | None,
) -> str | None:
    reason = _check_keyword_ref(state, category_id, keyword_id)
    if reason or subkeyword_id is None:
        return reason
    sk = state.subkeywords.get(subkeyword_id)
    if sk is None:
        return f"unknown_subkeyword:{subkeyword_id}"
    if sk.keyword_id != keyword_id:
        return f"subkeyword_parent_mismatch:{sk.keyword_id}"
    return None


def simulate(state: TaxonomyState, category_id: str, op: Operation) -> tuple[str, str | None]:
    """Validate one operation against `state` and apply it there if accepted.

    Returns:
        (ACCEPT | SKIP | REJECT, reason); reason is set for rejections only
    """
    if isinstance(op, CreateKeyword):
        if not op.id or not op.label.strip():
            return REJECT, "invalid_keyword"
        if len(op.id) > models.ENTITY_ID_LENGTH:
            return REJECT, f"id_too_long:{len(op.id)}"
        if op.id in state.keywords:
            return REJECT, f"keyword_exists:{op.id}"
        synonyms = clean_synonyms(op.synonyms)
        for synonym in synonyms:
            owner = state.keyword_synonym_owner(synonym)
            if owner:
                return REJECT, f"duplicate_synonym_keyword:{owner}"
        state.keywords[op.id] = KeywordRecord(
            id=op.id,
            category_id=category_id,
            label=op.label.strip(),
            synonyms=synonyms,
            description=op.description,
            status=op.status,
        )
        return ACCEPT, None

    if isinstance(op, CreateSubkeyword):
        reason = _check_keyword_ref(state, category_id, op.keyword_id)
        if reason:
            return REJECT, reason
        if not op.id or not op.label.strip():
            return REJECT, "invalid_subkeyword"
        if len(op.id) > models.ENTITY_ID_LENGTH:
            return REJECT, f"id_too_long:{len(op.id)}"
        if op.id in state.subkeywords:
            return REJECT, f"subkeyword_exists:{op.id}"
        synonyms = clean_synonyms(op.synonyms)
        for synonym in synonyms:
            owner = state.sibling_synonym_owner(op.keyword_id, synonym)
            if owner:
                return REJECT, f"duplicate_synonym_subkeyword:{owner}"
        state.subkeywords[op.id] = SubkeywordRecord(
            id=op.id,
            keyword_id=op.keyword_id,
            label=op.label.strip(),
            synonyms=synonyms,
            description=op.description,
            status=op.status,
        )
        return ACCEPT, None

    if isinstance(op, AppendKeywordSynonym):
        reason = _check_keyword_ref(state, category_id, op.keyword_id)
        if reason:
            return REJECT, reason
        synonym = op.synonym.strip()
        if not synonym:
            return REJECT, "empty_synonym"
        kw = state.keywords[op.keyword_id]
        if any(normalize_synonym(s) == normalize_synonym(synonym) for s in kw.synonyms):
            return SKIP, None
        owner = state.keyword_synonym_owner(synonym, exclude=kw.id)
        if owner:
            return REJECT, f"duplicate_synonym_keyword:{owner}"
        kw.synonyms.append(synonym)
        return ACCEPT, None

    if isinstance(op, AppendSubkeywordSynonym):
        sk = state.subkeywords.get(op.subkeyword_id)
        if sk is None:
            return REJECT, f"unknown_subkeyword:{op.subkeyword_id}"
        reason = _check_keyword_ref(state, category_id, sk.keyword_id)
        if reason:
            return REJECT, reason
        synonym = op.synonym.strip()
        if not synonym:
            return REJECT, "empty_synonym"
        if any(normalize_synonym(s) == normalize_synonym(synonym) for s in sk.synonyms):
            return SKIP, None
        owner = state.sibling_synonym_owner(sk.keyword_id, synonym, exclude=sk.id)
        if owner:
            return REJECT, f"duplicate_synonym_subkeyword:{owner}"
        sk.synonyms.append(synonym)
        return ACCEPT, None

    if isinstance(op, CreateDocumentTerm):
        reason = _check_pair_ref(state, category_id, op.keyword_id, op.subkeyword_id)
        if reason:
            return REJECT, reason
        if state.has_term(op.document_id, op.keyword_id, op.subkeyword_id):
            return SKIP, None
        state.terms.append(TermRecord(op.document_id, op.keyword_id, op.subkeyword_id))
        return ACCEPT, None

    if isinstance(op, CreateEvidence):
        reason = _check_pair_ref(state, category_id, op.keyword_id, op.subkeyword_id)
        if reason:
            return REJECT, reason
        snippet = op.snippet.strip()
        if not snippet:
            return REJECT, "empty_snippet"
        for existing in state.evidence:
            if (existing.document_id, existing.keyword_id, existing.subkeyword_id, existing.snippet) == (
                op.document_id, op.keyword_id, op.subkeyword_id, snippet
            ):
                return SKIP, None
        state.evidence.append(EvidenceRecord(op.document_id, op.keyword_id, op.subkeyword_id, snippet))
        return ACCEPT, None

    raise TypeError(f"Unsupported operation: {op!r}")


def _documents_of(operations: Iterable[Operation]) -> set[str]:
    return {op.document_id for op in operations if isinstance(op, (CreateDocumentTerm, CreateEvidence))}


class CategoryTransaction:
    """Write access to one category inside its lock and DB transaction.

    `state` is the live taxonomy (every category) as of lock acquisition,
    plus the document rows loaded so far for the documents being written.
    """

    def __init__(self, session: AsyncSession, category_id: str, state: TaxonomyState) -> None:
        self.session = session
        self.category_id = category_id
        self.state = state
        self._loaded_documents: set[str] = set()

    @property
    def category(self) -> CategoryRecord:
        return self.state.categories[self.category_id]

    async def ensure_documents(self, document_ids: Iterable[str]) -> None:
        """Load association/evidence rows for documents not loaded yet."""
        missing = set(document_ids) - self._loaded_documents
        if not missing:
            return
        await load_document_rows(self.session, self.state, missing)
        self._loaded_documents |= missing

    def _forget_documents(self) -> None:
        self.state.terms = []
        self.state.evidence = []
        self._loaded_documents.clear()

    async def apply(self, operations: list[Operation], *, strict: bool = False) -> BatchResult:
        """Validate and write a batch of additive operations.

        Each operation is simulated in order on a copy of the live state and
        checked against the invariants of the resulting state. Rejected
        operations are reported individually and never written; with
        `strict`, any rejection aborts the batch before anything is written.

        Raises:
            BatchRejectedError: In strict mode, if any operation is rejected
        """
        await self.ensure_documents(_documents_of(operations))

        before = set(check_integrity(self.state, self.category_id))
        simulated = self.state.copy()
        result = BatchResult(category_id=self.category_id)

        for op in operations:
            outcome, reason = simulate(simulated, self.category_id, op)
            if outcome == ACCEPT:
                result.accepted.append(op)
            elif outcome == SKIP:
                result.skipped.append(op)
            else:
                logger.info(f"Rejected {op.describe()['action']} in {self.category_id}: {reason}")
                result.rejected.append((op, reason))

        if strict and result.rejected:
            raise BatchRejectedError(self.category_id, result.rejected)

        # Dry-run gate: the accepted subset must not introduce any violation
        introduced = [v for v in check_integrity(simulated, self.category_id) if v not in before]
        if introduced:
            logger.error(f"Batch for {self.category_id} would introduce violations: {introduced}")
            raise BatchRejectedError(
                self.category_id,
                [(op, f"integrity:{introduced[0].kind.value}") for op in result.accepted],
            )

        await self._write(result.accepted, simulated)
        self.state = simulated
        logger.debug(
            f"Applied batch to {self.category_id}: {len(result.accepted)} accepted, "
            f"{len(result.skipped)} skipped, {len(result.rejected)} rejected"
        )
        return result

    async def _write(self, accepted: list[Operation], simulated: TaxonomyState) -> None:
        for op in accepted:
            if isinstance(op, CreateKeyword):
                kw = simulated.keywords[op.id]
                self.session.add(models.Keyword(
                    id=kw.id,
                    category_id=kw.category_id,
                    label=kw.label,
                    synonyms=list(kw.synonyms),
                    description=kw.description,
                    status=kw.status,
                ))
            elif isinstance(op, CreateSubkeyword):
                sk = simulated.subkeywords[op.id]
                self.session.add(models.Subkeyword(
                    id=sk.id,
                    keyword_id=sk.keyword_id,
                    label=sk.label,
                    synonyms=list(sk.synonyms),
                    description=sk.description,
                    status=sk.status,
                ))
            elif isinstance(op, AppendKeywordSynonym):
                await self.session.execute(
                    update(models.Keyword)
                    .where(models.Keyword.id == op.keyword_id)
                    .values(synonyms=list(simulated.keywords[op.keyword_id].synonyms))
                )
            elif isinstance(op, AppendSubkeywordSynonym):
                await self.session.execute(
                    update(models.Subkeyword)
                    .where(models.Subkeyword.id == op.subkeyword_id)
                    .values(synonyms=list(simulated.subkeywords[op.subkeyword_id].synonyms))
                )
            elif isinstance(op, CreateDocumentTerm):
                self.session.add(models.DocumentTerm(
                    document_id=op.document_id,
                    keyword_id=op.keyword_id,
                    subkeyword_id=op.subkeyword_id,
                ))
            elif isinstance(op, CreateEvidence):
                self.session.add(models.DocumentTermEvidence(
                    document_id=op.document_id,
                    keyword_id=op.keyword_id,
                    subkeyword_id=op.subkeyword_id,
                    snippet=op.snippet.strip(),
                ))
            # Keep parents ahead of children and surface constraint errors at the failing op
            await self.session.flush()

    async def repoint(
        self,
        from_keyword: str,
        to_keyword: str,
        to_subkeyword: str | None = None,
        *,
        keyword_level_only: bool = True,
    ) -> RepointResult:
        """Rewrite association and evidence pairs from one keyword to another in place.

        Args:
            from_keyword: Keyword id currently referenced
            to_keyword: Keyword id to reference instead
            to_subkeyword: Subkeyword id for the rewritten rows; None keeps each
                row's own subkeyword
            keyword_level_only: Only touch rows without a subkeyword

        An association whose rewritten pair already exists for the same
        document is removed instead, so duplicates collapse to one row.
        """
        result = RepointResult()

        term_query = select(models.DocumentTerm).where(models.DocumentTerm.keyword_id == from_keyword)
        evidence_filter = [models.DocumentTermEvidence.keyword_id == from_keyword]
        if keyword_level_only:
            term_query = term_query.where(models.DocumentTerm.subkeyword_id.is_(None))
            evidence_filter.append(models.DocumentTermEvidence.subkeyword_id.is_(None))

        rows = (await self.session.execute(term_query.order_by(models.DocumentTerm.id))).scalars().all()
        for row in rows:
            target_subkeyword = to_subkeyword if to_subkeyword is not None else row.subkeyword_id
            clash = select(models.DocumentTerm.id).where(
                models.DocumentTerm.document_id == row.document_id,
                models.DocumentTerm.keyword_id == to_keyword,
                models.DocumentTerm.subkeyword_id.is_(None)
                if target_subkeyword is None
                else models.DocumentTerm.subkeyword_id == target_subkeyword,
            )
            if (await self.session.execute(clash)).first() is not None:
                await self.session.delete(row)
                result.terms_collapsed += 1
            else:
                row.keyword_id = to_keyword
                row.subkeyword_id = target_subkeyword
                result.terms_repointed += 1
            await self.session.flush()

        values = {"keyword_id": to_keyword}
        if to_subkeyword is not None:
            values["subkeyword_id"] = to_subkeyword
        evidence_update = await self.session.execute(
            update(models.DocumentTermEvidence)
            .where(*evidence_filter)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result.evidence_repointed = evidence_update.rowcount or 0

        self._forget_documents()
        logger.info(
            f"Repointed {from_keyword} -> {to_keyword}"
            f"{f'/{to_subkeyword}' if to_subkeyword else ''}: {result}"
        )
        return result

    async def reparent_subkeyword(self, subkeyword_id: str, keyword_id: str) -> None:
        """Move a subkeyword under another keyword of this category."""
        reason = _check_keyword_ref(self.state, self.category_id, keyword_id)
        if reason:
            raise ValueError(f"Cannot reparent {subkeyword_id}: {reason}")
        await self.session.execute(
            update(models.Subkeyword)
            .where(models.Subkeyword.id == subkeyword_id)
            .values(keyword_id=keyword_id)
            .execution_options(synchronize_session=False)
        )
        self.state.subkeywords[subkeyword_id].keyword_id = keyword_id

    async def references_to(self, entity_id: str, *, subkeyword: bool = False) -> int:
        """Count rows still pointing at a keyword id (or, with `subkeyword`, a subkeyword id).

        Keyword references include child subkeywords. The two id spaces are
        separate: a split reuses a keyword's id for the new subkeyword.
        """
        if subkeyword:
            counts = [
                select(func.count()).select_from(models.DocumentTerm)
                .where(models.DocumentTerm.subkeyword_id == entity_id),
                select(func.count()).select_from(models.DocumentTermEvidence)
                .where(models.DocumentTermEvidence.subkeyword_id == entity_id),
            ]
        else:
            counts = [
                select(func.count()).select_from(models.DocumentTerm)
                .where(models.DocumentTerm.keyword_id == entity_id),
                select(func.count()).select_from(models.DocumentTermEvidence)
                .where(models.DocumentTermEvidence.keyword_id == entity_id),
                select(func.count()).select_from(models.Subkeyword)
                .where(models.Subkeyword.keyword_id == entity_id),
            ]
        total = 0
        for query in counts:
            total += (await self.session.execute(query)).scalar_one()
        return total

    async def deprecate(self, entity_id: str, *, subkeyword: bool = False) -> None:
        """Retire a fully migrated keyword (or, with `subkeyword`, subkeyword) of this category.

        Raises:
            EntityInUseError: If any association, evidence row, or child still references it
            KeyError: If the entity does not exist in this category
        """
        if subkeyword:
            model, records = models.Subkeyword, self.state.subkeywords
            owner_category = self.state.category_of_subkeyword(entity_id)
        else:
            model, records = models.Keyword, self.state.keywords
            owner_category = self.state.category_of_keyword(entity_id)
        if owner_category != self.category_id:
            raise KeyError(entity_id)

        remaining = await self.references_to(entity_id, subkeyword=subkeyword)
        if remaining:
            raise EntityInUseError(f"{entity_id} is still referenced by {remaining} row(s)")

        await self.session.execute(
            delete(model).where(model.id == entity_id).execution_options(synchronize_session=False)
        )
        del records[entity_id]
        logger.info(f"Retired {entity_id} from {self.category_id}")

    async def place_hold(self, reason: str) -> None:
        await self.session.execute(
            update(models.Category)
            .where(models.Category.id == self.category_id)
            .values(integrity_hold=True, hold_reason=reason)
            .execution_options(synchronize_session=False)
        )
        self.category.integrity_hold = True
        self.category.hold_reason = reason


class TaxonomyStore:
    """Reads (lock-free, possibly stale) and category-scoped writes."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        locks: CategoryLockManager | None = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self.locks = locks or CategoryLockManager()

    async def categories(self) -> list[schemas.CategoryOut]:
        async with self._sessionmaker() as session:
            rows = (await session.execute(select(models.Category).order_by(models.Category.id))).scalars().all()
            return [schemas.CategoryOut(id=r.id, label=r.label, description=r.description) for r in rows]

    async def snapshot(self, category_id: str, *, include_review: bool = True) -> schemas.CategorySnapshot:
        """Read one category subtree without locking. May be slightly stale.

        Raises:
            CategoryNotFoundError: If the category does not exist
        """
        async with self._sessionmaker() as session:
            category = await session.get(models.Category, category_id)
            if category is None:
                raise CategoryNotFoundError(category_id)

            keyword_query = (
                select(models.Keyword)
                .where(models.Keyword.category_id == category_id)
                .order_by(models.Keyword.label, models.Keyword.id)
            )
            subkeyword_query = (
                select(models.Subkeyword)
                .join(models.Keyword, models.Subkeyword.keyword_id == models.Keyword.id)
                .where(models.Keyword.category_id == category_id)
                .order_by(models.Subkeyword.label, models.Subkeyword.id)
            )
            if not include_review:
                keyword_query = keyword_query.where(models.Keyword.status == TermStatus.APPROVED.value)
                subkeyword_query = subkeyword_query.where(models.Subkeyword.status == TermStatus.APPROVED.value)

            keywords = (await session.execute(keyword_query)).scalars().all()
            subkeywords = (await session.execute(subkeyword_query)).scalars().all()

        by_keyword: dict[str, list[schemas.SubkeywordOut]] = {}
        for sk in subkeywords:
            by_keyword.setdefault(sk.keyword_id, []).append(schemas.SubkeywordOut(
                id=sk.id,
                keyword_id=sk.keyword_id,
                label=sk.label,
                synonyms=list(sk.synonyms or []),
                description=sk.description,
                status=sk.status,
            ))

        return schemas.CategorySnapshot(
            id=category.id,
            label=category.label,
            description=category.description,
            keywords=[
                schemas.KeywordOut(
                    id=kw.id,
                    category_id=kw.category_id,
                    label=kw.label,
                    synonyms=list(kw.synonyms or []),
                    description=kw.description,
                    status=kw.status,
                    subkeywords=by_keyword.get(kw.id, []),
                )
                for kw in keywords
            ],
        )

    async def load_state(self) -> TaxonomyState:
        """Full taxonomy plus all document rows, for audits."""
        async with self._sessionmaker() as session:
            return await load_full_state(session)

    async def document_terms(self, document_id: str) -> schemas.DocumentTermsOut:
        async with self._sessionmaker() as session:
            terms = (await session.execute(
                select(models.DocumentTerm)
                .where(models.DocumentTerm.document_id == document_id)
                .order_by(models.DocumentTerm.keyword_id, models.DocumentTerm.subkeyword_id)
            )).scalars().all()
            evidence = (await session.execute(
                select(models.DocumentTermEvidence)
                .where(models.DocumentTermEvidence.document_id == document_id)
                .order_by(models.DocumentTermEvidence.id)
            )).scalars().all()

        return schemas.DocumentTermsOut(
            document_id=document_id,
            terms=[
                schemas.DocumentTermOut(document_id=t.document_id, keyword_id=t.keyword_id, subkeyword_id=t.subkeyword_id)
                for t in terms
            ],
            evidence=[
                schemas.EvidenceOut(
                    document_id=e.document_id,
                    keyword_id=e.keyword_id,
                    subkeyword_id=e.subkeyword_id,
                    snippet=e.snippet,
                )
                for e in evidence
            ],
        )

    async def facet_counts(self, category_id: str) -> list[schemas.FacetCount]:
        """Distinct tagged documents per keyword and per subkeyword of a category."""
        async with self._sessionmaker() as session:
            if await session.get(models.Category, category_id) is None:
                raise CategoryNotFoundError(category_id)

            keyword_rows = (await session.execute(
                select(models.Keyword.id, models.Keyword.label, func.count(distinct(models.DocumentTerm.document_id)))
                .join(models.DocumentTerm, models.DocumentTerm.keyword_id == models.Keyword.id)
                .where(models.Keyword.category_id == category_id)
                .group_by(models.Keyword.id, models.Keyword.label)
                .order_by(models.Keyword.label)
            )).all()
            subkeyword_rows = (await session.execute(
                select(
                    models.Subkeyword.keyword_id,
                    models.Subkeyword.id,
                    models.Subkeyword.label,
                    func.count(distinct(models.DocumentTerm.document_id)),
                )
                .join(models.DocumentTerm, models.DocumentTerm.subkeyword_id == models.Subkeyword.id)
                .join(models.Keyword, models.Subkeyword.keyword_id == models.Keyword.id)
                .where(models.Keyword.category_id == category_id)
                .group_by(models.Subkeyword.keyword_id, models.Subkeyword.id, models.Subkeyword.label)
                .order_by(models.Subkeyword.label)
            )).all()

        facets = [
            schemas.FacetCount(keyword_id=kid, label=label, document_count=count)
            for kid, label, count in keyword_rows
        ]
        facets.extend(
            schemas.FacetCount(keyword_id=kid, subkeyword_id=sid, label=label, document_count=count)
            for kid, sid, label, count in subkeyword_rows
        )
        return facets

    async def _lock_category_row(self, session: AsyncSession, category_id: str) -> None:
        """Row-lock the category so writers in other processes serialize too."""
        dialect = session.get_bind().dialect.name
        try:
            if dialect == "postgresql":
                timeout_ms = int(self.locks.timeout * 1000)
                await session.execute(text(f"SET LOCAL lock_timeout = '{timeout_ms}ms'"))
            row = (await session.execute(
                select(models.Category.id).where(models.Category.id == category_id).with_for_update()
            )).first()
        except DBAPIError as e:
            sqlstate = getattr(e.orig, "sqlstate", None) or getattr(e.orig, "pgcode", None)
            if sqlstate == _PG_LOCK_NOT_AVAILABLE:
                raise CategoryBusyError(category_id, self.locks.timeout) from e
            raise
        if row is None:
            raise CategoryNotFoundError(category_id)

    @asynccontextmanager
    async def category_transaction(
        self,
        category_id: str,
        *,
        allow_hold: bool = False,
    ) -> AsyncIterator[CategoryTransaction]:
        """Exclusive write scope for one category.

        Commits when the block exits cleanly, rolls back on exception.

        Raises:
            CategoryBusyError: If the category lock cannot be acquired in time
            CategoryNotFoundError: If the category does not exist
            CategoryOnHoldError: If the category is on integrity hold and
                `allow_hold` is not set
        """
        async with self.locks.acquire(category_id):
            async with self._sessionmaker() as session:
                async with session.begin():
                    await self._lock_category_row(session, category_id)
                    state = await load_taxonomy_state(session)
                    category = state.categories[category_id]
                    if category.integrity_hold and not allow_hold:
                        raise CategoryOnHoldError(category_id, category.hold_reason)
                    yield CategoryTransaction(session, category_id, state)

    async def apply_batch(
        self,
        category_id: str,
        operations: list[Operation],
        *,
        strict: bool = False,
    ) -> BatchResult:
        """Atomically apply additive operations to one category (see `CategoryTransaction.apply`)."""
        async with self.category_transaction(category_id) as tx:
            return await tx.apply(operations, strict=strict)

    async def release_hold(self, category_id: str) -> None:
        """Clear an integrity hold once an operator has investigated."""
        async with self.category_transaction(category_id, allow_hold=True) as tx:
            await tx.session.execute(
                update(models.Category)
                .where(models.Category.id == category_id)
                .values(integrity_hold=False, hold_reason=None)
                .execution_options(synchronize_session=False)
            )
        logger.warning(f"Integrity hold released on category {category_id}")
