"""Normalization migrations: restructure a category without changing its document tags.

Two administrative, idempotent modes:

- split: keywords whose dotted id is deeper than the canonical depth become
  subkeywords of the keyword named by their id prefix.
- merge: legacy duplicate keywords are folded into one canonical keyword.

Both run under the category lock, refuse to start on an already inconsistent
category, leave an audit row, and re-check integrity afterwards. A failed
post-check is not rolled back: the category is put on hold for an operator.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Awaitable, Callable

from taxonomy import models
from taxonomy.config import settings
from taxonomy.integrity import Violation, ViolationKind, check_integrity
from taxonomy.logging_config import log_context
from taxonomy.pipelines.normalization import clean_synonyms, id_depth, id_prefix
from taxonomy.state import TaxonomyState, load_full_state
from taxonomy.store import (
    AppendKeywordSynonym,
    CategoryTransaction,
    CreateDocumentTerm,
    CreateSubkeyword,
    TaxonomyStore,
)

logger = logging.getLogger(__name__)


class MigrationPreconditionError(Exception):
    """Raised when a migration cannot start safely (bad parameters or an inconsistent category)."""
    pass


class MigrationIntegrityError(Exception):
    """Raised when the post-migration integrity check fails. Requires manual intervention."""

    def __init__(self, category_id: str, violations: list[Violation], run_id: int | None = None):
        self.category_id = category_id
        self.violations = violations
        self.run_id = run_id
        super().__init__(
            f"Integrity check failed after migration run {run_id} on {category_id}: "
            f"{len(violations)} violation(s); category placed on hold"
        )


@dataclass
class SplitReport:
    category_id: str
    parent_id: str | None = None
    run_id: int | None = None
    subkeywords_created: list[str] = field(default_factory=list)
    subkeywords_existing: list[str] = field(default_factory=list)
    terms_repointed: int = 0
    terms_collapsed: int = 0
    evidence_repointed: int = 0
    keywords_retired: list[str] = field(default_factory=list)
    keywords_retained: list[str] = field(default_factory=list)
    conflicts: list[dict] = field(default_factory=list)


@dataclass
class MergeReport:
    category_id: str
    canonical_id: str
    legacy_ids: list[str]
    run_id: int | None = None
    legacy_missing: list[str] = field(default_factory=list)
    documents: int = 0
    terms_created: int = 0
    terms_repointed: int = 0
    terms_collapsed: int = 0
    evidence_repointed: int = 0
    subkeywords_reparented: list[str] = field(default_factory=list)
    synonyms_folded: list[str] = field(default_factory=list)
    keywords_retired: list[str] = field(default_factory=list)


class NormalizationMigrator:
    """Runs split and merge migrations for one category at a time."""

    def __init__(self, store: TaxonomyStore, *, canonical_depth: int | None = None) -> None:
        self.store = store
        self.canonical_depth = canonical_depth or settings.migrations.canonical_depth

    async def _run(
        self,
        category_id: str,
        mode: str,
        params: dict,
        work: Callable[[CategoryTransaction, TaxonomyState], Awaitable[SplitReport | MergeReport]],
    ) -> SplitReport | MergeReport:
        failed: list[Violation] = []
        with log_context(category=category_id):
            async with self.store.category_transaction(category_id) as tx:
                before = await load_full_state(tx.session)
                existing = check_integrity(before, category_id)
                if existing:
                    raise MigrationPreconditionError(
                        f"Category {category_id} already has {len(existing)} integrity violation(s); "
                        f"first: {existing[0].as_dict()}"
                    )

                run = models.MigrationRun(category_id=category_id, mode=mode, params=params, status="running")
                tx.session.add(run)
                await tx.session.flush()

                report = await work(tx, before)
                report.run_id = run.id

                after = await load_full_state(tx.session)
                failed = check_integrity(after, category_id)

                run.stats = asdict(report)
                run.finished_at = datetime.utcnow()
                if failed:
                    run.status = "integrity_failed"
                    run.violations = [v.as_dict() for v in failed]
                    await tx.place_hold(f"{mode} migration run {run.id} failed its integrity post-check")
                    logger.critical(
                        f"{mode} migration run {run.id} left {len(failed)} violation(s); category placed on hold"
                    )
                else:
                    run.status = "completed"

            if failed:
                raise MigrationIntegrityError(category_id, failed, report.run_id)

            logger.info(f"{mode} migration run {report.run_id} completed: {asdict(report)}")
            return report

    async def split(self, category_id: str, parent_id: str | None = None) -> SplitReport:
        """Turn over-specified keywords into subkeywords of their canonical parent.

        For each keyword K deeper than the canonical depth whose id prefix P is a
        keyword of the same category:

        a. create subkeyword K.id under P (skipped when it already exists)
        b. repoint associations/evidence (K, none) → (P, K.id); rows that already
           carry a subkeyword are left alone
        c. retire K once nothing references it

        Running it again is a no-op.

        Args:
            category_id: Category to restructure
            parent_id: Only migrate children of this canonical keyword

        Raises:
            MigrationPreconditionError: Unknown parent, or pre-existing violations
            MigrationIntegrityError: Post-check failed (category now on hold)
        """
        params = {"parentId": parent_id, "canonicalDepth": self.canonical_depth}
        return await self._run(
            category_id,
            "split",
            params,
            lambda tx, before: self._split(tx, parent_id),
        )

    async def _split(self, tx: CategoryTransaction, parent_id: str | None) -> SplitReport:
        state = tx.state
        report = SplitReport(category_id=tx.category_id, parent_id=parent_id)
        if parent_id is not None and state.category_of_keyword(parent_id) != tx.category_id:
            raise MigrationPreconditionError(f"{parent_id} is not a keyword of category {tx.category_id}")

        candidates = []
        for kw in state.keywords_in(tx.category_id):
            if id_depth(kw.id) <= self.canonical_depth:
                continue
            parent = id_prefix(kw.id, self.canonical_depth)
            if parent == kw.id or state.category_of_keyword(parent) != tx.category_id:
                continue
            if parent_id is not None and parent != parent_id:
                continue
            candidates.append((kw, parent))

        for kw, parent in candidates:
            existing = tx.state.subkeywords.get(kw.id)
            if existing is not None and existing.keyword_id != parent:
                report.conflicts.append({"keywordId": kw.id, "reason": f"subkeyword_exists:{existing.keyword_id}"})
                continue
            if existing is not None:
                report.subkeywords_existing.append(kw.id)
            else:
                result = await tx.apply([CreateSubkeyword(
                    id=kw.id,
                    keyword_id=parent,
                    label=kw.label,
                    synonyms=tuple(kw.synonyms),
                    description=kw.description,
                    status=kw.status,
                )])
                if result.rejected:
                    _, reason = result.rejected[0]
                    report.conflicts.append({"keywordId": kw.id, "reason": reason})
                    continue
                report.subkeywords_created.append(kw.id)

            moved = await tx.repoint(kw.id, parent, kw.id, keyword_level_only=True)
            report.terms_repointed += moved.terms_repointed
            report.terms_collapsed += moved.terms_collapsed
            report.evidence_repointed += moved.evidence_repointed

            if await tx.references_to(kw.id):
                # Rows that already had a subkeyword still point at K
                report.keywords_retained.append(kw.id)
            else:
                await tx.deprecate(kw.id)
                report.keywords_retired.append(kw.id)

        for conflict in report.conflicts:
            logger.warning(f"Split skipped {conflict['keywordId']}: {conflict['reason']}")
        return report

    async def merge(self, category_id: str, canonical_id: str, legacy_ids: list[str]) -> MergeReport:
        """Fold legacy duplicate keywords into one canonical keyword.

        Afterwards the documents tagged with the canonical keyword are exactly
        the union of the documents previously tagged with it or any legacy id,
        one association per document, and no row references a legacy id.

        Args:
            category_id: Category holding all the keywords
            canonical_id: Keyword id that is kept
            legacy_ids: Keyword ids folded into it and retired

        Raises:
            MigrationPreconditionError: Bad ids, a sibling synonym clash among re-parented
                subkeywords, or pre-existing violations
            MigrationIntegrityError: Post-check failed (category now on hold)
        """
        legacy = list(dict.fromkeys(i.strip() for i in legacy_ids if i and i.strip()))
        params = {"canonicalId": canonical_id, "legacyIds": legacy}
        return await self._run(
            category_id,
            "merge",
            params,
            lambda tx, before: self._merge(tx, before, canonical_id, legacy),
        )

    async def _merge(
        self,
        tx: CategoryTransaction,
        before: TaxonomyState,
        canonical_id: str,
        legacy_ids: list[str],
    ) -> MergeReport:
        state = tx.state
        report = MergeReport(category_id=tx.category_id, canonical_id=canonical_id, legacy_ids=legacy_ids)

        if state.category_of_keyword(canonical_id) != tx.category_id:
            raise MigrationPreconditionError(f"{canonical_id} is not a keyword of category {tx.category_id}")
        if canonical_id in legacy_ids:
            raise MigrationPreconditionError(f"{canonical_id} cannot be both canonical and legacy")

        present = []
        for legacy_id in legacy_ids:
            owner = state.category_of_keyword(legacy_id)
            if owner is None:
                report.legacy_missing.append(legacy_id)
            elif owner != tx.category_id:
                raise MigrationPreconditionError(f"{legacy_id} belongs to category {owner}, not {tx.category_id}")
            else:
                present.append(legacy_id)

        # Re-parenting must not create sibling synonym clashes under the canonical keyword
        trial = state.copy()
        for sk in trial.subkeywords.values():
            if sk.keyword_id in present:
                sk.keyword_id = canonical_id
        clashes = [
            v for v in check_integrity(trial, tx.category_id)
            if v.kind == ViolationKind.SUBKEYWORD_SYNONYM_CONFLICT
        ]
        if clashes:
            raise MigrationPreconditionError(
                f"Merging into {canonical_id} would give sibling subkeywords a shared synonym: "
                f"{[v.as_dict() for v in clashes]}"
            )

        documents = sorted({t.document_id for t in before.terms if t.keyword_id in present})
        report.documents = len(documents)
        if documents:
            created = await tx.apply(
                [CreateDocumentTerm(document_id, canonical_id) for document_id in documents],
                strict=True,
            )
            report.terms_created = len(created.accepted)

        folded = []
        for legacy_id in present:
            folded.extend(tx.state.keywords[legacy_id].synonyms)
            for sk in tx.state.subkeywords_of(legacy_id):
                await tx.reparent_subkeyword(sk.id, canonical_id)
                report.subkeywords_reparented.append(sk.id)

            moved = await tx.repoint(legacy_id, canonical_id, None, keyword_level_only=False)
            report.terms_repointed += moved.terms_repointed
            report.terms_collapsed += moved.terms_collapsed
            report.evidence_repointed += moved.evidence_repointed

            await tx.deprecate(legacy_id)
            report.keywords_retired.append(legacy_id)

        # Legacy synonyms are free once their owners are retired
        synonyms = clean_synonyms(folded)
        if synonyms:
            result = await tx.apply([AppendKeywordSynonym(canonical_id, s) for s in synonyms])
            report.synonyms_folded = [op.synonym for op in result.accepted]
            for op, reason in result.rejected:
                logger.warning(f"Could not fold synonym {op.synonym!r} into {canonical_id}: {reason}")

        return report
