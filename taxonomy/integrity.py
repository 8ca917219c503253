"""Integrity checks over a taxonomy state.

Pure functions: nothing here reads or writes storage, and nothing repairs.
Violations are reported for an operator (or a migration post-check) to act on.
"""
from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum

from rapidfuzz import fuzz, process

from .config import settings
from .pipelines.normalization import normalize_synonym
from .state import TaxonomyState

logger = logging.getLogger(__name__)


class ViolationKind(str, Enum):
    """Violation kinds, in report order."""
    KEYWORD_SYNONYM_CONFLICT = "keyword_synonym_conflict"
    SUBKEYWORD_SYNONYM_CONFLICT = "subkeyword_synonym_conflict"
    KEYWORD_UNKNOWN_CATEGORY = "keyword_unknown_category"
    ORPHAN_SUBKEYWORD = "orphan_subkeyword"
    TERM_UNKNOWN_KEYWORD = "term_unknown_keyword"
    TERM_UNKNOWN_SUBKEYWORD = "term_unknown_subkeyword"
    TERM_SUBKEYWORD_PARENT_MISMATCH = "term_subkeyword_parent_mismatch"
    DUPLICATE_TERM = "duplicate_term"
    EVIDENCE_UNKNOWN_KEYWORD = "evidence_unknown_keyword"
    EVIDENCE_UNKNOWN_SUBKEYWORD = "evidence_unknown_subkeyword"
    EVIDENCE_SUBKEYWORD_PARENT_MISMATCH = "evidence_subkeyword_parent_mismatch"


_KIND_ORDER = {kind: index for index, kind in enumerate(ViolationKind)}


@dataclass(frozen=True)
class Violation:
    """One invariant violation.

    `value` is the offending synonym or id; `owners` are the competing or
    referencing entity ids. `categories` lists the categories involved, empty
    when none can be determined (such violations show up in every scoped report).
    """
    kind: ViolationKind
    value: str
    owners: tuple[str, ...]
    categories: frozenset[str] = field(default_factory=frozenset)

    def as_dict(self) -> dict:
        return {"kind": self.kind.value, "value": self.value, "owners": list(self.owners)}


@dataclass(frozen=True)
class NearDuplicate:
    """Two distinct synonyms, owned by different keywords, that look alike."""
    left: str
    left_owner: str
    right: str
    right_owner: str
    score: float


def _categories(state: TaxonomyState, *keyword_ids: str | None) -> frozenset[str]:
    found = {state.category_of_keyword(kid) for kid in keyword_ids}
    return frozenset(c for c in found if c)


def _keyword_conflicts(state: TaxonomyState) -> list[Violation]:
    violations = []
    owner_by_synonym: dict[str, str] = {}
    for kw in sorted(state.keywords.values(), key=lambda k: k.id):
        for synonym in kw.synonyms:
            key = normalize_synonym(synonym)
            if not key:
                continue
            owner = owner_by_synonym.setdefault(key, kw.id)
            if owner != kw.id:
                violations.append(Violation(
                    ViolationKind.KEYWORD_SYNONYM_CONFLICT,
                    key,
                    (owner, kw.id),
                    _categories(state, owner, kw.id),
                ))
    return violations


def _subkeyword_conflicts(state: TaxonomyState) -> list[Violation]:
    violations = []
    groups = defaultdict(list)
    for sk in sorted(state.subkeywords.values(), key=lambda s: s.id):
        groups[sk.keyword_id].append(sk)

    # Each parent is checked on its own; siblings of different parents may share synonyms
    for parent_id in sorted(groups):
        owner_by_synonym: dict[str, str] = {}
        for sk in groups[parent_id]:
            for synonym in sk.synonyms:
                key = normalize_synonym(synonym)
                if not key:
                    continue
                owner = owner_by_synonym.setdefault(key, sk.id)
                if owner != sk.id:
                    violations.append(Violation(
                        ViolationKind.SUBKEYWORD_SYNONYM_CONFLICT,
                        key,
                        (owner, sk.id),
                        _categories(state, parent_id),
                    ))
    return violations


def _referential_violations(state: TaxonomyState) -> list[Violation]:
    violations = []

    for kw in state.keywords.values():
        if kw.category_id not in state.categories:
            violations.append(Violation(
                ViolationKind.KEYWORD_UNKNOWN_CATEGORY,
                kw.id,
                (kw.category_id,),
                frozenset({kw.category_id}),
            ))

    for sk in state.subkeywords.values():
        if sk.keyword_id not in state.keywords:
            violations.append(Violation(
                ViolationKind.ORPHAN_SUBKEYWORD,
                sk.id,
                (sk.keyword_id,),
            ))

    row_kinds = (
        (
            "term",
            [(t.document_id, t.keyword_id, t.subkeyword_id) for t in state.terms],
            ViolationKind.TERM_UNKNOWN_KEYWORD,
            ViolationKind.TERM_UNKNOWN_SUBKEYWORD,
            ViolationKind.TERM_SUBKEYWORD_PARENT_MISMATCH,
        ),
        (
            "evidence",
            [(e.document_id, e.keyword_id, e.subkeyword_id) for e in state.evidence],
            ViolationKind.EVIDENCE_UNKNOWN_KEYWORD,
            ViolationKind.EVIDENCE_UNKNOWN_SUBKEYWORD,
            ViolationKind.EVIDENCE_SUBKEYWORD_PARENT_MISMATCH,
        ),
    )
    for _, rows, unknown_keyword, unknown_subkeyword, parent_mismatch in row_kinds:
        for document_id, keyword_id, subkeyword_id in rows:
            if keyword_id not in state.keywords:
                violations.append(Violation(unknown_keyword, keyword_id, (document_id,)))
                continue
            if subkeyword_id is None:
                continue
            sk = state.subkeywords.get(subkeyword_id)
            if sk is None:
                violations.append(Violation(
                    unknown_subkeyword,
                    subkeyword_id,
                    (document_id, keyword_id),
                    _categories(state, keyword_id),
                ))
            elif sk.keyword_id != keyword_id:
                violations.append(Violation(
                    parent_mismatch,
                    subkeyword_id,
                    (document_id, keyword_id, sk.keyword_id),
                    _categories(state, keyword_id, sk.keyword_id),
                ))

    seen_terms = set()
    for term in state.terms:
        if term in seen_terms:
            violations.append(Violation(
                ViolationKind.DUPLICATE_TERM,
                term.document_id,
                (term.keyword_id, term.subkeyword_id or ""),
                _categories(state, term.keyword_id),
            ))
        seen_terms.add(term)

    return violations


def check_integrity(state: TaxonomyState, category_id: str | None = None) -> list[Violation]:
    """Validate every invariant over `state`.

    Args:
        state: Taxonomy state to audit (all categories must be present; synonym
            ownership across keywords is global)
        category_id: If given, keep only violations that involve this category
            or cannot be attributed to any category

    Returns:
        Ordered violations; an empty list means the state is valid
    """
    violations = _keyword_conflicts(state) + _subkeyword_conflicts(state) + _referential_violations(state)

    if category_id is not None:
        violations = [v for v in violations if not v.categories or category_id in v.categories]

    violations.sort(key=lambda v: (_KIND_ORDER[v.kind], v.value, v.owners))

    if violations:
        logger.warning(
            f"Integrity check found {len(violations)} violation(s)"
            f"{f' in category {category_id}' if category_id else ''}"
        )
    return violations


def find_near_duplicate_synonyms(
    state: TaxonomyState,
    category_id: str | None = None,
    *,
    threshold: int | None = None,
) -> list[NearDuplicate]:
    """Advisory report of look-alike synonyms owned by different keywords.

    These are NOT violations: ownership is decided on the exact normalized
    form, so "o2 sat" and "o2 sats" may legitimately belong to different
    keywords. The list only helps an operator spot drift.
    """
    cutoff = settings.integrity.near_duplicate_threshold if threshold is None else threshold

    owners: dict[str, str] = {}
    for kw in sorted(state.keywords.values(), key=lambda k: k.id):
        for synonym in kw.synonyms:
            key = normalize_synonym(synonym)
            if key:
                owners.setdefault(key, kw.id)

    choices = sorted(owners)
    queries = [
        key for key in choices
        if category_id is None or state.category_of_keyword(owners[key]) == category_id
    ]

    seen_pairs: set[tuple[str, str]] = set()
    results: list[NearDuplicate] = []
    for query in queries:
        matches = process.extract(query, choices, scorer=fuzz.ratio, score_cutoff=cutoff, limit=None)
        for candidate, score, _ in matches:
            if candidate == query or owners[candidate] == owners[query]:
                continue
            pair = tuple(sorted((query, candidate)))
            if pair in seen_pairs:
                continue
            seen_pairs.add(pair)
            left, right = pair
            results.append(NearDuplicate(
                left=left,
                left_owner=owners[left],
                right=right,
                right_owner=owners[right],
                score=float(score),
            ))

    results.sort(key=lambda d: (-d.score, d.left, d.right))
    return results
