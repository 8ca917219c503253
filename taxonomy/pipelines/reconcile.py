"""Reconciliation pipeline: classifier proposal → additive taxonomy batch + document tags.

A proposal is resolved against the live taxonomy under the category lock.
Conflicting items are dropped one by one with a reason code; everything that
survives is written in a single strict batch together with the document's
associations and evidence.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from taxonomy import models, schemas
from taxonomy.config import TermStatus, settings
from taxonomy.locks import CategoryBusyError
from taxonomy.logging_config import log_context
from taxonomy.pipelines.normalization import clean_synonyms, derive_child_id, normalize_synonym
from taxonomy.state import TaxonomyState
from taxonomy.store import (
    ACCEPT,
    REJECT,
    AppendKeywordSynonym,
    AppendSubkeywordSynonym,
    CreateDocumentTerm,
    CreateEvidence,
    CreateKeyword,
    CreateSubkeyword,
    Operation,
    TaxonomyStore,
    simulate,
)

logger = logging.getLogger(__name__)


@dataclass
class _Plan:
    """Working state of one reconciliation: simulated taxonomy plus collected output."""
    category_id: str
    document_id: str
    state: TaxonomyState
    operations: list[Operation] = field(default_factory=list)
    accepted: list[schemas.AcceptedItem] = field(default_factory=list)
    rejected: list[schemas.RejectedItem] = field(default_factory=list)
    pairs: list[tuple[str, str | None]] = field(default_factory=list)
    snippets: list[tuple[str, str | None, str]] = field(default_factory=list)

    def reject(self, item: dict, reason: str) -> None:
        logger.info(f"Dropped {item} from proposal: {reason}")
        self.rejected.append(schemas.RejectedItem(item=item, reason=reason))

    def submit(self, op: Operation, item: dict) -> bool:
        """Simulate `op` on the working state; keep it or record the rejection."""
        outcome, reason = simulate(self.state, self.category_id, op)
        if outcome == REJECT:
            self.reject(item, reason)
            return False
        if outcome == ACCEPT:
            self.operations.append(op)
        return True

    def resolve_pair(self, keyword_id: str, subkeyword_id: str | None, evidence: list[str]) -> None:
        if (keyword_id, subkeyword_id) not in self.pairs:
            self.pairs.append((keyword_id, subkeyword_id))
        for snippet in evidence:
            self.snippets.append((keyword_id, subkeyword_id, snippet))


def _observed_only(observed: list[str], proposed: list[str]) -> set[str]:
    """Normalized synonyms seen verbatim in the text but not proposed as additions."""
    return {normalize_synonym(s) for s in observed} - {normalize_synonym(s) for s in proposed}


class UpdateReconciler:
    """Merges classifier proposals into the live taxonomy, additively."""

    def __init__(self, store: TaxonomyStore, *, default_status: TermStatus | None = None) -> None:
        self.store = store
        self.default_status = (default_status or settings.reconcile.default_status).value

    async def reconcile(self, proposal: schemas.Proposal) -> schemas.ReconciliationResult:
        """Resolve a proposal against the live taxonomy and commit the surviving subset.

        Args:
            proposal: Structurally validated proposal for one category and one document

        Returns:
            Accepted creations/appends, rejected items with reasons, and the
            associations now recorded for the document

        Raises:
            CategoryNotFoundError: If the category does not exist
            CategoryOnHoldError: If the category is on integrity hold
            CategoryBusyError: If the category lock is not obtained in time (retryable)
        """
        with log_context(category=proposal.category_id, document=proposal.document_id):
            async with self.store.category_transaction(proposal.category_id) as tx:
                await tx.ensure_documents([proposal.document_id])
                plan = _Plan(
                    category_id=proposal.category_id,
                    document_id=proposal.document_id,
                    state=tx.state.copy(),
                )

                for match in proposal.keyword_matches:
                    keyword_id = self._resolve_keyword(plan, match)
                    if keyword_id is None:
                        continue
                    plan.resolve_pair(keyword_id, None, match.evidence)
                    for sub_match in match.subkeyword_matches:
                        subkeyword_id = self._resolve_subkeyword(plan, keyword_id, sub_match)
                        if subkeyword_id is not None:
                            plan.resolve_pair(keyword_id, subkeyword_id, sub_match.evidence)

                document_ops: list[Operation] = [
                    CreateDocumentTerm(proposal.document_id, kid, skid) for kid, skid in plan.pairs
                ]
                document_ops.extend(
                    CreateEvidence(proposal.document_id, kid, skid, snippet) for kid, skid, snippet in plan.snippets
                )
                await tx.apply(plan.operations + document_ops, strict=True)

            result = schemas.ReconciliationResult(
                category_id=proposal.category_id,
                document_id=proposal.document_id,
                accepted=plan.accepted,
                rejected=plan.rejected,
                associations_written=[
                    schemas.DocumentTermOut(document_id=proposal.document_id, keyword_id=kid, subkeyword_id=skid)
                    for kid, skid in plan.pairs
                ],
            )
            logger.info(
                f"Reconciled proposal: {len(result.accepted)} accepted, {len(result.rejected)} rejected, "
                f"{len(result.associations_written)} association(s)"
            )
            return result

    def _resolve_keyword(self, plan: _Plan, match: schemas.KeywordMatch) -> str | None:
        """Resolve one keyword match to a keyword id, planning any creation or appends.

        Added synonyms that another keyword owns are rejected with a reason.
        Observed synonyms are only text found in the document, so one owned by
        another keyword is skipped without a rejection.
        """
        state = plan.state
        candidates = list(match.added_synonyms) + list(match.observed_synonyms)
        observed = _observed_only(match.observed_synonyms, match.added_synonyms)

        if match.keyword_id is not None:
            keyword_id = match.keyword_id
            kw = state.keywords.get(keyword_id)
            if kw is None:
                plan.reject({"keywordId": keyword_id}, f"unknown_keyword:{keyword_id}")
                return None
            if kw.category_id != plan.category_id:
                plan.reject({"keywordId": keyword_id}, f"category_mismatch:{kw.category_id}")
                return None
        else:
            new = match.new_keyword
            item = {"newKeyword": {"label": new.label}}
            keyword_id = derive_child_id(plan.category_id, new.label)
            if keyword_id is None:
                plan.reject(item, "invalid_label")
                return None
            if len(keyword_id) > models.ENTITY_ID_LENGTH:
                plan.reject(item, f"id_too_long:{len(keyword_id)}")
                return None
            observed -= {normalize_synonym(s) for s in new.synonyms}

            existing = state.keyword_with_label(plan.category_id, new.label)
            if existing is None and keyword_id in state.keywords:
                plan.reject(item, f"keyword_exists:{keyword_id}")
                if state.keywords[keyword_id].category_id != plan.category_id:
                    return None
                existing = keyword_id
            elif existing is not None:
                plan.reject(item, f"duplicate_keyword_label:{existing}")

            if existing is not None:
                # Treated as a match on the existing keyword
                keyword_id = existing
                candidates = list(new.synonyms) + candidates
            else:
                synonyms = []
                for synonym in clean_synonyms(list(new.synonyms) + candidates):
                    owner = state.keyword_synonym_owner(synonym)
                    if owner and normalize_synonym(synonym) in observed:
                        logger.debug(f"Observed synonym {synonym!r} belongs to {owner}; not added")
                    elif owner:
                        plan.reject({**item, "synonym": synonym}, f"duplicate_synonym_keyword:{owner}")
                    else:
                        synonyms.append(synonym)
                if not synonyms and state.keyword_synonym_owner(new.label) is None:
                    synonyms = [new.label]

                op = CreateKeyword(
                    id=keyword_id,
                    label=new.label,
                    synonyms=tuple(synonyms),
                    status=self.default_status,
                )
                if not plan.submit(op, item):
                    return None
                plan.accepted.append(schemas.AcceptedItem(
                    action="create_keyword", keyword_id=keyword_id, value=new.label,
                ))
                return keyword_id

        owned = {normalize_synonym(s) for s in state.keywords[keyword_id].synonyms}
        for synonym in clean_synonyms(candidates):
            if normalize_synonym(synonym) in owned:
                continue
            if normalize_synonym(synonym) in observed and state.keyword_synonym_owner(synonym, exclude=keyword_id):
                logger.debug(f"Observed synonym {synonym!r} belongs to another keyword; not added")
                continue
            op = AppendKeywordSynonym(keyword_id, synonym)
            if plan.submit(op, {"keywordId": keyword_id, "synonym": synonym}):
                owned.add(normalize_synonym(synonym))
                plan.accepted.append(schemas.AcceptedItem(
                    action="append_keyword_synonym", keyword_id=keyword_id, value=synonym,
                ))
        return keyword_id

    def _resolve_subkeyword(self, plan: _Plan, keyword_id: str, match: schemas.SubkeywordMatch) -> str | None:
        state = plan.state
        candidates = list(match.added_synonyms) + list(match.observed_synonyms)
        observed = _observed_only(match.observed_synonyms, match.added_synonyms)

        if match.subkeyword_id is not None:
            subkeyword_id = match.subkeyword_id
            sk = state.subkeywords.get(subkeyword_id)
            if sk is None:
                plan.reject({"subkeywordId": subkeyword_id}, f"unknown_subkeyword:{subkeyword_id}")
                return None
            if sk.keyword_id != keyword_id:
                plan.reject({"subkeywordId": subkeyword_id}, f"subkeyword_parent_mismatch:{sk.keyword_id}")
                return None
        else:
            new = match.new_subkeyword
            item = {"keywordId": keyword_id, "newSubkeyword": {"label": new.label}}
            subkeyword_id = derive_child_id(keyword_id, new.label)
            if subkeyword_id is None:
                plan.reject(item, "invalid_label")
                return None
            if len(subkeyword_id) > models.ENTITY_ID_LENGTH:
                plan.reject(item, f"id_too_long:{len(subkeyword_id)}")
                return None
            observed -= {normalize_synonym(s) for s in new.synonyms}

            existing = state.subkeyword_with_label(keyword_id, new.label)
            if existing is None and subkeyword_id in state.subkeywords:
                plan.reject(item, f"subkeyword_exists:{subkeyword_id}")
                if state.subkeywords[subkeyword_id].keyword_id != keyword_id:
                    return None
                existing = subkeyword_id
            elif existing is not None:
                plan.reject(item, f"duplicate_subkeyword_label:{existing}")

            if existing is not None:
                subkeyword_id = existing
                candidates = list(new.synonyms) + candidates
            else:
                synonyms = []
                for synonym in clean_synonyms(list(new.synonyms) + candidates):
                    owner = state.sibling_synonym_owner(keyword_id, synonym)
                    if owner and normalize_synonym(synonym) in observed:
                        logger.debug(f"Observed synonym {synonym!r} belongs to {owner}; not added")
                    elif owner:
                        plan.reject({**item, "synonym": synonym}, f"duplicate_synonym_subkeyword:{owner}")
                    else:
                        synonyms.append(synonym)
                if not synonyms and state.sibling_synonym_owner(keyword_id, new.label) is None:
                    synonyms = [new.label]

                op = CreateSubkeyword(
                    id=subkeyword_id,
                    keyword_id=keyword_id,
                    label=new.label,
                    synonyms=tuple(synonyms),
                    status=self.default_status,
                )
                if not plan.submit(op, item):
                    return None
                plan.accepted.append(schemas.AcceptedItem(
                    action="create_subkeyword", keyword_id=keyword_id, subkeyword_id=subkeyword_id, value=new.label,
                ))
                return subkeyword_id

        owned = {normalize_synonym(s) for s in state.subkeywords[subkeyword_id].synonyms}
        for synonym in clean_synonyms(candidates):
            if normalize_synonym(synonym) in owned:
                continue
            if normalize_synonym(synonym) in observed and state.sibling_synonym_owner(
                keyword_id, synonym, exclude=subkeyword_id
            ):
                logger.debug(f"Observed synonym {synonym!r} belongs to a sibling subkeyword; not added")
                continue
            op = AppendSubkeywordSynonym(subkeyword_id, synonym)
            if plan.submit(op, {"subkeywordId": subkeyword_id, "synonym": synonym}):
                owned.add(normalize_synonym(synonym))
                plan.accepted.append(schemas.AcceptedItem(
                    action="append_subkeyword_synonym",
                    keyword_id=keyword_id,
                    subkeyword_id=subkeyword_id,
                    value=synonym,
                ))
        return subkeyword_id


@retry(
    retry=retry_if_exception_type(CategoryBusyError),
    stop=stop_after_attempt(settings.locks.retry_attempts),
    wait=wait_exponential(multiplier=1, min=settings.locks.retry_wait_min, max=settings.locks.retry_wait_max),
    reraise=True,
)
async def reconcile_with_retry(
    reconciler: UpdateReconciler,
    proposal: schemas.Proposal,
) -> schemas.ReconciliationResult:
    """Reconcile, retrying the unchanged proposal while its category is busy."""
    return await reconciler.reconcile(proposal)
