"""Per-category locking and the retryable busy condition."""
import asyncio

import pytest
from tenacity import wait_none

from taxonomy.locks import CategoryBusyError, CategoryLockManager
from taxonomy.pipelines.reconcile import UpdateReconciler, reconcile_with_retry
from taxonomy.schemas import Proposal
from taxonomy.store import AppendKeywordSynonym, TaxonomyStore


async def test_same_category_times_out_as_busy():
    locks = CategoryLockManager(timeout=0.05)
    async with locks.acquire("respiratory"):
        assert locks.is_locked("respiratory")
        with pytest.raises(CategoryBusyError) as excinfo:
            async with locks.acquire("respiratory"):
                pass
    assert excinfo.value.category_id == "respiratory"
    assert not locks.is_locked("respiratory")


async def test_different_categories_do_not_block_each_other():
    locks = CategoryLockManager(timeout=0.05)
    async with locks.acquire("respiratory"):
        async with locks.acquire("vitals"):
            assert locks.is_locked("respiratory") and locks.is_locked("vitals")


async def test_waiter_gets_the_lock_once_released():
    locks = CategoryLockManager(timeout=1.0)
    order = []

    async def writer(name, hold):
        async with locks.acquire("respiratory"):
            order.append(f"{name}-in")
            await asyncio.sleep(hold)
            order.append(f"{name}-out")

    await asyncio.gather(writer("a", 0.05), writer("b", 0))
    assert order == ["a-in", "a-out", "b-in", "b-out"]


async def test_store_write_while_category_locked_is_busy(respiratory):
    async with respiratory.locks.acquire("respiratory"):
        with pytest.raises(CategoryBusyError):
            await respiratory.apply_batch("respiratory", [AppendKeywordSynonym("respiratory.cough", "tussis")])

        # Another category is unaffected
        result = await respiratory.apply_batch("vitals", [])
        assert result.rejected == []


async def test_reconcile_with_retry_resubmits_unchanged_proposal():
    proposal = Proposal.model_validate({"categoryId": "respiratory", "documentId": "doc-1"})
    seen = []

    class FlakyReconciler:
        async def reconcile(self, p):
            seen.append(p)
            if len(seen) < 3:
                raise CategoryBusyError("respiratory", 0.0)
            return "ok"

    result = await reconcile_with_retry.retry_with(wait=wait_none())(FlakyReconciler(), proposal)

    assert result == "ok"
    assert len(seen) == 3
    assert all(p is proposal for p in seen)


async def test_reconcile_with_retry_gives_up_with_busy_error():
    proposal = Proposal.model_validate({"categoryId": "respiratory", "documentId": "doc-1"})

    class AlwaysBusy:
        async def reconcile(self, p):
            raise CategoryBusyError("respiratory", 0.0)

    with pytest.raises(CategoryBusyError):
        await reconcile_with_retry.retry_with(wait=wait_none())(AlwaysBusy(), proposal)


def new_keyword_proposal(category_id, document_id, label, synonyms):
    return Proposal.model_validate({
        "categoryId": category_id,
        "documentId": document_id,
        "keywordMatches": [{"newKeyword": {"label": label, "synonyms": synonyms}}],
    })


async def test_concurrent_proposals_create_a_new_keyword_once(respiratory, sessionmaker):
    store = TaxonomyStore(sessionmaker, CategoryLockManager(timeout=5.0))
    reconciler = UpdateReconciler(store)

    first, second = await asyncio.gather(
        reconciler.reconcile(new_keyword_proposal("respiratory", "doc-1", "Emphysema", ["pulmonary emphysema"])),
        reconciler.reconcile(new_keyword_proposal("respiratory", "doc-2", "Emphysema", ["pulmonary emphysema"])),
    )

    created = [r for r in (first, second) if any(a.action == "create_keyword" for a in r.accepted)]
    assert len(created) == 1
    matched = second if created[0] is first else first
    assert [r.reason for r in matched.rejected] == ["duplicate_keyword_label:respiratory.emphysema"]

    snapshot = await store.snapshot("respiratory")
    assert [kw.id for kw in snapshot.keywords if kw.label == "Emphysema"] == ["respiratory.emphysema"]
    for document_id in ("doc-1", "doc-2"):
        terms = await store.document_terms(document_id)
        assert [(t.keyword_id, t.subkeyword_id) for t in terms.terms] == [("respiratory.emphysema", None)]


async def test_other_categories_reconcile_while_one_is_locked(respiratory):
    reconciler = UpdateReconciler(respiratory)

    async with respiratory.locks.acquire("respiratory"):
        vitals = await reconciler.reconcile(new_keyword_proposal("vitals", "doc-1", "Heart Rate", ["pulse rate"]))
        with pytest.raises(CategoryBusyError):
            await reconciler.reconcile(new_keyword_proposal("respiratory", "doc-1", "Stridor", ["stridor"]))

    assert [(a.keyword_id, a.subkeyword_id) for a in vitals.associations_written] == [("vitals.heart_rate", None)]
    assert respiratory.locks.is_locked("vitals") is False
