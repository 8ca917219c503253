"""Split and merge migrations: tag preservation, idempotence, guards and holds."""
import pytest
from sqlalchemy import select

from taxonomy import models
from taxonomy.integrity import Violation, ViolationKind, check_integrity
from taxonomy.pipelines import migrations
from taxonomy.pipelines.migrations import (
    MigrationIntegrityError,
    MigrationPreconditionError,
    NormalizationMigrator,
)
from taxonomy.store import CategoryOnHoldError, CreateKeyword, CreateSubkeyword

PARENT = "communication.patient_initiated"
REFILL = "communication.patient_initiated.refill_request"


@pytest.fixture
async def communication(store):
    await store.apply_batch("communication", [
        CreateKeyword(PARENT, "Patient Initiated", ("patient message",), status="approved"),
        CreateKeyword(REFILL, "Refill Request", ("refill", "medication refill")),
        CreateKeyword(f"{PARENT}.appointment_request", "Appointment Request", ("book appointment",)),
        CreateKeyword("communication.provider_initiated", "Provider Initiated", ("provider message",)),
        CreateKeyword("communication.provider_initiated.callback", "Callback", ("call back",)),
    ], strict=True)
    return store


async def tag_pairs(store):
    state = await store.load_state()
    return sorted((t.document_id, t.keyword_id, t.subkeyword_id or "") for t in state.terms)


async def documents_of(store, keyword_id):
    state = await store.load_state()
    return {t.document_id for t in state.terms if t.keyword_id == keyword_id}


async def test_split_moves_over_specified_keyword_under_its_parent(communication, tag):
    await tag("communication", "doc-D", REFILL, snippet="asking for a refill of lisinopril")

    report = await NormalizationMigrator(communication).split("communication", parent_id=PARENT)

    assert set(report.subkeywords_created) == {REFILL, f"{PARENT}.appointment_request"}
    assert REFILL in report.keywords_retired
    assert report.terms_repointed == 1 and report.evidence_repointed == 1

    terms = await communication.document_terms("doc-D")
    assert [(t.keyword_id, t.subkeyword_id) for t in terms.terms] == [(PARENT, REFILL)]
    assert [(e.keyword_id, e.subkeyword_id) for e in terms.evidence] == [(PARENT, REFILL)]

    state = await communication.load_state()
    assert REFILL not in state.keywords
    refill = state.subkeywords[REFILL]
    assert refill.keyword_id == PARENT
    assert (refill.label, refill.synonyms, refill.status) == ("Refill Request", ["refill", "medication refill"], "review")
    # Other parents untouched when a parent filter is given
    assert "communication.provider_initiated.callback" in state.keywords
    assert check_integrity(state) == []


async def test_split_twice_is_a_no_op(communication, tag):
    await tag("communication", "doc-1", REFILL)
    await tag("communication", "doc-2", "communication.provider_initiated.callback")
    migrator = NormalizationMigrator(communication)

    await migrator.split("communication")
    once = await communication.load_state()
    second = await migrator.split("communication")
    twice = await communication.load_state()

    assert second.subkeywords_created == [] and second.keywords_retired == []
    assert second.terms_repointed == 0
    assert once.keywords == twice.keywords
    assert once.subkeywords == twice.subkeywords
    assert sorted(map(repr, once.terms)) == sorted(map(repr, twice.terms))


async def test_split_leaves_rows_with_a_subkeyword_and_retains_the_keyword(communication, tag):
    await communication.apply_batch("communication", [
        CreateSubkeyword(f"{REFILL}.controlled", REFILL, "Controlled Substance", ("controlled",)),
    ], strict=True)
    await tag("communication", "doc-1", REFILL, f"{REFILL}.controlled")
    await tag("communication", "doc-2", REFILL)

    report = await NormalizationMigrator(communication).split("communication", parent_id=PARENT)

    assert REFILL in report.keywords_retained
    assert await tag_pairs(communication) == [
        ("doc-1", REFILL, f"{REFILL}.controlled"),
        ("doc-2", PARENT, REFILL),
    ]


async def test_split_skips_keyword_clashing_with_siblings(communication, tag):
    await communication.apply_batch("communication", [
        CreateSubkeyword(f"{PARENT}.rx", PARENT, "Rx", ("Refill",)),
    ], strict=True)
    await tag("communication", "doc-1", REFILL)

    report = await NormalizationMigrator(communication).split("communication", parent_id=PARENT)

    assert report.conflicts == [{"keywordId": REFILL, "reason": f"duplicate_synonym_subkeyword:{PARENT}.rx"}]
    assert await tag_pairs(communication) == [("doc-1", REFILL, "")]


async def test_split_rejects_unknown_parent(communication):
    with pytest.raises(MigrationPreconditionError):
        await NormalizationMigrator(communication).split("communication", parent_id="communication.nope")


async def test_merge_unions_document_sets(respiratory, tag):
    await respiratory.apply_batch("respiratory", [
        CreateKeyword("respiratory.o2_sat_legacy", "O2 Saturation (legacy)", ("oxygen sat",)),
        CreateKeyword("respiratory.spo2_old", "SpO2 (old)", ("sat",)),
        CreateSubkeyword("respiratory.spo2_old.low", "respiratory.spo2_old", "Low", ("low sat",)),
    ], strict=True)
    await tag("respiratory", "doc-1", "respiratory.o2_sat_legacy", snippet="oxygen sat 93")
    await tag("respiratory", "doc-2", "respiratory.spo2_old")
    await tag("respiratory", "doc-2", "respiratory.spo2_old", "respiratory.spo2_old.low")
    await tag("respiratory", "doc-3", "respiratory.oxygen_saturation")
    await tag("respiratory", "doc-4", "respiratory.o2_sat_legacy")
    await tag("respiratory", "doc-4", "respiratory.oxygen_saturation")

    legacy = ["respiratory.o2_sat_legacy", "respiratory.spo2_old"]
    expected = await documents_of(respiratory, "respiratory.oxygen_saturation")
    for legacy_id in legacy:
        expected |= await documents_of(respiratory, legacy_id)

    report = await NormalizationMigrator(respiratory).merge("respiratory", "respiratory.oxygen_saturation", legacy)

    assert await documents_of(respiratory, "respiratory.oxygen_saturation") == expected == {
        "doc-1", "doc-2", "doc-3", "doc-4",
    }
    assert await tag_pairs(respiratory) == [
        ("doc-1", "respiratory.oxygen_saturation", ""),
        ("doc-2", "respiratory.oxygen_saturation", ""),
        ("doc-2", "respiratory.oxygen_saturation", "respiratory.spo2_old.low"),
        ("doc-3", "respiratory.oxygen_saturation", ""),
        ("doc-4", "respiratory.oxygen_saturation", ""),
    ]

    state = await respiratory.load_state()
    assert not any(t.keyword_id in legacy for t in state.terms)
    assert not any(e.keyword_id in legacy for e in state.evidence)
    assert all(legacy_id not in state.keywords for legacy_id in legacy)
    assert state.subkeywords["respiratory.spo2_old.low"].keyword_id == "respiratory.oxygen_saturation"
    assert state.keywords["respiratory.oxygen_saturation"].synonyms == ["SpO2", "oxygen sat", "sat"]
    assert sorted(report.keywords_retired) == sorted(legacy)
    assert check_integrity(state) == []


async def test_merge_rerun_is_a_no_op(respiratory, tag):
    await respiratory.apply_batch("respiratory", [
        CreateKeyword("respiratory.o2_sat_legacy", "O2 Saturation (legacy)", ("oxygen sat",)),
    ], strict=True)
    await tag("respiratory", "doc-1", "respiratory.o2_sat_legacy")
    migrator = NormalizationMigrator(respiratory)

    await migrator.merge("respiratory", "respiratory.oxygen_saturation", ["respiratory.o2_sat_legacy"])
    before = await tag_pairs(respiratory)
    report = await migrator.merge("respiratory", "respiratory.oxygen_saturation", ["respiratory.o2_sat_legacy"])

    assert report.legacy_missing == ["respiratory.o2_sat_legacy"]
    assert await tag_pairs(respiratory) == before


async def test_merge_refuses_sibling_clash(respiratory):
    await respiratory.apply_batch("respiratory", [
        CreateSubkeyword("respiratory.oxygen_saturation.low", "respiratory.oxygen_saturation", "Low", ("low",)),
        CreateSubkeyword("respiratory.pulse_ox.reduced", "respiratory.pulse_ox", "Reduced", ("LOW",)),
    ], strict=True)

    with pytest.raises(MigrationPreconditionError):
        await NormalizationMigrator(respiratory).merge(
            "respiratory", "respiratory.oxygen_saturation", ["respiratory.pulse_ox"],
        )

    state = await respiratory.load_state()
    assert "respiratory.pulse_ox" in state.keywords


async def test_merge_rejects_bad_ids(respiratory):
    migrator = NormalizationMigrator(respiratory)
    with pytest.raises(MigrationPreconditionError):
        await migrator.merge("respiratory", "respiratory.cough", ["respiratory.cough"])
    with pytest.raises(MigrationPreconditionError):
        await migrator.merge("respiratory", "respiratory.nope", ["respiratory.cough"])


async def test_migration_refuses_inconsistent_category(respiratory, sessionmaker):
    # Bypass the store to plant a keyword synonym shared by two keywords
    async with sessionmaker() as session:
        async with session.begin():
            session.add(models.Keyword(
                id="respiratory.sat_dup", category_id="respiratory", label="Sat dup", synonyms=["spo2"],
                status="review",
            ))

    with pytest.raises(MigrationPreconditionError):
        await NormalizationMigrator(respiratory).split("respiratory")


async def test_failed_post_check_places_category_on_hold(communication, sessionmaker, monkeypatch):
    calls = []

    def flaky_check(state, category_id=None):
        # Only the post-check of the first run fails
        calls.append(category_id)
        if len(calls) != 2:
            return check_integrity(state, category_id)
        return [Violation(ViolationKind.DUPLICATE_TERM, "doc-x", (PARENT, ""), frozenset({"communication"}))]

    monkeypatch.setattr(migrations, "check_integrity", flaky_check)

    with pytest.raises(MigrationIntegrityError) as excinfo:
        await NormalizationMigrator(communication).split("communication", parent_id=PARENT)
    assert excinfo.value.category_id == "communication"

    # The migration itself was committed, not rolled back
    state = await communication.load_state()
    assert REFILL in state.subkeywords
    assert state.categories["communication"].integrity_hold is True

    async with sessionmaker() as session:
        run = (await session.execute(select(models.MigrationRun))).scalars().one()
    assert run.status == "integrity_failed"
    assert run.violations == [{"kind": "duplicate_term", "value": "doc-x", "owners": [PARENT, ""]}]

    with pytest.raises(CategoryOnHoldError):
        await NormalizationMigrator(communication).split("communication")

    await communication.release_hold("communication")
    report = await NormalizationMigrator(communication).split("communication")
    assert report.run_id is not None


async def test_successful_run_is_audited(communication):
    report = await NormalizationMigrator(communication).split("communication")
    assert report.run_id is not None
    assert set(report.keywords_retired) == {
        REFILL,
        f"{PARENT}.appointment_request",
        "communication.provider_initiated.callback",
    }
