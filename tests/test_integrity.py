"""Integrity checker over hand-built and generated taxonomy states."""
from collections import defaultdict

from hypothesis import given, settings as hyp_settings, strategies as st
from hypothesis.strategies import composite

from taxonomy.integrity import ViolationKind, check_integrity, find_near_duplicate_synonyms
from taxonomy.pipelines.normalization import normalize_synonym
from taxonomy.state import (
    CategoryRecord,
    EvidenceRecord,
    KeywordRecord,
    SubkeywordRecord,
    TaxonomyState,
    TermRecord,
)


def make_state(keywords=(), subkeywords=(), terms=(), evidence=()):
    state = TaxonomyState(
        categories={
            "respiratory": CategoryRecord("respiratory", "Respiratory"),
            "vitals": CategoryRecord("vitals", "Vitals"),
        }
    )
    for kw in keywords:
        state.keywords[kw.id] = kw
    for sk in subkeywords:
        state.subkeywords[sk.id] = sk
    state.terms.extend(terms)
    state.evidence.extend(evidence)
    return state


def kinds(violations):
    return [v.kind for v in violations]


def test_valid_state_has_no_violations():
    state = make_state(
        keywords=[
            KeywordRecord("respiratory.pulse_ox", "respiratory", "Pulse Ox", ["O2 sat"]),
            KeywordRecord("vitals.spo2", "vitals", "SpO2", ["SpO2"]),
        ],
        subkeywords=[SubkeywordRecord("respiratory.pulse_ox.low", "respiratory.pulse_ox", "Low", ["low"])],
        terms=[TermRecord("doc-1", "respiratory.pulse_ox", "respiratory.pulse_ox.low")],
        evidence=[EvidenceRecord("doc-1", "respiratory.pulse_ox", None, "sat 91%")],
    )
    assert check_integrity(state) == []


def test_keyword_synonym_shared_across_categories_is_a_conflict():
    state = make_state(keywords=[
        KeywordRecord("respiratory.pulse_ox", "respiratory", "Pulse Ox", ["O2 Sat"]),
        KeywordRecord("vitals.oxygen", "vitals", "Oxygen", [" o2 sat"]),
    ])

    violations = check_integrity(state)

    assert len(violations) == 1
    assert violations[0].kind == ViolationKind.KEYWORD_SYNONYM_CONFLICT
    assert violations[0].value == "o2 sat"
    assert violations[0].owners == ("respiratory.pulse_ox", "vitals.oxygen")


def test_punctuation_and_plural_variants_are_not_conflicts():
    state = make_state(keywords=[
        KeywordRecord("respiratory.pulse_ox", "respiratory", "Pulse Ox", ["O2 sat"]),
        KeywordRecord("respiratory.oxygen_saturation", "respiratory", "Oxygen Saturation", ["O2 sats"]),
    ])
    assert check_integrity(state) == []


def test_sibling_subkeywords_conflict_but_cousins_may_share():
    state = make_state(
        keywords=[
            KeywordRecord("respiratory.cough", "respiratory", "Cough", []),
            KeywordRecord("respiratory.wheeze", "respiratory", "Wheeze", []),
        ],
        subkeywords=[
            SubkeywordRecord("respiratory.cough.dry", "respiratory.cough", "Dry", ["dry"]),
            SubkeywordRecord("respiratory.cough.hacking", "respiratory.cough", "Hacking", ["DRY"]),
            SubkeywordRecord("respiratory.wheeze.dry", "respiratory.wheeze", "Dry", ["dry"]),
        ],
    )

    violations = check_integrity(state)

    assert kinds(violations) == [ViolationKind.SUBKEYWORD_SYNONYM_CONFLICT]
    assert violations[0].owners == ("respiratory.cough.dry", "respiratory.cough.hacking")


def test_referential_violations():
    state = make_state(
        keywords=[
            KeywordRecord("respiratory.cough", "respiratory", "Cough", []),
            KeywordRecord("respiratory.wheeze", "respiratory", "Wheeze", []),
        ],
        subkeywords=[
            SubkeywordRecord("respiratory.cough.dry", "respiratory.cough", "Dry", []),
            SubkeywordRecord("respiratory.gone.child", "respiratory.gone", "Child", []),
        ],
        terms=[
            TermRecord("doc-1", "respiratory.missing"),
            TermRecord("doc-2", "respiratory.wheeze", "respiratory.cough.dry"),
            TermRecord("doc-3", "respiratory.cough", "respiratory.cough.missing"),
            TermRecord("doc-4", "respiratory.cough"),
            TermRecord("doc-4", "respiratory.cough"),
        ],
        evidence=[EvidenceRecord("doc-5", "respiratory.wheeze", "respiratory.cough.dry", "wheeze, dry")],
    )

    assert kinds(check_integrity(state)) == [
        ViolationKind.ORPHAN_SUBKEYWORD,
        ViolationKind.TERM_UNKNOWN_KEYWORD,
        ViolationKind.TERM_UNKNOWN_SUBKEYWORD,
        ViolationKind.TERM_SUBKEYWORD_PARENT_MISMATCH,
        ViolationKind.DUPLICATE_TERM,
        ViolationKind.EVIDENCE_SUBKEYWORD_PARENT_MISMATCH,
    ]


def test_keyword_in_unknown_category():
    state = make_state(keywords=[KeywordRecord("smoking.vape", "smoking", "Vape", [])])
    assert kinds(check_integrity(state)) == [ViolationKind.KEYWORD_UNKNOWN_CATEGORY]


def test_category_scope_keeps_cross_category_conflicts_for_both_sides():
    state = make_state(
        keywords=[
            KeywordRecord("respiratory.pulse_ox", "respiratory", "Pulse Ox", ["O2 sat"]),
            KeywordRecord("vitals.oxygen", "vitals", "Oxygen", ["o2 sat"]),
            KeywordRecord("vitals.bp", "vitals", "BP", []),
        ],
        subkeywords=[
            SubkeywordRecord("vitals.bp.high", "vitals.bp", "High", ["high"]),
            SubkeywordRecord("vitals.bp.raised", "vitals.bp", "Raised", ["High"]),
        ],
    )

    assert kinds(check_integrity(state, "respiratory")) == [ViolationKind.KEYWORD_SYNONYM_CONFLICT]
    assert kinds(check_integrity(state, "vitals")) == [
        ViolationKind.KEYWORD_SYNONYM_CONFLICT,
        ViolationKind.SUBKEYWORD_SYNONYM_CONFLICT,
    ]


def test_near_duplicates_are_advisory_only():
    state = make_state(keywords=[
        KeywordRecord("respiratory.pulse_ox", "respiratory", "Pulse Ox", ["O2 sat"]),
        KeywordRecord("respiratory.oxygen_saturation", "respiratory", "Oxygen Saturation", ["O2 sats"]),
        KeywordRecord("respiratory.cough", "respiratory", "Cough", ["coughing"]),
    ])

    assert check_integrity(state) == []
    near = find_near_duplicate_synonyms(state, threshold=90)
    assert [(d.left, d.right) for d in near] == [("o2 sat", "o2 sats")]
    assert {near[0].left_owner, near[0].right_owner} == {
        "respiratory.pulse_ox",
        "respiratory.oxygen_saturation",
    }


def test_near_duplicates_ignore_synonyms_of_the_same_keyword():
    state = make_state(keywords=[
        KeywordRecord("respiratory.pulse_ox", "respiratory", "Pulse Ox", ["O2 sat", "O2 sats"]),
    ])
    assert find_near_duplicate_synonyms(state, threshold=80) == []


# Generated taxonomies

SYNONYM_POOL = ["O2 sat", "o2 sat ", "O2 sats", "SpO2", "spo2", "pulse ox", "cough", "Cough", "wheezing"]


@composite
def keyword_sets(draw):
    count = draw(st.integers(min_value=1, max_value=6))
    keywords = []
    for i in range(count):
        category = draw(st.sampled_from(["respiratory", "vitals"]))
        synonyms = draw(st.lists(st.sampled_from(SYNONYM_POOL), max_size=4))
        keywords.append(KeywordRecord(f"{category}.k{i}", category, f"K{i}", synonyms))
    return keywords


@composite
def sibling_sets(draw):
    parents = ["respiratory.a", "respiratory.b"]
    count = draw(st.integers(min_value=1, max_value=6))
    subkeywords = []
    for i in range(count):
        parent = draw(st.sampled_from(parents))
        synonyms = draw(st.lists(st.sampled_from(SYNONYM_POOL), max_size=3))
        subkeywords.append(SubkeywordRecord(f"{parent}.s{i}", parent, f"S{i}", synonyms))
    return subkeywords


@given(keyword_sets())
@hyp_settings(max_examples=150, deadline=None)
def test_keyword_conflicts_match_global_synonym_sharing(keywords):
    owners = defaultdict(set)
    for kw in keywords:
        for synonym in kw.synonyms:
            owners[normalize_synonym(synonym)].add(kw.id)
    expected = {key for key, ids in owners.items() if len(ids) > 1}

    violations = check_integrity(make_state(keywords=keywords))

    assert {v.value for v in violations if v.kind == ViolationKind.KEYWORD_SYNONYM_CONFLICT} == expected
    assert all(v.owners[0] != v.owners[1] for v in violations)


@given(sibling_sets())
@hyp_settings(max_examples=150, deadline=None)
def test_subkeyword_conflicts_are_scoped_to_siblings(subkeywords):
    keywords = [
        KeywordRecord("respiratory.a", "respiratory", "A", []),
        KeywordRecord("respiratory.b", "respiratory", "B", []),
    ]
    owners = defaultdict(set)
    for sk in subkeywords:
        for synonym in sk.synonyms:
            owners[(sk.keyword_id, normalize_synonym(synonym))].add(sk.id)
    expected = {key for key, ids in owners.items() if len(ids) > 1}

    violations = check_integrity(make_state(keywords=keywords, subkeywords=subkeywords))

    found = set()
    for v in violations:
        assert v.kind == ViolationKind.SUBKEYWORD_SYNONYM_CONFLICT
        parent = {sk.keyword_id for sk in subkeywords if sk.id in v.owners}
        assert len(parent) == 1
        found.add((parent.pop(), v.value))
    assert found == expected
