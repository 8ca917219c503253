"""Shared fixtures: a seeded SQLite database per test and a small respiratory taxonomy."""
from __future__ import annotations

import pytest

from taxonomy.db import build_engine, build_sessionmaker
from taxonomy.locks import CategoryLockManager
from taxonomy.models import Base
from taxonomy.seed import seed_categories
from taxonomy.store import (
    CreateDocumentTerm,
    CreateEvidence,
    CreateKeyword,
    CreateSubkeyword,
    TaxonomyStore,
)


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'taxonomy.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessionmaker(engine):
    return build_sessionmaker(engine)


@pytest.fixture
async def store(sessionmaker):
    async with sessionmaker() as session:
        async with session.begin():
            await seed_categories(session)
    return TaxonomyStore(sessionmaker, CategoryLockManager(timeout=0.2))


@pytest.fixture
async def respiratory(store):
    """Respiratory keywords with a few subkeywords; returns the store."""
    result = await store.apply_batch(
        "respiratory",
        [
            CreateKeyword("respiratory.pulse_ox", "Pulse Ox", ("O2 sat", "pulse oximetry"), status="approved"),
            CreateKeyword("respiratory.oxygen_saturation", "Oxygen Saturation", ("SpO2",), status="approved"),
            CreateKeyword("respiratory.cough", "Cough", ("coughing",), status="approved"),
            CreateKeyword("respiratory.wheeze", "Wheeze", ("wheezing",)),
            CreateSubkeyword("respiratory.cough.dry", "respiratory.cough", "Dry", ("dry cough", "nonproductive")),
            CreateSubkeyword("respiratory.cough.productive", "respiratory.cough", "Productive", ("wet cough",)),
        ],
        strict=True,
    )
    assert len(result.accepted) == 6
    return store


@pytest.fixture
def tag(store):
    """Write associations (and optional evidence) through the store."""

    async def _tag(category_id, document_id, keyword_id, subkeyword_id=None, snippet=None):
        ops = [CreateDocumentTerm(document_id, keyword_id, subkeyword_id)]
        if snippet:
            ops.append(CreateEvidence(document_id, keyword_id, subkeyword_id, snippet))
        return await store.apply_batch(category_id, ops, strict=True)

    return _tag
