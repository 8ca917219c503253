"""FastAPI app: taxonomy snapshots, proposal reconciliation, audits and admin migrations.

Thin glue over `TaxonomyStore`, `UpdateReconciler` and `NormalizationMigrator`;
every typed error raised below is mapped to a status code by a handler here.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from functools import lru_cache

from fastapi import Depends, FastAPI, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from . import schemas
from .config import settings
from .db import AsyncSessionMaker
from .integrity import check_integrity, find_near_duplicate_synonyms
from .locks import CategoryBusyError
from .logging_config import setup_logging
from .pipelines.migrations import (
    MergeReport,
    MigrationIntegrityError,
    MigrationPreconditionError,
    NormalizationMigrator,
    SplitReport,
)
from .pipelines.reconcile import UpdateReconciler
from .store import (
    BatchRejectedError,
    CategoryNotFoundError,
    CategoryOnHoldError,
    EntityInUseError,
    TaxonomyStore,
)

logger = logging.getLogger(__name__)


# Pydantic request/response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None


class SplitRequest(BaseModel):
    """Split migration parameters."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    parent_id: str | None = None


class MergeRequest(BaseModel):
    """Merge migration parameters."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    canonical_id: str = Field(min_length=1, max_length=255)
    legacy_ids: list[str] = Field(min_length=1, max_length=500)


class MigrationResponse(BaseModel):
    """Migration report."""
    mode: str
    report: dict


@lru_cache(maxsize=1)
def get_store() -> TaxonomyStore:
    """Process-wide store; one lock manager per process."""
    return TaxonomyStore(AsyncSessionMaker)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    setup_logging()
    logger.info("Application starting up")

    yield

    logger.info("Application shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Concept taxonomy integrity and normalization engine",
    lifespan=lifespan,
)


def _error(status_code: int, error: str, exc: Exception, headers: dict | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=str(exc)).model_dump(),
        headers=headers,
    )


# Exception handlers
@app.exception_handler(CategoryNotFoundError)
async def category_not_found_handler(request, exc: CategoryNotFoundError):
    """Handle unknown categories."""
    logger.info(f"Unknown category: {exc.category_id}")
    return _error(status.HTTP_404_NOT_FOUND, "category_not_found", exc)


@app.exception_handler(CategoryBusyError)
async def category_busy_handler(request, exc: CategoryBusyError):
    """Lock contention is retryable: tell the caller when to come back."""
    logger.warning(f"Category busy: {exc}")
    return _error(
        status.HTTP_503_SERVICE_UNAVAILABLE,
        "category_busy",
        exc,
        headers={"Retry-After": str(settings.locks.retry_after_seconds)},
    )


@app.exception_handler(CategoryOnHoldError)
async def category_on_hold_handler(request, exc: CategoryOnHoldError):
    """Handle writes to a category awaiting operator intervention."""
    logger.error(f"Category on hold: {exc}")
    return _error(status.HTTP_423_LOCKED, "category_on_hold", exc)


@app.exception_handler(BatchRejectedError)
async def batch_rejected_handler(request, exc: BatchRejectedError):
    """Handle strict batches that could not be applied."""
    logger.error(f"Batch rejected: {exc}")
    return _error(status.HTTP_409_CONFLICT, "batch_rejected", exc)


@app.exception_handler(EntityInUseError)
async def entity_in_use_handler(request, exc: EntityInUseError):
    """Handle retirement of entities that are still referenced."""
    logger.error(f"Entity in use: {exc}")
    return _error(status.HTTP_409_CONFLICT, "entity_in_use", exc)


@app.exception_handler(MigrationPreconditionError)
async def migration_precondition_handler(request, exc: MigrationPreconditionError):
    """Handle migrations refused before any change was made."""
    logger.error(f"Migration refused: {exc}")
    return _error(status.HTTP_409_CONFLICT, "migration_precondition_failed", exc)


@app.exception_handler(MigrationIntegrityError)
async def migration_integrity_handler(request, exc: MigrationIntegrityError):
    """Handle post-migration integrity failures (category is now on hold)."""
    logger.critical(f"Migration integrity failure: {exc}")
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "migration_integrity_failed", exc)


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version=settings.version)


@app.get("/categories", response_model=list[schemas.CategoryOut], response_model_by_alias=True)
async def list_categories(store: TaxonomyStore = Depends(get_store)) -> list[schemas.CategoryOut]:
    return await store.categories()


@app.get(
    "/categories/{category_id}/snapshot",
    response_model=schemas.CategorySnapshot,
    response_model_by_alias=True,
)
async def category_snapshot(
    category_id: str,
    include_review: bool = Query(default=True),
    store: TaxonomyStore = Depends(get_store),
) -> schemas.CategorySnapshot:
    """Keyword/subkeyword/synonym subtree handed to the classifier. May be slightly stale."""
    return await store.snapshot(category_id, include_review=include_review)


@app.get(
    "/categories/{category_id}/facets",
    response_model=list[schemas.FacetCount],
    response_model_by_alias=True,
)
async def category_facets(
    category_id: str,
    store: TaxonomyStore = Depends(get_store),
) -> list[schemas.FacetCount]:
    """Document counts per keyword and subkeyword, for search filters."""
    return await store.facet_counts(category_id)


@app.post(
    "/proposals",
    response_model=schemas.ReconciliationResult,
    response_model_by_alias=True,
)
async def submit_proposal(
    proposal: schemas.Proposal,
    store: TaxonomyStore = Depends(get_store),
) -> schemas.ReconciliationResult:
    """Reconcile one classifier proposal for one category and one document.

    Partial acceptance is the normal outcome: dropped items come back in
    `rejected` with a reason code. Lock contention returns 503 with
    Retry-After; the caller resubmits the same proposal.
    """
    return await UpdateReconciler(store).reconcile(proposal)


@app.get(
    "/documents/{document_id}/terms",
    response_model=schemas.DocumentTermsOut,
    response_model_by_alias=True,
)
async def document_terms(
    document_id: str,
    store: TaxonomyStore = Depends(get_store),
) -> schemas.DocumentTermsOut:
    return await store.document_terms(document_id)


@app.get("/integrity", response_model=schemas.IntegrityReport, response_model_by_alias=True)
async def integrity_report(
    category_id: str | None = Query(default=None),
    include_near_duplicates: bool = Query(default=False),
    store: TaxonomyStore = Depends(get_store),
) -> schemas.IntegrityReport:
    """Audit the whole taxonomy (or one category). Reports only; nothing is repaired."""
    state = await store.load_state()
    if category_id is not None and category_id not in state.categories:
        raise CategoryNotFoundError(category_id)

    violations = check_integrity(state, category_id)
    near = find_near_duplicate_synonyms(state, category_id) if include_near_duplicates else []
    return schemas.IntegrityReport(
        category_id=category_id,
        valid=not violations,
        violations=[schemas.ViolationOut(**v.as_dict()) for v in violations],
        near_duplicates=[
            schemas.NearDuplicateOut(
                left=d.left,
                left_owner=d.left_owner,
                right=d.right,
                right_owner=d.right_owner,
                score=d.score,
            )
            for d in near
        ],
    )


def _migration_response(mode: str, report: SplitReport | MergeReport) -> MigrationResponse:
    return MigrationResponse(mode=mode, report=asdict(report))


@app.post("/admin/categories/{category_id}/migrations/split", response_model=MigrationResponse)
async def run_split(
    category_id: str,
    request: SplitRequest | None = None,
    store: TaxonomyStore = Depends(get_store),
) -> MigrationResponse:
    """Split over-specified keywords into subkeywords of their canonical parent."""
    parent_id = request.parent_id if request else None
    report = await NormalizationMigrator(store).split(category_id, parent_id=parent_id)
    return _migration_response("split", report)


@app.post("/admin/categories/{category_id}/migrations/merge", response_model=MigrationResponse)
async def run_merge(
    category_id: str,
    request: MergeRequest,
    store: TaxonomyStore = Depends(get_store),
) -> MigrationResponse:
    """Fold legacy duplicate keywords into a canonical keyword."""
    report = await NormalizationMigrator(store).merge(category_id, request.canonical_id, request.legacy_ids)
    return _migration_response("merge", report)


@app.delete("/admin/categories/{category_id}/hold", status_code=status.HTTP_204_NO_CONTENT)
async def release_hold(
    category_id: str,
    store: TaxonomyStore = Depends(get_store),
) -> None:
    """Clear an integrity hold after the category was investigated."""
    await store.release_hold(category_id)
