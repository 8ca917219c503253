"""Out-of-band administration: integrity audit, migrations, proposal replay.

Usage:
    python admin.py check [--category ID] [--near-duplicates]
    python admin.py split CATEGORY [--parent ID]
    python admin.py merge CATEGORY CANONICAL_ID LEGACY_ID [LEGACY_ID ...]
    python admin.py replay proposals.json
"""

import argparse
import asyncio
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

from pydantic import ValidationError

from taxonomy.db import AsyncSessionMaker, engine
from taxonomy.integrity import check_integrity, find_near_duplicate_synonyms
from taxonomy.locks import CategoryBusyError
from taxonomy.logging_config import setup_logging
from taxonomy.pipelines.migrations import (
    MigrationIntegrityError,
    MigrationPreconditionError,
    NormalizationMigrator,
)
from taxonomy.pipelines.reconcile import UpdateReconciler, reconcile_with_retry
from taxonomy.schemas import Proposal
from taxonomy.store import BatchRejectedError, CategoryNotFoundError, CategoryOnHoldError, TaxonomyStore

logger = logging.getLogger("admin")


async def run_check(store: TaxonomyStore, args) -> int:
    state = await store.load_state()
    violations = check_integrity(state, args.category)
    for v in violations:
        print(json.dumps(v.as_dict()))
    if args.near_duplicates:
        for d in find_near_duplicate_synonyms(state, args.category):
            print(f"~ {d.left!r} ({d.left_owner}) vs {d.right!r} ({d.right_owner}): {d.score:.1f}")
    print(f"{'✅ valid' if not violations else f'❌ {len(violations)} violation(s)'}")
    return 0 if not violations else 1


async def run_split(store: TaxonomyStore, args) -> int:
    report = await NormalizationMigrator(store).split(args.category, parent_id=args.parent)
    print(json.dumps(asdict(report), indent=2))
    return 0


async def run_merge(store: TaxonomyStore, args) -> int:
    report = await NormalizationMigrator(store).merge(args.category, args.canonical, args.legacy)
    print(json.dumps(asdict(report), indent=2))
    return 0


async def run_replay(store: TaxonomyStore, args) -> int:
    """Resubmit stored proposals (a JSON array) through the reconciler."""
    payload = json.loads(Path(args.file).read_text(encoding="utf-8"))
    if isinstance(payload, dict):
        payload = [payload]

    reconciler = UpdateReconciler(store)
    failures = 0
    for index, raw in enumerate(payload):
        try:
            proposal = Proposal.model_validate(raw)
        except ValidationError as e:
            failures += 1
            print(f"#{index}: invalid proposal: {e.error_count()} error(s)")
            continue
        try:
            result = await reconcile_with_retry(reconciler, proposal)
        except (CategoryNotFoundError, CategoryOnHoldError, CategoryBusyError, BatchRejectedError) as e:
            failures += 1
            print(f"#{index}: {e}")
            continue
        print(
            f"#{index} {proposal.category_id}/{proposal.document_id}: "
            f"{len(result.accepted)} accepted, {len(result.rejected)} rejected, "
            f"{len(result.associations_written)} association(s)"
        )
    return 1 if failures else 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Concept taxonomy administration")
    sub = parser.add_subparsers(dest="command", required=True)

    check = sub.add_parser("check", help="Run the integrity audit")
    check.add_argument("--category", default=None)
    check.add_argument("--near-duplicates", action="store_true", help="Also list look-alike synonyms")
    check.set_defaults(handler=run_check)

    split = sub.add_parser("split", help="Split over-specified keywords into subkeywords")
    split.add_argument("category")
    split.add_argument("--parent", default=None, help="Only migrate children of this keyword")
    split.set_defaults(handler=run_split)

    merge = sub.add_parser("merge", help="Merge legacy keywords into a canonical keyword")
    merge.add_argument("category")
    merge.add_argument("canonical")
    merge.add_argument("legacy", nargs="+")
    merge.set_defaults(handler=run_merge)

    replay = sub.add_parser("replay", help="Replay a JSON file of proposals")
    replay.add_argument("file")
    replay.set_defaults(handler=run_replay)
    return parser


async def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging()
    store = TaxonomyStore(AsyncSessionMaker)
    try:
        return await args.handler(store, args)
    except (MigrationPreconditionError, CategoryNotFoundError) as e:
        print(f"❌ {e}")
        return 2
    except MigrationIntegrityError as e:
        print(f"❌ {e}")
        for v in e.violations:
            print(json.dumps(v.as_dict()))
        return 3
    finally:
        await engine.dispose()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
