"""Normalization utilities for synonyms, labels and taxonomy ids.

Synonym ownership is compared on a normalized form: surrounding whitespace
trimmed and case folded to lowercase. Punctuation and plural/singular
variants are NOT folded ("O2 sats" and "O2 sat" stay distinct).
"""
from __future__ import annotations

import re
from typing import Iterable

_SLUG_INVALID = re.compile(r"[^a-z0-9]+")


def normalize_synonym(value: str) -> str:
    """Ownership key for a synonym: trimmed and lowercased."""
    return value.strip().lower()


def normalize_label(value: str) -> str:
    """Comparison key for labels (same rule as synonyms)."""
    return normalize_synonym(value)


def clean_synonyms(values: Iterable[str] | None) -> list[str]:
    """Drop blank entries and in-list duplicates, keeping first spelling and order.

    Args:
        values: Raw synonym strings as proposed

    Returns:
        Trimmed synonyms, unique under normalization
    """
    if not values:
        return []

    cleaned: list[str] = []
    seen: set[str] = set()
    for raw in values:
        if not isinstance(raw, str):
            continue
        text = raw.strip()
        key = normalize_synonym(text)
        if not key or key in seen:
            continue
        seen.add(key)
        cleaned.append(text)
    return cleaned


def slugify_label(label: str) -> str:
    """Lowercase, collapse runs of non [a-z0-9] to '_', strip edge underscores."""
    return _SLUG_INVALID.sub("_", label.strip().lower()).strip("_")


def derive_child_id(parent_id: str, label: str) -> str | None:
    """Build a dotted id for a new entity under a category or keyword.

    Returns:
        "<parent_id>.<slug>", or None when the label has no usable characters
    """
    slug = slugify_label(label)
    if not slug:
        return None
    return f"{parent_id}.{slug}"


def id_depth(entity_id: str) -> int:
    """Number of dotted segments in an id."""
    return len(entity_id.split("."))


def id_prefix(entity_id: str, depth: int) -> str:
    """First `depth` dotted segments of an id (SUBSTRING_INDEX semantics)."""
    return ".".join(entity_id.split(".")[:depth])
