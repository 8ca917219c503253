"""Concept taxonomy package: DB models, integrity checks, pipelines, APIs.

This package keeps the category -> keyword -> subkeyword -> synonym hierarchy
consistent while classifier proposals extend it and operators restructure it.
"""
