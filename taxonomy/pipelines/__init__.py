"""Taxonomy pipelines: normalization, proposal reconciliation, and structural migrations.

Each step is callable on its own so it can run from the API, the admin CLI,
or a batch replay of stored proposals.
"""
