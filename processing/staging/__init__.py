"""
Staging
=======

Loads written batches into per-table staging tables.
"""
