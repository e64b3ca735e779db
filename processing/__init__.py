"""
Processing Module
=================

Warehouse side of the replication service.

Layers:
- staging: batch artifacts loaded into per-table staging tables
- merge: staged changes folded into the target tables
"""
