"""
Merge
=====

Folds staged changes into the target tables.
"""
