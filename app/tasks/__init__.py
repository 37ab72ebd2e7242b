"""
Celery tasks package.

Background tasks of the rule engine: history ingestion, per-message rule
runs and delayed action execution.
"""
