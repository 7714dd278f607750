"""
JudgeSync - Storage

Store protocols plus Postgres (psycopg) and in-memory implementations.
"""

from judgesync.storage.base import EntityStore, JobStore, ReportStore
from judgesync.storage.memory import InMemoryEntityStore, InMemoryJobStore, InMemoryReportStore

__all__ = [
    "EntityStore",
    "InMemoryEntityStore",
    "InMemoryJobStore",
    "InMemoryReportStore",
    "JobStore",
    "ReportStore",
]
