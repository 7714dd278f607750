"""
JudgeSync - Judicial Entity Sync Service

Pulls courts, judges and decisions from a CourtListener-style REST API through
a claim-and-lock job queue, persists them to Postgres, and audits the result
with a data quality validator.
"""

__version__ = "0.1.0"
