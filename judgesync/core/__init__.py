"""
JudgeSync - Core Module

Structured logging, error taxonomy and the shared pydantic models.
"""
