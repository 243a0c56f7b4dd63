"""
Pydantic schemas for data validation and serialization.

This package defines Pydantic models for the transient schema model and for
service results and API request/response validation:

Schemas:
    normalized: Source schema model (tables, columns, foreign keys) and
                target column definitions built from it
    api: Transfer results, sync status, schedules, query/chart results and
         API endpoint request/response schemas

Features:
    - Automatic data validation
    - Type coercion and conversion
    - JSON serialization/deserialization
    - OpenAPI schema generation for FastAPI

Usage:
    from schemas.normalized import DatabaseSchema, TableSchema, SourceColumn
    from schemas.api import SyncSchedule, QueryResult, ChartDataResult

Example:
    # Validate a schedule before storing it
    schedule = SyncSchedule(interval="daily", time="2:30", timezone="Europe/Helsinki")

    assert schedule.interval == "DAILY"
    assert schedule.time == "02:30"
"""

__all__ = [
    "DatabaseSchema",
    "TableSchema",
    "SourceColumn",
    "TargetColumn",
    "ForeignKeyDef",
    "TableDefinition",
    "SyncSchedule",
    "SyncStatusResponse",
    "QueryResult",
    "ChartDataResult",
    "HealthCheckResponse",
]
