"""
Query routing package.

Sends a chart's logical SQL to wherever the connection's data lives:

- external: the live MySQL source, through an SSH tunnel when configured
- tenant_shared: the internal PostgreSQL store, scoped to the tenant's role
  and schema for the life of one transaction
- synced: the connection's private PostgreSQL schema

The chart data service puts the result cache in front of the router.
"""

from query.router import QueryRouter
from query.cache import ChartCache
from query.chart_data import ChartDataService

__all__ = [
    "QueryRouter",
    "ChartCache",
    "ChartDataService",
]
