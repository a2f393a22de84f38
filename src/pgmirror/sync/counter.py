"""
Live row counts per table.
"""

import logging
from typing import Dict, Iterable, Optional

from ..database.connection import ConnectionPool
from ..database.identifiers import quote_table


logger = logging.getLogger(__name__)

# Count could not be read (missing table, permission, timeout)
UNKNOWN_COUNT = -1


class RowCounter:
    """Issues one COUNT(*) per table against a store."""

    def __init__(self, pool: ConnectionPool, schema: str = "public", timeout_seconds: Optional[float] = None):
        self.pool = pool
        self.schema = schema
        self.timeout_seconds = timeout_seconds

    async def count(self, table_name: str) -> int:
        """Count rows in one table, or UNKNOWN_COUNT if the query fails."""
        try:
            query = f"SELECT COUNT(*) FROM {quote_table(table_name, self.schema)}"
            value = await self.pool.fetchval(query, timeout=self.timeout_seconds)
            return int(value or 0)
        except Exception as e:
            logger.warning(f"Could not count rows of {table_name} on store '{self.pool.name}': {e}")
            return UNKNOWN_COUNT

    async def count_rows(self, table_names: Iterable[str]) -> Dict[str, int]:
        """Count rows for each table, sequentially."""
        counts = {}
        for table_name in table_names:
            counts[table_name] = await self.count(table_name)
        return counts
